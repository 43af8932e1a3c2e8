"""Text and JSON rendering of batch comparison results."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, List

from .models import PHASE_NAMES, Band, BatchResult, BatchRow
from .stats import format_duration


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_json(result: BatchResult) -> str:
    """Serialize a batch result, including every nested record, to JSON."""
    return json.dumps(asdict(result), default=_json_default, indent=2, ensure_ascii=False)


def _format_band(label: str, band: Band) -> str:
    return (
        f"{label} | avg={format_duration(band.avg)}"
        f" | P50={format_duration(band.p50)}"
        f" | P75={format_duration(band.p75)}"
        f" | P90={format_duration(band.p90)}"
        f" | P95={format_duration(band.p95)}"
    )


def _format_row(row: BatchRow) -> str:
    if row.error is not None:
        return f"!{row.iid} | ERROR: {row.error}"

    phases = ""
    if row.timeline is not None:
        phases = " | ".join(
            f"{phase} {row.timeline.phase(phase).percentage:.1f}%" for phase in PHASE_NAMES
        )
        if row.timeline.estimated:
            phases += " (estimated)"

    return (
        f"!{row.iid} | {row.title} | {row.author} | {row.status}/{row.stage}"
        f" | {row.cycle_days:.1f}d | commits={row.code_changes.commits}"
        f" files={row.code_changes.files} lines={row.code_changes.total_lines}"
        f" | comments={row.review_stats.comments}"
        f" ai={'yes' if row.review_stats.has_ai_review else 'no'}"
        f" | {phases}"
    )


def generate_report(result: BatchResult) -> str:
    """Render a plain-text report of rows, summary and filter diagnostics."""
    summary = result.summary
    lines: List[str] = [
        f"=== Batch comparison: {result.metadata.project} ===",
        f"Queried at {result.metadata.queried_at.isoformat()} in {result.metadata.duration_ms} ms",
        "",
    ]
    lines.extend(_format_row(row) for row in result.rows)

    lines.append("")
    lines.append(
        f"=== SUMMARY (total={summary.total_count}, succeeded={summary.success_count},"
        f" failed={summary.failed_count}) ==="
    )
    stats = summary.timeline_stats
    lines.append(f"Cycle days | avg={stats.cycle_days.avg:.1f} | P50={stats.cycle_days.p50:.1f}"
                 f" | P90={stats.cycle_days.p90:.1f}")
    for phase in PHASE_NAMES:
        lines.append(_format_band(f"{phase.capitalize()} time", getattr(stats, phase)))
    lines.append(_format_band("Lead review time", stats.lead_review))
    if stats.avg_percentages:
        lines.append(
            "Average split | "
            + " | ".join(f"{phase} {stats.avg_percentages[phase]:.1f}%" for phase in PHASE_NAMES)
        )

    changes = summary.code_changes
    lines.append(
        f"Code changes | commits={changes.total_commits} files={changes.total_files}"
        f" lines={changes.total_lines}"
    )
    review = summary.review_stats
    lines.append(
        f"Review density | comments={review.total_comments}"
        f" per KLoC={review.comments_per_kloc:.2f} per file={review.comments_per_file:.2f}"
    )

    for group_name, group in summary.ai_review_groups.items():
        if group.count:
            lines.append(f"AI review group {group_name} | count={group.count}")

    for type_name, type_stats in summary.mr_type_stats.items():
        lines.append(
            f"MR type {type_name} | count={type_stats.count} ({type_stats.percentage:.1f}%)"
            f" | review response P50={format_duration(type_stats.review_response.p50)}"
        )

    if result.phase_filter_stats is not None:
        filter_stats = result.phase_filter_stats
        lines.append("")
        lines.append(
            f"Phase filter kept {filter_stats.filtered_count} of {filter_stats.total_count}"
        )
        for bucket, count in sorted(filter_stats.excluded_by_filter.items()):
            lines.append(f"  excluded by {bucket}: {count}")

    return "\n".join(lines)
