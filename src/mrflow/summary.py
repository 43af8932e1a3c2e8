"""Aggregate statistics across batch comparison rows.

This module provides:
- MR type classification (Draft / Active Development / Standard).
- Cross-MR rollups of size, review participation and phase durations.
- AI-review group cross tabs, optionally split by MR type.

Rows carrying an ``error`` count towards totals but never towards statistics.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from .models import (
    PHASE_NAMES,
    AggregateSummary,
    AIReviewGroupStats,
    Band,
    BatchRow,
    CodeChangeStats,
    EventType,
    MRClassification,
    MRTimeline,
    MRType,
    MRTypeBreakdown,
    MRTypeStats,
    ReviewStatsSummary,
    TimelineStats,
    WaitTimeBreakdown,
)
from .stats import compute_band, round_to

logger = logging.getLogger(__name__)

DEFAULT_ACTIVE_DEVELOPMENT_THRESHOLD_HOURS = 2.0
READY_MIN_DELAY = timedelta(hours=1)

_REVIEW_EVENTS = (EventType.AI_REVIEW_STARTED, EventType.HUMAN_REVIEW_STARTED)
_COMMIT_EVENTS = (EventType.CODE_COMMITTED, EventType.COMMIT_PUSHED)


def detect_mr_type(
    timeline: MRTimeline,
    threshold_hours: float = DEFAULT_ACTIVE_DEVELOPMENT_THRESHOLD_HOURS,
) -> MRClassification:
    """Classify the workflow shape of a merge request.

    Rules, in order:
    1. A "Marked as Ready" event before the first review and more than one hour
       after creation makes it a Draft MR; wait starts at that event.
    2. Otherwise, a last pre-review commit more than ``threshold_hours`` after
       creation makes it an Active Development MR; wait starts at that commit.
    3. Everything else, including MRs without any review, is Standard.

    Args:
        timeline: Assembled timeline of one merge request.
        threshold_hours: Active development threshold in hours.

    Returns:
        ``MRClassification`` with wait-time fields in seconds.
    """
    mr = timeline.mr
    created_at = mr.created_at
    first_review = next(
        (event for event in timeline.events if event.event_type in _REVIEW_EVENTS), None
    )

    if first_review is None:
        return MRClassification(
            iid=mr.iid,
            mr_type=MRType.STANDARD,
            reason="No review event found",
            wait_time=WaitTimeBreakdown(0.0, 0.0, "MR Created"),
        )

    first_review_at = first_review.timestamp
    total_pickup = (first_review_at - created_at).total_seconds()

    ready_event = next(
        (
            event
            for event in timeline.events
            if event.event_type is EventType.MARKED_AS_READY
            and event.timestamp < first_review_at
            and event.timestamp > created_at + READY_MIN_DELAY
        ),
        None,
    )
    if ready_event is not None:
        draft_seconds = (ready_event.timestamp - created_at).total_seconds()
        return MRClassification(
            iid=mr.iid,
            mr_type=MRType.DRAFT,
            reason=(
                f"Marked as Ready {draft_seconds / 3600:.1f}h after MR Created"
            ),
            wait_time=WaitTimeBreakdown(
                total_pickup_seconds=total_pickup,
                review_response_seconds=(first_review_at - ready_event.timestamp).total_seconds(),
                wait_start_point="Marked as Ready",
            ),
            draft_duration_seconds=draft_seconds,
        )

    pre_review_commits = [
        event
        for event in timeline.events
        if event.event_type in _COMMIT_EVENTS and event.timestamp < first_review_at
    ]
    if pre_review_commits:
        last_commit_at = pre_review_commits[-1].timestamp
        hours_after_creation = (last_commit_at - created_at).total_seconds() / 3600
        if hours_after_creation > threshold_hours:
            return MRClassification(
                iid=mr.iid,
                mr_type=MRType.ACTIVE_DEVELOPMENT,
                reason=(
                    f"Last Commit {hours_after_creation:.1f}h after MR Created "
                    f"(threshold: {threshold_hours}h)"
                ),
                wait_time=WaitTimeBreakdown(
                    total_pickup_seconds=total_pickup,
                    review_response_seconds=(first_review_at - last_commit_at).total_seconds(),
                    wait_start_point="Last Commit",
                ),
                dev_duration_seconds=(last_commit_at - created_at).total_seconds(),
            )

    return MRClassification(
        iid=mr.iid,
        mr_type=MRType.STANDARD,
        reason="Normal flow",
        wait_time=WaitTimeBreakdown(total_pickup, total_pickup, "MR Created"),
    )


def build_mr_type_stats(classifications: Sequence[MRClassification]) -> Dict[str, MRTypeStats]:
    """Aggregate classifications per MR type; absent types are omitted."""
    total = len(classifications)
    stats: Dict[str, MRTypeStats] = {}

    for mr_type in MRType:
        items = [item for item in classifications if item.mr_type is mr_type]
        if not items:
            continue

        type_stats = MRTypeStats(
            count=len(items),
            percentage=len(items) / total * 100,
            review_response=compute_band(item.wait_time.review_response_seconds for item in items),
        )
        if mr_type is MRType.DRAFT:
            durations = [
                item.draft_duration_seconds
                for item in items
                if item.draft_duration_seconds is not None
            ]
            if durations:
                type_stats.draft_duration_avg = sum(durations) / len(durations)
        elif mr_type is MRType.ACTIVE_DEVELOPMENT:
            type_stats.total_pickup = compute_band(
                item.wait_time.total_pickup_seconds for item in items
            )
        stats[mr_type.value] = type_stats

    return stats


def _phase_seconds(rows: Iterable[BatchRow], phase: str) -> List[float]:
    return [float(row.timeline.phase(phase).duration_seconds) for row in rows if row.timeline]


def _time_bands(rows: Sequence[BatchRow]) -> Dict[str, Band]:
    bands = {phase: compute_band(_phase_seconds(rows, phase)) for phase in PHASE_NAMES}
    bands["lead_review"] = compute_band(
        float(row.timeline.wait.duration_seconds + row.timeline.review.duration_seconds)
        for row in rows
        if row.timeline
    )
    bands["cycle"] = compute_band(
        float(row.timeline.total_duration_seconds) for row in rows if row.timeline
    )
    return bands


def _code_change_bands(rows: Sequence[BatchRow]) -> Dict[str, Band]:
    return {
        "commits": compute_band(row.code_changes.commits for row in rows),
        "files": compute_band(row.code_changes.files for row in rows),
        "lines": compute_band(row.code_changes.total_lines for row in rows),
    }


def _type_breakdown(
    rows: Sequence[BatchRow],
    group_size: int,
    classifications: Dict[int, MRClassification],
    mr_type: MRType,
) -> Optional[MRTypeBreakdown]:
    type_rows = [
        row for row in rows if row.iid in classifications and classifications[row.iid].mr_type is mr_type
    ]
    if not type_rows:
        return None

    items = [classifications[row.iid] for row in type_rows]
    breakdown = MRTypeBreakdown(
        count=len(type_rows),
        percentage=len(type_rows) / group_size * 100,
        mr_iids=sorted((row.iid for row in type_rows), reverse=True),
        time=_time_bands(type_rows),
        code_changes=_code_change_bands(type_rows),
        review_response=compute_band(item.wait_time.review_response_seconds for item in items),
    )
    if mr_type is MRType.DRAFT:
        breakdown.draft_duration = compute_band(item.draft_duration_seconds for item in items)
    elif mr_type is MRType.ACTIVE_DEVELOPMENT:
        breakdown.dev_duration = compute_band(item.dev_duration_seconds for item in items)
    return breakdown


def _group_stats(
    rows: Sequence[BatchRow],
    classifications: Optional[Dict[int, MRClassification]],
) -> AIReviewGroupStats:
    if not rows:
        return AIReviewGroupStats()

    group = AIReviewGroupStats(
        count=len(rows),
        time=_time_bands(rows),
        code_changes=_code_change_bands(rows),
        comments=compute_band(row.review_stats.comments for row in rows),
    )
    if classifications:
        for mr_type in MRType:
            breakdown = _type_breakdown(rows, len(rows), classifications, mr_type)
            if breakdown is not None:
                group.by_mr_type[mr_type.value] = breakdown
    return group


def build_summary(
    rows: Sequence[BatchRow],
    classifications: Optional[Sequence[MRClassification]] = None,
) -> AggregateSummary:
    """Build the cross-MR summary of a (filtered) row set.

    Args:
        rows: Batch rows, possibly including error rows.
        classifications: Optional MR type decisions keyed by row iid.

    Returns:
        ``AggregateSummary``; statistics are zeroed when no row succeeded.
    """
    valid = [row for row in rows if row.error is None]
    summary = AggregateSummary(
        total_count=len(rows),
        success_count=len(valid),
        failed_count=len(rows) - len(valid),
    )
    if not valid:
        return summary

    code_bands = _code_change_bands(valid)
    total_commits = sum(row.code_changes.commits for row in valid)
    total_files = sum(row.code_changes.files for row in valid)
    total_lines = sum(row.code_changes.total_lines for row in valid)
    summary.code_changes = CodeChangeStats(
        commits=code_bands["commits"],
        files=code_bands["files"],
        lines=code_bands["lines"],
        total_commits=total_commits,
        total_files=total_files,
        total_lines=total_lines,
    )

    total_comments = sum(row.review_stats.comments for row in valid)
    summary.review_stats = ReviewStatsSummary(
        comments=compute_band(row.review_stats.comments for row in valid),
        total_comments=total_comments,
        comments_per_kloc=(
            round_to(total_comments / (total_lines / 1000), 2) if total_lines else 0.0
        ),
        comments_per_file=round_to(total_comments / total_files, 2) if total_files else 0.0,
    )

    time_bands = _time_bands(valid)
    timed = [row for row in valid if row.timeline]
    summary.timeline_stats = TimelineStats(
        cycle_days=compute_band(row.cycle_days for row in valid),
        dev=time_bands["dev"],
        wait=time_bands["wait"],
        review=time_bands["review"],
        merge=time_bands["merge"],
        lead_review=time_bands["lead_review"],
        avg_percentages={
            phase: round_to(
                sum(row.timeline.phase(phase).percentage for row in timed) / len(timed), 1
            )
            if timed
            else 0.0
            for phase in PHASE_NAMES
        },
    )

    by_iid = {item.iid: item for item in classifications or ()}
    with_ai = [row for row in valid if row.review_stats.has_ai_review]
    without_ai = [row for row in valid if not row.review_stats.has_ai_review]
    summary.ai_review_groups = {
        "with_ai": _group_stats(with_ai, by_iid),
        "without_ai": _group_stats(without_ai, by_iid),
    }
    if classifications:
        summary.mr_type_stats = build_mr_type_stats(
            [item for item in classifications if item.iid in {row.iid for row in valid}]
        )

    logger.debug(
        "Built aggregate summary",
        extra={"total": summary.total_count, "succeeded": summary.success_count},
    )
    return summary
