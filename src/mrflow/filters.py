"""Row filtering, phase filtering and sorting of batch comparison rows.

The phase filter applies up to sixteen independent bounds (four per phase) with
AND semantics. For every excluded row it records which predicate eliminated it,
so an operator can find the most restrictive bound when a query returns nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .models import (
    PHASE_NAMES,
    BatchRow,
    PhaseBounds,
    PhaseData,
    PhaseFilter,
    PhaseFilterResult,
    PhaseFilterStats,
    RowFilter,
    SortSpec,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
MERGE_OPEN_MR_BUCKET = "merge-open-mr"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _check_bounds(data: PhaseData, phase: str, bounds: PhaseBounds) -> Optional[str]:
    """Return the name of the first failing predicate, or ``None`` when all pass."""
    days = data.duration_seconds / SECONDS_PER_DAY

    if bounds.percent_min is not None and data.percentage < bounds.percent_min:
        return f"{phase}-percent-min"
    if bounds.percent_max is not None and data.percentage > bounds.percent_max:
        return f"{phase}-percent-max"
    if bounds.days_min is not None and days < bounds.days_min:
        return f"{phase}-days-min"
    if bounds.days_max is not None and days > bounds.days_max:
        return f"{phase}-days-max"
    return None


def apply_phase_filter(rows: Sequence[BatchRow], phase_filter: PhaseFilter) -> PhaseFilterResult:
    """Keep rows whose phase data satisfies every configured bound.

    Business logic:
    - Rows with a fetch ``error`` are always kept.
    - Phases are checked in dev, wait, review, merge order; the first failing
      predicate excludes the row and increments its diagnostic bucket.
    - When any merge bound is set, non-merged rows are excluded under the
      ``merge-open-mr`` bucket instead of a per-predicate bucket.
    - Each surviving row records the phases that had bounds and passed.

    Args:
        rows: Batch rows to filter.
        phase_filter: Structured per-phase bounds.

    Returns:
        ``PhaseFilterResult`` with surviving rows and diagnostics.

    Raises:
        ValidationError: If no bound is set at all, or a bound is out of range.
    """
    if phase_filter.is_empty():
        raise ValidationError("Phase filter must set at least one bound.")
    for phase in PHASE_NAMES:
        phase_filter.bounds_for(phase).validate(phase)

    active_phases = [
        phase for phase in PHASE_NAMES if not phase_filter.bounds_for(phase).is_empty()
    ]
    has_merge_bounds = "merge" in active_phases

    kept: List[BatchRow] = []
    excluded: Dict[str, int] = {}
    matched: Dict[int, List[str]] = {}

    for row in rows:
        if row.error is not None or row.timeline is None:
            kept.append(row)
            continue

        if has_merge_bounds and row.status != "merged":
            excluded[MERGE_OPEN_MR_BUCKET] = excluded.get(MERGE_OPEN_MR_BUCKET, 0) + 1
            continue

        failed: Optional[str] = None
        for phase in active_phases:
            failed = _check_bounds(
                row.timeline.phase(phase), phase, phase_filter.bounds_for(phase)
            )
            if failed is not None:
                break

        if failed is not None:
            excluded[failed] = excluded.get(failed, 0) + 1
            continue

        kept.append(row)
        matched[row.iid] = list(active_phases)

    stats = PhaseFilterStats(
        total_count=len(rows),
        filtered_count=len(kept),
        excluded_by_filter=excluded,
    )
    logger.debug(
        "Applied phase filter",
        extra={"total": stats.total_count, "kept": stats.filtered_count},
    )
    return PhaseFilterResult(rows=kept, stats=stats, matched_phase_filters=matched)


def _matches_row_filter(row: BatchRow, row_filter: RowFilter) -> bool:
    if row.error is not None:
        return True
    if row_filter.author and row_filter.author.lower() not in row.author.lower():
        return False
    if row_filter.status and row.status != row_filter.status:
        return False
    if row_filter.min_cycle_days is not None and row.cycle_days < row_filter.min_cycle_days:
        return False
    if row_filter.max_cycle_days is not None and row.cycle_days > row_filter.max_cycle_days:
        return False
    return True


def apply_filter(
    rows: Sequence[BatchRow],
    row_filter: Optional[RowFilter],
) -> Tuple[List[BatchRow], Optional[PhaseFilterResult]]:
    """Apply the simple row predicates, then the optional phase filter.

    Returns:
        Tuple of ``(rows, phase_result)``; ``phase_result`` is ``None`` when no
        phase filter was requested.
    """
    if row_filter is None:
        return list(rows), None

    filtered = [row for row in rows if _matches_row_filter(row, row_filter)]
    if row_filter.phase is None:
        return filtered, None

    phase_result = apply_phase_filter(filtered, row_filter.phase)
    return phase_result.rows, phase_result


def _phase_seconds(phase: str) -> Callable[[BatchRow], Any]:
    def _key(row: BatchRow) -> Any:
        return row.timeline.phase(phase).duration_seconds if row.timeline else 0

    return _key


SORT_KEYS: Dict[str, Callable[[BatchRow], Any]] = {
    "cycle_days": lambda row: row.cycle_days,
    "commits": lambda row: row.code_changes.commits,
    "files": lambda row: row.code_changes.files,
    "lines": lambda row: row.code_changes.total_lines,
    "comments": lambda row: row.review_stats.comments,
    "dev_time": _phase_seconds("dev"),
    "wait_time": _phase_seconds("wait"),
    "review_time": _phase_seconds("review"),
    "merge_time": _phase_seconds("merge"),
    "created_at": lambda row: row.created_at or _EPOCH,
    "merged_at": lambda row: row.merged_at or _EPOCH,
}


def apply_sort(rows: Sequence[BatchRow], sort: Optional[SortSpec]) -> List[BatchRow]:
    """Sort rows by ``sort``; rows with an error always sort last.

    Raises:
        ValidationError: If the sort field or order is unknown.
    """
    if sort is None:
        return list(rows)
    if sort.field not in SORT_KEYS:
        raise ValidationError(
            f"Unknown sort field '{sort.field}'. Expected one of: {', '.join(SORT_KEYS)}."
        )
    if sort.order not in ("asc", "desc"):
        raise ValidationError("Sort order must be 'asc' or 'desc'.")

    key = SORT_KEYS[sort.field]
    valid = [row for row in rows if row.error is None]
    failed = [row for row in rows if row.error is not None]
    valid.sort(key=key, reverse=sort.order == "desc")
    return valid + failed
