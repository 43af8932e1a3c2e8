"""Four-stage cycle time for a single merge request.

The calculator needs only commit and comment timestamps, so it works when the
full event timeline is unavailable:

- Coding: first commit -> MR created
- Pickup: review start -> first review comment
- Review: first review comment -> last review comment
- Merge: last review comment (or MR created) -> merged

Negative deltas caused by clock skew or rebased commits are clamped to zero and
reported through an optional warning callback.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import NoCommitsError, NotMergedError
from .models import (
    ClampedDuration,
    Commit,
    CycleStages,
    CycleTimeMetrics,
    CycleTimestamps,
    MergeRequestInfo,
    Note,
)

logger = logging.getLogger(__name__)

WarningCallback = Callable[[str], None]

NOTEABLE_TYPE_MERGE_REQUEST = "MergeRequest"
TOLERANCE_SECONDS = 5
READY_MARKERS = ("marked as ready", "marked this merge request as ready")
READY_PATTERNS = tuple(
    re.compile(rf"\b{re.escape(marker)}\b", re.IGNORECASE) for marker in READY_MARKERS
)

_MARKDOWN_EMPHASIS = re.compile(r"(\*\*|__|\*|_|~~|`)")


def strip_markdown(body: str) -> str:
    """Remove emphasis and code markup that may wrap system note text."""
    return _MARKDOWN_EMPHASIS.sub("", body)


def is_ready_marker(note: Note) -> bool:
    """Return True when ``note`` is the system note that marks a draft as ready."""
    if not note.system:
        return False
    cleaned = strip_markdown(note.body)
    return any(pattern.search(cleaned) for pattern in READY_PATTERNS)


def clamp_duration(
    start: datetime,
    end: datetime,
    stage: str,
    mr_iid: int,
) -> ClampedDuration:
    """Return ``end - start`` in seconds, clamped to zero with a warning when negative."""
    seconds = (end - start).total_seconds()
    if seconds >= 0:
        return ClampedDuration(seconds=seconds)

    warning = (
        f"MR !{mr_iid}: {stage} time is negative ({seconds:.0f}s); "
        "clamped to 0. Timestamps may be skewed or commits rebased."
    )
    return ClampedDuration(seconds=0.0, warning=warning)


def _find_review_window(
    notes: Sequence[Note],
    created_at: datetime,
    merged_at: datetime,
    is_draft: bool,
) -> Tuple[Optional[datetime], Optional[datetime], Optional[datetime]]:
    """Return ``(first_review_at, last_review_at, ready_at)``."""
    sorted_notes = sorted(notes, key=lambda note: note.created_at)
    ready_note = next((note for note in sorted_notes if is_ready_marker(note)), None)
    ready_at = ready_note.created_at if ready_note is not None else None

    if is_draft and ready_note is None:
        return None, None, None

    review_start = ready_at if is_draft and ready_at is not None else created_at
    review_end = merged_at + timedelta(seconds=TOLERANCE_SECONDS)

    review_times: List[datetime] = [
        note.created_at
        for note in sorted_notes
        if not note.system
        and note.body
        and note.noteable_type == NOTEABLE_TYPE_MERGE_REQUEST
        and review_start <= note.created_at <= review_end
    ]

    if not review_times:
        return None, None, ready_at

    return review_times[0], review_times[-1], ready_at


def calculate_cycle_time(
    mr: MergeRequestInfo,
    commits: Sequence[Commit],
    notes: Sequence[Note],
    on_warning: Optional[WarningCallback] = None,
) -> CycleTimeMetrics:
    """Compute the four-stage cycle time of a merged merge request.

    Business logic:
    - ``first_commit_at`` is the earliest commit time (``created_at``), falling
      back to the author date when the commit time is unknown.
    - A draft MR only has a review window after its "marked as ready" note; a
      draft that never became ready has null pickup and review stages.
    - Review comments are non-system, non-empty MR comments between the review
      start and ``merged_at`` plus a 5 second tolerance.
    - Each stage is clamped independently; every clamp emits one warning.

    Args:
        mr: Merge request metadata.
        commits: Commits in any order.
        notes: Notes in any order.
        on_warning: Optional callback receiving each clamp warning.

    Returns:
        ``CycleTimeMetrics`` with stage durations in hours.

    Raises:
        NotMergedError: If the merge request has no ``merged_at``.
        NoCommitsError: If ``commits`` is empty.
    """
    if mr.merged_at is None:
        raise NotMergedError(f"MR !{mr.iid} has not been merged.")
    if not commits:
        raise NoCommitsError(f"MR !{mr.iid} has no commits.")

    merged_at = mr.merged_at
    first_commit_at = min(commit.committed_at or commit.authored_at for commit in commits)
    first_review_at, last_review_at, ready_at = _find_review_window(
        notes, mr.created_at, merged_at, mr.is_draft
    )
    review_start = ready_at if mr.is_draft and ready_at is not None else mr.created_at

    warnings: List[str] = []

    def _hours(result: ClampedDuration) -> float:
        if result.warning:
            warnings.append(result.warning)
            if on_warning is not None:
                on_warning(result.warning)
        return result.seconds / 3600.0

    coding_hours = _hours(clamp_duration(first_commit_at, mr.created_at, "coding", mr.iid))

    pickup_hours: Optional[float] = None
    review_hours: Optional[float] = None
    if first_review_at is not None and last_review_at is not None:
        pickup_hours = _hours(clamp_duration(review_start, first_review_at, "pickup", mr.iid))
        review_hours = _hours(
            clamp_duration(first_review_at, last_review_at, "review", mr.iid)
        )

    merge_start = last_review_at or mr.created_at
    merge_hours = _hours(clamp_duration(merge_start, merged_at, "merge", mr.iid))

    logger.debug(
        "Calculated cycle time",
        extra={"mr_iid": mr.iid, "warnings": len(warnings)},
    )

    return CycleTimeMetrics(
        mr_iid=mr.iid,
        timestamps=CycleTimestamps(
            first_commit_at=first_commit_at,
            created_at=mr.created_at,
            first_review_at=first_review_at,
            last_review_at=last_review_at,
            merged_at=merged_at,
        ),
        stages=CycleStages(
            coding_hours=coding_hours,
            pickup_hours=pickup_hours,
            review_hours=review_hours,
            merge_hours=merge_hours,
        ),
        warnings=warnings,
    )
