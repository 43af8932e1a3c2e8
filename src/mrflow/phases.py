"""Dev/Wait/Review/Merge phase decomposition of a merge request timeline.

Phase definitions:
- Dev: first commit -> MR created, plus every period spent in Draft.
- Wait: last "Marked as Ready" (or MR created) -> first AI or human review.
- Review: first review -> first approval (or merge).
- Merge: first approval -> merge.

Durations are rounded to whole seconds and ``total_duration_seconds`` is the
sum of the four rounded phases, so the two always agree exactly. Percentages
are rounded to one decimal and are never renormalized afterwards.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .models import (
    PHASE_NAMES,
    EventType,
    MRTimeline,
    PhaseBreakdown,
    PhaseData,
    PhaseIntensity,
    TimelineEvent,
    TimeSegmentIntensity,
)
from .stats import round_to

logger = logging.getLogger(__name__)

ESTIMATED_SPLIT = {"dev": 0.3, "wait": 0.1, "review": 0.5, "merge": 0.1}
INTENSITY_SEGMENT_SECONDS = 12 * 3600
MAX_INTENSITY_SEGMENTS = 10

_COMMIT_EVENTS = (EventType.CODE_COMMITTED, EventType.COMMIT_PUSHED)
_COMMENT_EVENTS = (EventType.HUMAN_REVIEW_STARTED, EventType.AUTHOR_RESPONSE)

PhaseWindow = Tuple[Optional[datetime], Optional[datetime]]


@dataclass(frozen=True)
class PhaseBoundaries:
    """Boundary timestamps that delimit the four phases."""

    created_at: datetime
    wait_start: datetime
    first_commit_at: Optional[datetime]
    first_ai_review_at: Optional[datetime]
    first_human_review_at: Optional[datetime]
    first_review_at: Optional[datetime]
    approved_at: Optional[datetime]
    merged_at: Optional[datetime]
    first_review_inferred_from_approval: bool = False


def get_phase_boundaries(timeline: MRTimeline) -> PhaseBoundaries:
    """Derive phase boundary timestamps from a timeline.

    The first review is the earliest AI or human review at or after the wait
    start and strictly before the merge. Without any review event, an approval
    at or after the wait start stands in and the result is flagged.
    """
    events = timeline.events
    created_at = timeline.mr.created_at
    merged_at = timeline.mr.merged_at

    def _before_merge(moment: datetime) -> bool:
        return merged_at is None or moment < merged_at

    last_ready_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    first_commit_at: Optional[datetime] = None
    for event in events:
        if event.event_type is EventType.MARKED_AS_READY:
            last_ready_at = event.timestamp
        elif event.event_type is EventType.APPROVED:
            if approved_at is None and _before_merge(event.timestamp):
                approved_at = event.timestamp
        elif event.event_type in _COMMIT_EVENTS:
            if first_commit_at is None or event.timestamp < first_commit_at:
                first_commit_at = event.timestamp

    wait_start = last_ready_at if last_ready_at is not None else created_at

    first_ai_review_at: Optional[datetime] = None
    first_human_review_at: Optional[datetime] = None
    for event in events:
        if event.timestamp < wait_start or not _before_merge(event.timestamp):
            continue
        if event.event_type is EventType.AI_REVIEW_STARTED and first_ai_review_at is None:
            first_ai_review_at = event.timestamp
        elif event.event_type is EventType.HUMAN_REVIEW_STARTED and first_human_review_at is None:
            first_human_review_at = event.timestamp

    candidates = [
        moment
        for moment in (first_ai_review_at, first_human_review_at)
        if moment is not None
    ]
    first_review_at = min(candidates) if candidates else None
    inferred = False
    if first_review_at is None and approved_at is not None and approved_at >= wait_start:
        first_review_at = approved_at
        inferred = True

    return PhaseBoundaries(
        created_at=created_at,
        wait_start=wait_start,
        first_commit_at=first_commit_at,
        first_ai_review_at=first_ai_review_at,
        first_human_review_at=first_human_review_at,
        first_review_at=first_review_at,
        approved_at=approved_at,
        merged_at=merged_at,
        first_review_inferred_from_approval=inferred,
    )


def calculate_draft_seconds(
    events: Sequence[TimelineEvent],
    is_draft_at_creation: bool,
    created_at: datetime,
    merged_at: Optional[datetime],
) -> float:
    """Sum every Draft -> Ready period, including one open at creation.

    A draft period still open at merge time is closed at the merge.
    """
    total = 0.0
    draft_started: Optional[datetime] = created_at if is_draft_at_creation else None

    for event in events:
        if event.event_type is EventType.MARKED_AS_DRAFT:
            if draft_started is None:
                draft_started = event.timestamp
        elif event.event_type is EventType.MARKED_AS_READY and draft_started is not None:
            total += (event.timestamp - draft_started).total_seconds()
            draft_started = None

    if draft_started is not None and merged_at is not None:
        total += (merged_at - draft_started).total_seconds()

    return max(0.0, total)


def _classify_segments(
    timeline: MRTimeline, boundaries: PhaseBoundaries
) -> Tuple[float, float, float]:
    wait = review = merge = 0.0
    first_review = boundaries.first_review_at
    approved = boundaries.approved_at
    merged = boundaries.merged_at
    review_end = approved or merged

    for segment in timeline.segments:
        start, end = segment.start, segment.end
        if first_review is not None and start >= boundaries.wait_start and end <= first_review:
            wait += segment.duration_seconds
        elif first_review is None and start >= boundaries.wait_start:
            wait += segment.duration_seconds
        elif (
            first_review is not None
            and start >= first_review
            and (review_end is None or end <= review_end)
        ):
            review += segment.duration_seconds
        elif (
            approved is not None
            and merged is not None
            and start >= approved
            and end <= merged
        ):
            merge += segment.duration_seconds

    return wait, review, merge


def level_for_activity(total_activity: int) -> int:
    """Bucket an activity count into an intensity level 0-3."""
    if total_activity <= 0:
        return 0
    if total_activity <= 2:
        return 1
    if total_activity <= 5:
        return 2
    return 3


def _is_counted_comment(event: TimelineEvent) -> bool:
    return event.event_type in _COMMENT_EVENTS and "bot" not in event.actor.name.lower()


def _count_activity(
    events: Sequence[TimelineEvent], start: datetime, end: datetime
) -> Tuple[int, int]:
    commits = comments = 0
    for event in events:
        if not start <= event.timestamp < end:
            continue
        if event.event_type in _COMMIT_EVENTS:
            commits += 1
        elif _is_counted_comment(event):
            comments += 1
    return commits, comments


def phase_windows(timeline: MRTimeline, boundaries: PhaseBoundaries) -> Dict[str, PhaseWindow]:
    """Return ``[start, end)`` activity windows per phase.

    Open-ended windows of an unmerged merge request end at its latest event.
    """
    latest = timeline.events[-1].timestamp if timeline.events else boundaries.created_at
    open_end = boundaries.merged_at or latest + timedelta(microseconds=1)
    dev_start = boundaries.created_at
    if boundaries.first_commit_at is not None:
        dev_start = min(boundaries.first_commit_at, dev_start)

    first_review = boundaries.first_review_at
    approved = boundaries.approved_at
    review_end = approved or open_end

    return {
        "dev": (dev_start, boundaries.wait_start),
        "wait": (boundaries.wait_start, first_review or open_end),
        "review": (first_review, review_end) if first_review is not None else (None, None),
        "merge": (approved, boundaries.merged_at) if approved is not None else (None, None),
    }


def calculate_phase_intensities(
    timeline: MRTimeline, windows: Dict[str, PhaseWindow]
) -> Dict[str, PhaseIntensity]:
    """Count commits and non-bot comments inside each phase window."""
    intensities: Dict[str, PhaseIntensity] = {}
    for phase in PHASE_NAMES:
        start, end = windows[phase]
        if start is None or end is None or end <= start:
            intensities[phase] = PhaseIntensity()
            continue
        commits, comments = _count_activity(timeline.events, start, end)
        intensities[phase] = PhaseIntensity(
            commits=commits,
            comments=comments,
            level=level_for_activity(commits + comments),
        )
    return intensities


def calculate_segmented_intensities(
    timeline: MRTimeline, windows: Dict[str, PhaseWindow]
) -> Dict[str, List[TimeSegmentIntensity]]:
    """Split each phase window into up to ten equal slices of about 12 hours."""
    result: Dict[str, List[TimeSegmentIntensity]] = {}
    for phase in PHASE_NAMES:
        start, end = windows[phase]
        result[phase] = []
        if start is None or end is None:
            continue
        phase_seconds = (end - start).total_seconds()
        if phase_seconds <= 0:
            continue

        slice_count = max(
            1, min(MAX_INTENSITY_SEGMENTS, math.ceil(phase_seconds / INTENSITY_SEGMENT_SECONDS))
        )
        slice_seconds = phase_seconds / slice_count
        for index in range(slice_count):
            slice_start = start + timedelta(seconds=index * slice_seconds)
            slice_end = start + timedelta(seconds=(index + 1) * slice_seconds)
            commits, comments = _count_activity(timeline.events, slice_start, slice_end)
            result[phase].append(
                TimeSegmentIntensity(
                    start_seconds=index * slice_seconds,
                    duration_seconds=slice_seconds,
                    commits=commits,
                    comments=comments,
                    level=level_for_activity(commits + comments),
                )
            )
    return result


def calculate_phase_breakdown(timeline: MRTimeline) -> PhaseBreakdown:
    """Decompose a merge request lifetime into Dev/Wait/Review/Merge.

    Business logic:
    - Dev is the pre-creation coding time plus every Draft period.
    - Key-state segments are assigned to Wait, Review or Merge by comparing
      their bounds against the phase boundaries.
    - A phase left at zero by gaps in segment coverage is recomputed from the
      boundary timestamps directly.
    - Without any segment at all, a fixed 30/10/50/10 split of the cycle time is
      returned and flagged as ``estimated``.

    Args:
        timeline: Assembled timeline of one merge request.

    Returns:
        ``PhaseBreakdown`` whose four durations sum to ``total_duration_seconds``.
    """
    boundaries = get_phase_boundaries(timeline)
    created_at = boundaries.created_at

    dev = 0.0
    if boundaries.first_commit_at is not None and boundaries.first_commit_at < created_at:
        dev = (created_at - boundaries.first_commit_at).total_seconds()
    dev += calculate_draft_seconds(
        timeline.events, timeline.mr.is_draft, created_at, boundaries.merged_at
    )

    wait, review, merge = _classify_segments(timeline, boundaries)

    first_review = boundaries.first_review_at
    approved = boundaries.approved_at
    merged = boundaries.merged_at
    if wait == 0 and first_review is not None and first_review > boundaries.wait_start:
        wait = (first_review - boundaries.wait_start).total_seconds()
    if review == 0 and first_review is not None and approved is not None and approved > first_review:
        review = (approved - first_review).total_seconds()
    if merge == 0 and approved is not None and merged is not None and merged > approved:
        merge = (merged - approved).total_seconds()

    estimated = not timeline.segments
    if estimated:
        total = timeline.cycle_time_seconds
        dev = total * ESTIMATED_SPLIT["dev"]
        wait = total * ESTIMATED_SPLIT["wait"]
        review = total * ESTIMATED_SPLIT["review"]
        merge = total * ESTIMATED_SPLIT["merge"]
        logger.debug(
            "No segments available; using estimated phase split",
            extra={"mr_iid": timeline.mr.iid, "cycle_time_seconds": total},
        )

    durations = {
        "dev": int(round(dev)),
        "wait": int(round(wait)),
        "review": int(round(review)),
        "merge": int(round(merge)),
    }
    total_seconds = sum(durations.values())

    windows = phase_windows(timeline, boundaries)
    intensities = calculate_phase_intensities(timeline, windows)
    slices = calculate_segmented_intensities(timeline, windows)

    def _phase(name: str) -> PhaseData:
        percentage = durations[name] / total_seconds * 100 if total_seconds > 0 else 0.0
        return PhaseData(
            duration_seconds=durations[name],
            percentage=round_to(percentage, 1),
            intensity=intensities[name],
            time_segments=slices[name],
        )

    return PhaseBreakdown(
        dev=_phase("dev"),
        wait=_phase("wait"),
        review=_phase("review"),
        merge=_phase("merge"),
        total_duration_seconds=total_seconds,
        estimated=estimated,
        first_review_inferred_from_approval=boundaries.first_review_inferred_from_approval,
    )


def current_stage(timeline: MRTimeline) -> str:
    """Describe where a merge request currently sits in its lifecycle."""
    if timeline.mr.merged_at is not None:
        return "merged"
    event_types = {event.event_type for event in timeline.events}
    if EventType.APPROVED in event_types:
        return "ready-to-merge"
    if EventType.AI_REVIEW_STARTED in event_types or EventType.HUMAN_REVIEW_STARTED in event_types:
        return "in-review"
    if timeline.mr.is_draft and EventType.MARKED_AS_READY not in event_types:
        return "in-development"
    if EventType.MR_CREATED in event_types:
        return "waiting-review"
    return "in-development"
