"""Timeline assembly: raw GitLab records to ordered, classified events.

The assembler turns a merge request, its commits, notes and pipelines into
``TimelineEvent`` objects sorted by timestamp, then derives key-state segments
and per-MR event counts used by the phase engine and the batch rows.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .classifier import (
    ActorContext,
    AIBotDetector,
    HybridReviewerPolicy,
    aggregate_user_comments,
    classify_actor_role,
    is_ci_bot_comment,
)
from .cycle_time import TOLERANCE_SECONDS, is_ready_marker, strip_markdown
from .models import (
    Actor,
    ActorRole,
    Commit,
    EventType,
    MergeRequestInfo,
    MRSummary,
    MRTimeline,
    Note,
    Pipeline,
    TimelineEvent,
    TimeSegment,
    User,
)

logger = logging.getLogger(__name__)

DRAFT_MARKERS = ("marked as draft", "marked this merge request as draft", "marked as a draft")
APPROVAL_BODY = "approved this merge request"
MAX_MESSAGE_LENGTH = 200
EXTERNAL_USER_ID = -1

CI_ACTOR = Actor(id=None, username="gitlab-ci", name="GitLab CI", role=ActorRole.SYSTEM)

STATE_MR_CREATED = "MR Created"
STATE_MARKED_AS_READY = "Marked as Ready"
STATE_FIRST_COMMIT = "First Commit"
STATE_FIRST_AI_REVIEW = "First AI Review"
STATE_FIRST_HUMAN_REVIEW = "First Human Review"
STATE_APPROVED = "Approved"
STATE_MERGED = "Merged"
STATE_CURRENT = "Current"

KEY_STATE_ORDER = (
    STATE_MR_CREATED,
    STATE_MARKED_AS_READY,
    STATE_FIRST_COMMIT,
    STATE_FIRST_AI_REVIEW,
    STATE_FIRST_HUMAN_REVIEW,
    STATE_APPROVED,
    STATE_MERGED,
)

_REVIEW_EVENTS = (EventType.AI_REVIEW_STARTED, EventType.HUMAN_REVIEW_STARTED)


def is_draft_marker(note: Note) -> bool:
    """Return True when ``note`` is the system note that marks an MR as draft."""
    if not note.system:
        return False
    cleaned = strip_markdown(note.body).lower()
    return any(marker in cleaned for marker in DRAFT_MARKERS)


def is_approval_note(note: Note) -> bool:
    return note.system and note.body.strip().lower() == APPROVAL_BODY


class TimelineAssembler:
    """Builds classified timelines for merge requests."""

    def __init__(
        self,
        detector: Optional[AIBotDetector] = None,
        hybrid_policy: Optional[HybridReviewerPolicy] = None,
    ) -> None:
        self._detector = detector or AIBotDetector()
        self._hybrid_policy = hybrid_policy or HybridReviewerPolicy()

    def build_timeline(
        self,
        mr: MergeRequestInfo,
        commits: Sequence[Commit],
        notes: Sequence[Note],
        pipelines: Sequence[Pipeline] = (),
    ) -> MRTimeline:
        """Assemble the full timeline of one merge request."""
        events = self.build_events(mr, commits, notes, pipelines)

        cycle_time_seconds = 0.0
        if events:
            end_time = mr.merged_at or events[-1].timestamp
            cycle_time_seconds = max(0.0, (end_time - mr.created_at).total_seconds())

        timeline = MRTimeline(
            mr=mr,
            events=events,
            segments=calculate_segments(events),
            summary=summarize_events(events, mr.author.id),
            cycle_time_seconds=cycle_time_seconds,
        )
        logger.debug(
            "Assembled timeline",
            extra={
                "mr_iid": mr.iid,
                "events": len(events),
                "segments": len(timeline.segments),
            },
        )
        return timeline

    def build_events(
        self,
        mr: MergeRequestInfo,
        commits: Sequence[Commit],
        notes: Sequence[Note],
        pipelines: Sequence[Pipeline] = (),
    ) -> List[TimelineEvent]:
        """Build, sort, de-duplicate and number the events of one merge request.

        Events are stable-sorted by timestamp so that ties keep the order in
        which the API returned them.
        """
        comment_stats = aggregate_user_comments(notes)
        events: List[TimelineEvent] = []

        if commits:
            earliest = min(commits, key=lambda commit: commit.authored_at)
            events.append(
                _event(
                    earliest.authored_at,
                    self._commit_actor(mr, earliest),
                    EventType.BRANCH_CREATED,
                    {"branch_name": mr.source_branch or "unknown"},
                )
            )

        events.append(
            _event(mr.created_at, self._actor(mr.author, mr, comment_stats), EventType.MR_CREATED)
        )

        tolerance = timedelta(seconds=TOLERANCE_SECONDS)
        for commit in commits:
            event_type = (
                EventType.CODE_COMMITTED
                if commit.authored_at + tolerance < mr.created_at
                else EventType.COMMIT_PUSHED
            )
            events.append(
                _event(
                    commit.authored_at,
                    self._commit_actor(mr, commit),
                    event_type,
                    {"commit_sha": commit.sha, "message": commit.title},
                )
            )

        events.extend(self._note_events(mr, notes, comment_stats))

        for pipeline in pipelines:
            if pipeline.status not in ("success", "failed"):
                continue
            event_type = (
                EventType.PIPELINE_SUCCEEDED
                if pipeline.status == "success"
                else EventType.PIPELINE_FAILED
            )
            events.append(
                _event(
                    pipeline.updated_at or pipeline.created_at,
                    CI_ACTOR,
                    event_type,
                    {"pipeline_id": pipeline.id, "message": f"Pipeline #{pipeline.iid}"},
                )
            )

        if mr.merged_at is not None:
            merger = mr.merged_by or mr.author
            events.append(
                _event(mr.merged_at, self._actor(merger, mr, comment_stats), EventType.MERGED)
            )

        events.sort(key=lambda event: event.timestamp)
        return _number_events(_deduplicate_events(events))

    def _note_events(
        self,
        mr: MergeRequestInfo,
        notes: Sequence[Note],
        comment_stats: Dict,
    ) -> List[TimelineEvent]:
        events: List[TimelineEvent] = []
        burst_ids = self._hybrid_policy.detect_review_bursts(notes)
        first_ai_review_at: Optional[datetime] = None

        for note in sorted(notes, key=lambda item: item.created_at):
            actor = self._actor(note.author, mr, comment_stats)

            if note.system:
                if is_approval_note(note):
                    events.append(_event(note.created_at, actor, EventType.APPROVED))
                elif is_ready_marker(note):
                    events.append(_event(note.created_at, actor, EventType.MARKED_AS_READY))
                elif is_draft_marker(note):
                    events.append(_event(note.created_at, actor, EventType.MARKED_AS_DRAFT))
                continue

            username = note.author.username
            if is_ci_bot_comment(note.body):
                event_type = EventType.CI_BOT_RESPONSE
            elif actor.role is ActorRole.AUTHOR:
                event_type = EventType.AUTHOR_RESPONSE
            elif self._hybrid_policy.is_hybrid(username):
                response_seconds = (note.created_at - mr.created_at).total_seconds()
                has_earlier_ai_review = (
                    first_ai_review_at is not None and first_ai_review_at < note.created_at
                )
                if self._hybrid_policy.should_classify_as_ai_review(
                    username,
                    response_seconds,
                    has_earlier_ai_review,
                    note.id in burst_ids,
                ):
                    event_type = EventType.AI_REVIEW_STARTED
                else:
                    event_type = EventType.HUMAN_REVIEW_STARTED
            elif actor.is_ai_bot:
                event_type = EventType.AI_REVIEW_STARTED
                if first_ai_review_at is None:
                    first_ai_review_at = note.created_at
            else:
                event_type = EventType.HUMAN_REVIEW_STARTED

            details = {"message": note.body[:MAX_MESSAGE_LENGTH]}
            if note.id > 0:
                details["note_id"] = note.id
            events.append(_event(note.created_at, actor, event_type, details))

        return events

    def _actor(self, user: Optional[User], mr: MergeRequestInfo, comment_stats: Dict) -> Actor:
        if user is None or not user.id:
            return Actor(id=0, username="system", name="System", role=ActorRole.SYSTEM)

        is_ai_bot = self._detector.is_ai_bot(user.username, comment_stats.get(user.username))
        role = classify_actor_role(
            ActorContext(user=user, mr_author_id=mr.author.id, is_ai_bot=is_ai_bot)
        )
        return Actor(
            id=user.id,
            username=user.username,
            name=user.name,
            role=role,
            is_ai_bot=is_ai_bot,
        )

    def _commit_actor(self, mr: MergeRequestInfo, commit: Commit) -> Actor:
        email_user = commit.author_email.lower().split("@")[0]
        author_username = mr.author.username.lower()
        if email_user and author_username and email_user == author_username:
            return Actor(
                id=mr.author.id,
                username=mr.author.username,
                name=mr.author.name,
                role=ActorRole.AUTHOR,
            )
        name = commit.author_name or "unknown"
        return Actor(id=EXTERNAL_USER_ID, username=name, name=name, role=ActorRole.AUTHOR)


def _event(
    timestamp: datetime,
    actor: Actor,
    event_type: EventType,
    details: Optional[Dict] = None,
) -> TimelineEvent:
    return TimelineEvent(
        sequence=0,
        timestamp=timestamp,
        actor=actor,
        event_type=event_type,
        details=dict(details or {}),
    )


def _deduplicate_events(events: Sequence[TimelineEvent]) -> List[TimelineEvent]:
    """Drop events sharing timestamp, type and actor id, keeping the first."""
    seen: Set[Tuple[datetime, EventType, Optional[int]]] = set()
    unique: List[TimelineEvent] = []
    for event in events:
        key = (event.timestamp, event.event_type, event.actor.id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


def _number_events(events: Sequence[TimelineEvent]) -> List[TimelineEvent]:
    numbered: List[TimelineEvent] = []
    for index, event in enumerate(events):
        interval: Optional[float] = None
        if index + 1 < len(events):
            interval = (events[index + 1].timestamp - event.timestamp).total_seconds()
        numbered.append(replace(event, sequence=index + 1, interval_to_next_seconds=interval))
    return numbered


def identify_key_states(events: Sequence[TimelineEvent]) -> Dict[str, TimelineEvent]:
    """Map key-state names to the event that establishes them.

    Ready and Approved take the last occurrence; the review and commit states
    take the first.
    """
    key_states: Dict[str, TimelineEvent] = {}
    for event in events:
        if event.event_type is EventType.MR_CREATED:
            key_states[STATE_MR_CREATED] = event
        elif event.event_type is EventType.MARKED_AS_READY:
            key_states[STATE_MARKED_AS_READY] = event
        elif event.event_type is EventType.COMMIT_PUSHED:
            key_states.setdefault(STATE_FIRST_COMMIT, event)
        elif event.event_type is EventType.AI_REVIEW_STARTED:
            key_states.setdefault(STATE_FIRST_AI_REVIEW, event)
        elif event.event_type is EventType.HUMAN_REVIEW_STARTED:
            key_states.setdefault(STATE_FIRST_HUMAN_REVIEW, event)
        elif event.event_type is EventType.APPROVED:
            key_states[STATE_APPROVED] = event
        elif event.event_type is EventType.MERGED:
            key_states[STATE_MERGED] = event
    return key_states


def calculate_segments(events: Sequence[TimelineEvent]) -> List[TimeSegment]:
    """Build consecutive segments between key states in time order.

    An unmerged merge request gets a trailing segment from its last key state
    to its most recent event, labelled ``Current``.
    """
    if not events:
        return []

    key_states = identify_key_states(events)
    occurred = [(state, key_states[state]) for state in KEY_STATE_ORDER if state in key_states]
    occurred.sort(key=lambda item: item[1].timestamp)

    segments: List[TimeSegment] = []
    for (from_state, from_event), (to_state, to_event) in zip(occurred, occurred[1:]):
        segments.append(
            TimeSegment(
                from_state=from_state,
                to_state=to_state,
                start=from_event.timestamp,
                end=to_event.timestamp,
                duration_seconds=(to_event.timestamp - from_event.timestamp).total_seconds(),
            )
        )

    if STATE_MERGED not in key_states and occurred:
        last_state, last_state_event = occurred[-1]
        last_event = events[-1]
        if last_event.timestamp != last_state_event.timestamp:
            segments.append(
                TimeSegment(
                    from_state=last_state,
                    to_state=STATE_CURRENT,
                    start=last_state_event.timestamp,
                    end=last_event.timestamp,
                    duration_seconds=(
                        last_event.timestamp - last_state_event.timestamp
                    ).total_seconds(),
                )
            )

    return segments


def summarize_events(events: Sequence[TimelineEvent], author_id: Optional[int]) -> MRSummary:
    """Count commits, reviews and comments of one timeline.

    Review events after the first approval (or, without approval, after the
    merge) are ignored.
    """
    summary = MRSummary()
    approved_at = next(
        (event.timestamp for event in events if event.event_type is EventType.APPROVED), None
    )
    merged_at = next(
        (event.timestamp for event in events if event.event_type is EventType.MERGED), None
    )
    review_cutoff = approved_at or merged_at

    reviewers: Dict[Tuple[Optional[int], str], Actor] = {}
    for event in events:
        if (
            event.event_type in _REVIEW_EVENTS
            and review_cutoff is not None
            and event.timestamp > review_cutoff
        ):
            continue

        if event.event_type in (EventType.CODE_COMMITTED, EventType.COMMIT_PUSHED):
            summary.commits += 1
        elif event.event_type is EventType.AI_REVIEW_STARTED:
            summary.ai_reviews += 1
            summary.breakdown.ai_comments += 1
        elif event.event_type is EventType.HUMAN_REVIEW_STARTED:
            summary.human_comments += 1
            summary.breakdown.human_review_comments += 1
        elif event.event_type is EventType.AUTHOR_RESPONSE:
            summary.human_comments += 1
            summary.breakdown.author_responses += 1
        elif event.event_type is EventType.CI_BOT_RESPONSE:
            summary.breakdown.ci_bot_comments += 1
        elif event.event_type in (EventType.PIPELINE_SUCCEEDED, EventType.PIPELINE_FAILED):
            summary.system_events += 1

        actor = event.actor
        if (
            actor.role in (ActorRole.REVIEWER, ActorRole.AI_REVIEWER)
            and actor.id != author_id
        ):
            reviewers.setdefault((actor.id, actor.username), actor)

    summary.total_events = len(events)
    summary.reviewers = list(reviewers.values())
    return summary
