"""Domain models for GitLab merge request flow analysis.

API payload models carry only the fields the timeline, phase and summary
calculations read. Result models are plain data so that any renderer can
consume them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError

PHASE_NAMES = ("dev", "wait", "review", "merge")


class ActorRole(str, Enum):
    """Role of the identity behind a timeline event."""

    AUTHOR = "Author"
    AI_REVIEWER = "AI Reviewer"
    REVIEWER = "Reviewer"
    SYSTEM = "System"


class EventType(str, Enum):
    """Fixed vocabulary of reconstructed merge request events."""

    BRANCH_CREATED = "Branch Created"
    MR_CREATED = "MR Created"
    CODE_COMMITTED = "Code Committed"
    COMMIT_PUSHED = "Commit Pushed"
    MARKED_AS_DRAFT = "Marked as Draft"
    MARKED_AS_READY = "Marked as Ready"
    AI_REVIEW_STARTED = "AI Review Started"
    HUMAN_REVIEW_STARTED = "Human Review Started"
    AUTHOR_RESPONSE = "Author Response"
    CI_BOT_RESPONSE = "CI Bot Response"
    APPROVED = "Approved"
    PIPELINE_SUCCEEDED = "Pipeline Succeeded"
    PIPELINE_FAILED = "Pipeline Failed"
    MERGED = "Merged"


class MRType(str, Enum):
    """Workflow shape of a merge request before its first review."""

    STANDARD = "Standard"
    DRAFT = "Draft"
    ACTIVE_DEVELOPMENT = "Active Development"


@dataclass(slots=True)
class User:
    """Represents a GitLab user reference embedded in API payloads."""

    id: Optional[int]
    username: str
    name: str


@dataclass(slots=True)
class MergeRequestInfo:
    """Represents the merge request fields used for timeline reconstruction."""

    iid: int
    title: str
    author: User
    created_at: datetime
    merged_at: Optional[datetime]
    is_draft: bool = False
    source_branch: str = ""
    target_branch: str = ""
    web_url: str = ""
    changes_count: int = 0
    merged_by: Optional[User] = None


@dataclass(slots=True)
class Commit:
    """Represents one commit attached to a merge request."""

    sha: str
    authored_at: datetime
    author_name: str = ""
    author_email: str = ""
    title: str = ""
    committed_at: Optional[datetime] = None


@dataclass(slots=True)
class Note:
    """Represents a merge request note (user comment or system note)."""

    id: int
    body: str
    author: User
    created_at: datetime
    system: bool = False
    noteable_type: str = "MergeRequest"


@dataclass(slots=True)
class Pipeline:
    """Represents a pipeline run attached to a merge request."""

    id: int
    iid: int
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class Actor:
    """Classified identity behind a timeline event."""

    id: Optional[int]
    username: str
    name: str
    role: ActorRole
    is_ai_bot: bool = False


@dataclass(frozen=True, slots=True)
class TimelineEvent:
    """One immutable entry of a merge request timeline."""

    sequence: int
    timestamp: datetime
    actor: Actor
    event_type: EventType
    details: Dict[str, Any] = field(default_factory=dict)
    interval_to_next_seconds: Optional[float] = None


@dataclass(frozen=True, slots=True)
class TimeSegment:
    """Interval between two consecutive key states of a merge request."""

    from_state: str
    to_state: str
    start: datetime
    end: datetime
    duration_seconds: float


@dataclass(slots=True)
class CommentBreakdown:
    """Comment counts split by who wrote them."""

    human_review_comments: int = 0
    ai_comments: int = 0
    author_responses: int = 0
    ci_bot_comments: int = 0


@dataclass(slots=True)
class MRSummary:
    """Event counts for a single merge request timeline."""

    commits: int = 0
    ai_reviews: int = 0
    human_comments: int = 0
    system_events: int = 0
    total_events: int = 0
    breakdown: CommentBreakdown = field(default_factory=CommentBreakdown)
    reviewers: List[Actor] = field(default_factory=list)


@dataclass(slots=True)
class MRTimeline:
    """Reconstructed timeline of one merge request."""

    mr: MergeRequestInfo
    events: List[TimelineEvent]
    segments: List[TimeSegment]
    summary: MRSummary
    cycle_time_seconds: float


@dataclass(frozen=True, slots=True)
class ClampedDuration:
    """A non-negative duration plus the warning emitted when clamping occurred."""

    seconds: float
    warning: Optional[str] = None


@dataclass(slots=True)
class CycleTimestamps:
    """Boundary timestamps of the four-stage cycle time."""

    first_commit_at: datetime
    created_at: datetime
    first_review_at: Optional[datetime]
    last_review_at: Optional[datetime]
    merged_at: datetime


@dataclass(slots=True)
class CycleStages:
    """Four-stage cycle time durations in hours."""

    coding_hours: float
    pickup_hours: Optional[float]
    review_hours: Optional[float]
    merge_hours: float


@dataclass(slots=True)
class CycleTimeMetrics:
    """Single merge request cycle-time measurement."""

    mr_iid: int
    timestamps: CycleTimestamps
    stages: CycleStages
    warnings: List[str] = field(default_factory=list)


@dataclass(slots=True)
class PhaseIntensity:
    """Activity inside a phase window, bucketed into a 0-3 level."""

    commits: int = 0
    comments: int = 0
    level: int = 0


@dataclass(slots=True)
class TimeSegmentIntensity:
    """Activity inside one fixed-length slice of a phase."""

    start_seconds: float
    duration_seconds: float
    commits: int
    comments: int
    level: int


@dataclass(slots=True)
class PhaseData:
    """Duration, share and activity of one phase."""

    duration_seconds: int
    percentage: float
    intensity: PhaseIntensity = field(default_factory=PhaseIntensity)
    time_segments: List[TimeSegmentIntensity] = field(default_factory=list)


@dataclass(slots=True)
class PhaseBreakdown:
    """Dev/Wait/Review/Merge decomposition of a merge request lifetime."""

    dev: PhaseData
    wait: PhaseData
    review: PhaseData
    merge: PhaseData
    total_duration_seconds: int
    estimated: bool = False
    first_review_inferred_from_approval: bool = False

    def phase(self, name: str) -> PhaseData:
        """Return the phase data for one of ``PHASE_NAMES``."""
        if name not in PHASE_NAMES:
            raise KeyError(name)
        return getattr(self, name)


@dataclass(slots=True)
class PhaseBounds:
    """Optional numeric bounds for one phase."""

    percent_min: Optional[float] = None
    percent_max: Optional[float] = None
    days_min: Optional[float] = None
    days_max: Optional[float] = None

    def is_empty(self) -> bool:
        return (
            self.percent_min is None
            and self.percent_max is None
            and self.days_min is None
            and self.days_max is None
        )

    def validate(self, phase: str) -> None:
        """Check ranges: percentages within 0-100, days non-negative, min <= max.

        Raises:
            ValidationError: Naming the offending bound, e.g. ``dev-percent-min``.
        """
        for name, value in (
            ("percent-min", self.percent_min),
            ("percent-max", self.percent_max),
        ):
            if value is not None and not 0 <= value <= 100:
                raise ValidationError(f"{phase}-{name} must be between 0 and 100, got {value}.")
        for name, value in (("days-min", self.days_min), ("days-max", self.days_max)):
            if value is not None and value < 0:
                raise ValidationError(f"{phase}-{name} must not be negative, got {value}.")
        if (
            self.percent_min is not None
            and self.percent_max is not None
            and self.percent_min > self.percent_max
        ):
            raise ValidationError(
                f"{phase}-percent-min ({self.percent_min}) exceeds {phase}-percent-max"
                f" ({self.percent_max})."
            )
        if self.days_min is not None and self.days_max is not None and self.days_min > self.days_max:
            raise ValidationError(
                f"{phase}-days-min ({self.days_min}) exceeds {phase}-days-max ({self.days_max})."
            )


@dataclass(slots=True)
class PhaseFilter:
    """Per-phase bounds combined with AND semantics."""

    dev: PhaseBounds = field(default_factory=PhaseBounds)
    wait: PhaseBounds = field(default_factory=PhaseBounds)
    review: PhaseBounds = field(default_factory=PhaseBounds)
    merge: PhaseBounds = field(default_factory=PhaseBounds)

    def bounds_for(self, phase: str) -> PhaseBounds:
        if phase not in PHASE_NAMES:
            raise KeyError(phase)
        return getattr(self, phase)

    def is_empty(self) -> bool:
        return all(self.bounds_for(phase).is_empty() for phase in PHASE_NAMES)


@dataclass(slots=True)
class RowFilter:
    """Row-level filters applied before the phase filter."""

    author: Optional[str] = None
    status: Optional[str] = None
    min_cycle_days: Optional[float] = None
    max_cycle_days: Optional[float] = None
    phase: Optional[PhaseFilter] = None


@dataclass(slots=True)
class SortSpec:
    """Sort key and direction for batch rows."""

    field: str = "cycle_days"
    order: str = "desc"


@dataclass(slots=True)
class PhaseFilterStats:
    """Diagnostics of a phase filter run."""

    total_count: int
    filtered_count: int
    excluded_by_filter: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class PhaseFilterResult:
    """Rows that survived a phase filter plus diagnostics."""

    rows: List["BatchRow"]
    stats: PhaseFilterStats
    matched_phase_filters: Dict[int, List[str]] = field(default_factory=dict)


@dataclass(slots=True)
class CodeChanges:
    """Size of a merge request."""

    commits: int = 0
    files: int = 0
    total_lines: int = 0


@dataclass(slots=True)
class ReviewCounts:
    """Review participation of a merge request."""

    comments: int = 0
    has_ai_review: bool = False
    diff_versions: Optional[int] = None
    breakdown: CommentBreakdown = field(default_factory=CommentBreakdown)


@dataclass(slots=True)
class BatchRow:
    """Flattened comparison record for one merge request."""

    iid: int
    title: str = ""
    author: str = ""
    reviewers: str = ""
    cycle_days: float = 0.0
    code_changes: CodeChanges = field(default_factory=CodeChanges)
    review_stats: ReviewCounts = field(default_factory=ReviewCounts)
    timeline: Optional[PhaseBreakdown] = None
    status: str = "open"
    stage: str = ""
    created_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    commits_behind: Optional[int] = None
    cycle_stages: Optional[CycleStages] = None
    error: Optional[str] = None

    @classmethod
    def error_row(cls, iid: int, message: str) -> "BatchRow":
        """Build the placeholder row kept for a merge request that failed to load."""
        return cls(iid=iid, title="(failed to load)", status="error", error=message)


@dataclass(slots=True)
class Band:
    """Mean and percentile band of a sample."""

    avg: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0


@dataclass(slots=True)
class CodeChangeStats:
    """Distribution and totals of merge request size."""

    commits: Band = field(default_factory=Band)
    files: Band = field(default_factory=Band)
    lines: Band = field(default_factory=Band)
    total_commits: int = 0
    total_files: int = 0
    total_lines: int = 0


@dataclass(slots=True)
class ReviewStatsSummary:
    """Distribution of review comments and review density."""

    comments: Band = field(default_factory=Band)
    total_comments: int = 0
    comments_per_kloc: float = 0.0
    comments_per_file: float = 0.0


@dataclass(slots=True)
class TimelineStats:
    """Cycle-time and phase duration distribution (seconds, cycle in days)."""

    cycle_days: Band = field(default_factory=Band)
    dev: Band = field(default_factory=Band)
    wait: Band = field(default_factory=Band)
    review: Band = field(default_factory=Band)
    merge: Band = field(default_factory=Band)
    lead_review: Band = field(default_factory=Band)
    avg_percentages: Dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class WaitTimeBreakdown:
    """Wait measured from the point the merge request became reviewable."""

    total_pickup_seconds: float
    review_response_seconds: float
    wait_start_point: str


@dataclass(slots=True)
class MRClassification:
    """MR type decision for one merge request."""

    iid: int
    mr_type: MRType
    reason: str
    wait_time: WaitTimeBreakdown
    draft_duration_seconds: Optional[float] = None
    dev_duration_seconds: Optional[float] = None


@dataclass(slots=True)
class MRTypeStats:
    """Aggregate statistics of one MR type."""

    count: int
    percentage: float
    review_response: Band
    draft_duration_avg: Optional[float] = None
    total_pickup: Optional[Band] = None


@dataclass(slots=True)
class MRTypeBreakdown:
    """Statistics of one MR type inside an AI-review group."""

    count: int
    percentage: float
    mr_iids: List[int]
    time: Dict[str, Band]
    code_changes: Dict[str, Band]
    review_response: Band
    draft_duration: Optional[Band] = None
    dev_duration: Optional[Band] = None


@dataclass(slots=True)
class AIReviewGroupStats:
    """Statistics of rows with (or without) AI review participation."""

    count: int = 0
    time: Dict[str, Band] = field(default_factory=dict)
    code_changes: Dict[str, Band] = field(default_factory=dict)
    comments: Band = field(default_factory=Band)
    by_mr_type: Dict[str, MRTypeBreakdown] = field(default_factory=dict)


@dataclass(slots=True)
class AggregateSummary:
    """Cross merge request rollup of a batch run."""

    total_count: int
    success_count: int
    failed_count: int
    code_changes: CodeChangeStats = field(default_factory=CodeChangeStats)
    review_stats: ReviewStatsSummary = field(default_factory=ReviewStatsSummary)
    timeline_stats: TimelineStats = field(default_factory=TimelineStats)
    ai_review_groups: Dict[str, AIReviewGroupStats] = field(default_factory=dict)
    mr_type_stats: Dict[str, MRTypeStats] = field(default_factory=dict)


@dataclass(slots=True)
class BatchInput:
    """Parameters of one batch comparison run."""

    project: str
    mr_iids: List[int]
    row_filter: Optional[RowFilter] = None
    sort: Optional[SortSpec] = None
    limit: Optional[int] = None


@dataclass(slots=True)
class BatchMetadata:
    """Bookkeeping of a batch comparison run."""

    project: str
    queried_at: datetime
    duration_ms: int


@dataclass(slots=True)
class BatchResult:
    """Output of a batch comparison run."""

    rows: List[BatchRow]
    summary: AggregateSummary
    metadata: BatchMetadata
    phase_filter_stats: Optional[PhaseFilterStats] = None
    matched_phase_filters: Dict[int, List[str]] = field(default_factory=dict)
    classifications: List[MRClassification] = field(default_factory=list)
