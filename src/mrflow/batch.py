"""Batch comparison of many merge requests.

Merge requests are fetched in fixed-size batches. All fetches of one batch run
concurrently on a thread pool sized to the batch and settle together, so a single
failing MR turns into an error row instead of aborting the run. Batches run
strictly one after another to bound the number of outstanding API requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set

from .classifier import AIBotDetector, HybridReviewerPolicy
from .client import GitLabClient
from .config import Config
from .cycle_time import WarningCallback, calculate_cycle_time
from .errors import PartialFailureError, ValidationError
from .filters import apply_filter, apply_sort
from .models import (
    PHASE_NAMES,
    BatchInput,
    BatchMetadata,
    BatchResult,
    BatchRow,
    CodeChanges,
    Commit,
    CycleStages,
    MergeRequestInfo,
    MRClassification,
    MRTimeline,
    Note,
    ReviewCounts,
)
from .phases import calculate_phase_breakdown, current_stage
from .stats import round_to
from .summary import build_summary, detect_mr_type
from .timeline import TimelineAssembler

logger = logging.getLogger(__name__)

MAX_BATCH_IDS = 500
MAX_ERROR_SAMPLES = 3
MAX_TITLE_LENGTH = 50
MAX_LISTED_REVIEWERS = 2
ESTIMATED_LINES_PER_FILE = 50
SECONDS_PER_DAY = 86400

ProgressCallback = Callable[[int, int, int], None]


def _log_clamp_warning(message: str) -> None:
    logger.warning(message)


class CommitsBehindProvider(Protocol):
    """Source of the "commits behind target" count for a merge request."""

    def commits_behind(self, source_branch: str, target_branch: str) -> Optional[int]:
        ...


class TimelineCache:
    """Per-run store of assembled timelines and their rows, keyed by MR iid.

    An MR requested twice in one run is served from here instead of the API.
    """

    def __init__(self) -> None:
        self._timelines: Dict[int, MRTimeline] = {}
        self._rows: Dict[int, BatchRow] = {}

    def put(self, timeline: MRTimeline, row: Optional[BatchRow] = None) -> None:
        self._timelines[timeline.mr.iid] = timeline
        if row is not None:
            self._rows[timeline.mr.iid] = row

    def get(self, iid: int) -> Optional[MRTimeline]:
        return self._timelines.get(iid)

    def get_row(self, iid: int) -> Optional[BatchRow]:
        return self._rows.get(iid)

    def get_cached_timelines(self, iids: Optional[Iterable[int]] = None) -> List[MRTimeline]:
        """Return cached timelines, optionally restricted to ``iids`` in their order."""
        if iids is None:
            return list(self._timelines.values())
        return [self._timelines[iid] for iid in iids if iid in self._timelines]

    def classify_cached(
        self, threshold_hours: float, iids: Optional[Iterable[int]] = None
    ) -> List[MRClassification]:
        """Classify the MR type of every cached timeline."""
        return [
            detect_mr_type(timeline, threshold_hours)
            for timeline in self.get_cached_timelines(iids)
        ]

    def clear(self) -> None:
        self._timelines.clear()
        self._rows.clear()

    def __len__(self) -> int:
        return len(self._timelines)


def validate_input(batch_input: BatchInput) -> None:
    """Check the shape of a batch request.

    Raises:
        ValidationError: If the id list is empty or longer than 500 entries,
            the limit is not positive, or a phase bound is out of range.
    """
    if not batch_input.mr_iids:
        raise ValidationError("At least one merge request iid is required.")
    if len(batch_input.mr_iids) > MAX_BATCH_IDS:
        raise ValidationError(
            f"Too many merge requests: {len(batch_input.mr_iids)} (maximum {MAX_BATCH_IDS})."
        )
    if batch_input.limit is not None and batch_input.limit <= 0:
        raise ValidationError("Limit must be greater than 0.")
    phase_filter = batch_input.row_filter.phase if batch_input.row_filter else None
    if phase_filter is not None:
        for phase in PHASE_NAMES:
            phase_filter.bounds_for(phase).validate(phase)


def format_reviewers(names: Sequence[str]) -> str:
    """Show at most two reviewer names, summarizing the rest as ``+N``."""
    if not names:
        return "-"
    shown = ", ".join(names[:MAX_LISTED_REVIEWERS])
    extra = len(names) - MAX_LISTED_REVIEWERS
    return f"{shown} +{extra}" if extra > 0 else shown


def build_row(
    timeline: MRTimeline,
    files: int,
    total_lines: int,
    diff_versions: Optional[int] = None,
) -> BatchRow:
    """Turn an assembled timeline plus size data into a comparison row."""
    mr = timeline.mr
    summary = timeline.summary
    title = mr.title if len(mr.title) <= MAX_TITLE_LENGTH else mr.title[:MAX_TITLE_LENGTH] + "..."

    return BatchRow(
        iid=mr.iid,
        title=title,
        author=mr.author.name or mr.author.username,
        reviewers=format_reviewers([actor.name or actor.username for actor in summary.reviewers]),
        cycle_days=round_to(timeline.cycle_time_seconds / SECONDS_PER_DAY, 1),
        code_changes=CodeChanges(commits=summary.commits, files=files, total_lines=total_lines),
        review_stats=ReviewCounts(
            comments=summary.human_comments,
            has_ai_review=summary.ai_reviews > 0,
            diff_versions=diff_versions,
            breakdown=summary.breakdown,
        ),
        timeline=calculate_phase_breakdown(timeline),
        status="merged" if mr.merged_at else "open",
        stage=current_stage(timeline),
        created_at=mr.created_at,
        merged_at=mr.merged_at,
    )


class BatchComparisonService:
    """Fetches, computes and aggregates comparison rows for many merge requests."""

    def __init__(
        self,
        client: GitLabClient,
        settings: Config,
        cache: Optional[TimelineCache] = None,
        commits_behind_provider: Optional[CommitsBehindProvider] = None,
        on_warning: Optional[WarningCallback] = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._cache = cache if cache is not None else TimelineCache()
        self._commits_behind_provider = commits_behind_provider
        self._on_warning = on_warning or _log_clamp_warning
        self._assembler = TimelineAssembler(
            detector=AIBotDetector(settings.ai_bot_usernames),
            hybrid_policy=HybridReviewerPolicy(settings.hybrid_reviewers),
        )

    @property
    def cache(self) -> TimelineCache:
        return self._cache

    def fetch_row(self, iid: int) -> BatchRow:
        """Fetch one merge request and compute its row; runs on a worker thread.

        An MR already loaded in this run is served from the cache.
        """
        cached_timeline = self._cache.get(iid)
        cached_row = self._cache.get_row(iid)
        if cached_timeline is not None and cached_row is not None:
            logger.debug("Reusing cached merge request", extra={"mr_iid": iid})
            return replace(cached_row)

        mr = self._client.get_merge_request(iid)
        commits = self._client.list_commits(iid)
        notes = self._client.list_notes(iid)
        pipelines = self._client.list_pipelines(iid)

        timeline = self._assembler.build_timeline(mr, commits, notes, pipelines)

        files = mr.changes_count
        total_lines = self._client.count_changed_lines(iid)
        if total_lines is None:
            total_lines = files * ESTIMATED_LINES_PER_FILE

        row = build_row(timeline, files, total_lines, self._client.count_diff_versions(iid))
        row.commits_behind = self._commits_behind(iid, mr.source_branch, mr.target_branch)
        row.cycle_stages = self._cycle_stages(mr, commits, notes)
        self._cache.put(timeline, row)
        return row

    def _cycle_stages(
        self, mr: MergeRequestInfo, commits: Sequence[Commit], notes: Sequence[Note]
    ) -> Optional[CycleStages]:
        if mr.merged_at is None or not commits:
            return None
        return calculate_cycle_time(mr, commits, notes, on_warning=self._on_warning).stages

    def _commits_behind(self, iid: int, source_branch: str, target_branch: str) -> Optional[int]:
        if self._commits_behind_provider is None or not source_branch or not target_branch:
            return None
        try:
            return self._commits_behind_provider.commits_behind(source_branch, target_branch)
        except Exception as exc:
            logger.warning(
                "Could not determine commits behind target",
                extra={"mr_iid": iid, "error": str(exc)},
            )
            return None

    async def _fetch_batch(
        self, iids: Sequence[int], executor: ThreadPoolExecutor
    ) -> List[BatchRow]:
        """Fetch one batch with every distinct iid in flight at once."""
        loop = asyncio.get_running_loop()
        unique_iids = list(dict.fromkeys(iids))
        outcomes = await asyncio.gather(
            *(loop.run_in_executor(executor, self.fetch_row, iid) for iid in unique_iids),
            return_exceptions=True,
        )
        outcome_by_iid = dict(zip(unique_iids, outcomes))

        rows: List[BatchRow] = []
        seen: Set[int] = set()
        for iid in iids:
            outcome = outcome_by_iid[iid]
            if isinstance(outcome, BatchRow) and iid in seen:
                outcome = replace(outcome)
            seen.add(iid)
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(
                    "Failed to load merge request",
                    extra={"mr_iid": iid, "error": str(outcome)},
                )
                rows.append(BatchRow.error_row(iid, str(outcome) or type(outcome).__name__))
            else:
                rows.append(outcome)
        return rows

    async def analyze(
        self,
        batch_input: BatchInput,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Analyze every requested merge request.

        Args:
            batch_input: Project, iids, and optional filter, sort and limit.
            on_progress: Called with ``(processed, total, elapsed_ms)`` after each batch.

        Returns:
            ``BatchResult`` whose rows keep failed MRs flagged with ``error``.

        Raises:
            ValidationError: If the request shape is invalid.
            PartialFailureError: If no merge request could be loaded.
        """
        self._cache.clear()
        validate_input(batch_input)

        started = time.monotonic()
        queried_at = datetime.now(timezone.utc)
        iids = list(batch_input.mr_iids)
        total = len(iids)
        batch_size = self._settings.batch_size

        rows: List[BatchRow] = []
        with ThreadPoolExecutor(
            max_workers=batch_size, thread_name_prefix="mrflow-fetch"
        ) as executor:
            for offset in range(0, total, batch_size):
                rows.extend(
                    await self._fetch_batch(iids[offset : offset + batch_size], executor)
                )
                elapsed_ms = int((time.monotonic() - started) * 1000)
                logger.info(
                    "Processed batch",
                    extra={"processed": len(rows), "total": total, "elapsed_ms": elapsed_ms},
                )
                if on_progress is not None:
                    on_progress(len(rows), total, elapsed_ms)

        failed = [row for row in rows if row.error is not None]
        if rows and len(failed) == len(rows):
            samples = [f"MR {row.iid}: {row.error}" for row in failed[:MAX_ERROR_SAMPLES]]
            raise PartialFailureError(
                f"All {total} merge requests failed to load.", samples=samples, total=total
            )

        filtered, phase_result = apply_filter(rows, batch_input.row_filter)
        ordered = apply_sort(filtered, batch_input.sort)
        if batch_input.limit is not None:
            ordered = ordered[: batch_input.limit]

        classifications = self._cache.classify_cached(
            self._settings.mr_type_threshold_hours,
            list(dict.fromkeys(row.iid for row in ordered if row.error is None)),
        )

        result = BatchResult(
            rows=ordered,
            summary=build_summary(ordered, classifications),
            metadata=BatchMetadata(
                project=batch_input.project,
                queried_at=queried_at,
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
            phase_filter_stats=phase_result.stats if phase_result else None,
            matched_phase_filters=phase_result.matched_phase_filters if phase_result else {},
            classifications=classifications,
        )
        logger.info(
            "Batch comparison complete",
            extra={
                "total": total,
                "failed": len(failed),
                "returned": len(ordered),
                "duration_ms": result.metadata.duration_ms,
            },
        )
        return result
