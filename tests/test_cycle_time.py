"""Tests for the single-record four-stage cycle-time calculator."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrflow.cycle_time import (
    calculate_cycle_time,
    clamp_duration,
    is_ready_marker,
    strip_markdown,
)
from mrflow.errors import NoCommitsError, NotMergedError
from mrflow.models import Commit, MergeRequestInfo, Note, User

AUTHOR = User(id=1, username="alice", name="Alice")
REVIEWER = User(id=2, username="bob", name="Bob")

CREATED = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
MERGED = datetime(2025, 1, 1, 4, 0, 0, tzinfo=timezone.utc)


def _mr(merged_at=MERGED, is_draft: bool = False) -> MergeRequestInfo:
    return MergeRequestInfo(
        iid=7,
        title="Add feature",
        author=AUTHOR,
        created_at=CREATED,
        merged_at=merged_at,
        is_draft=is_draft,
    )


def _commit(when: datetime) -> Commit:
    return Commit(sha=f"sha-{when.isoformat()}", authored_at=when)


def _comment(note_id: int, when: datetime, body: str = "Looks good", system: bool = False) -> Note:
    return Note(id=note_id, body=body, author=REVIEWER, created_at=when, system=system)


def test_calculate_cycle_time_basic_scenario():
    """Verify coding 14h, pickup 2h, review 0h and merge 2h for a single comment."""
    commits = [_commit(datetime(2024, 12, 31, 10, 0, 0, tzinfo=timezone.utc))]
    notes = [_comment(1, datetime(2025, 1, 1, 2, 0, 0, tzinfo=timezone.utc))]

    metrics = calculate_cycle_time(_mr(), commits, notes)

    assert metrics.stages.coding_hours == pytest.approx(14.0)
    assert metrics.stages.pickup_hours == pytest.approx(2.0)
    assert metrics.stages.review_hours == pytest.approx(0.0)
    assert metrics.stages.merge_hours == pytest.approx(2.0)
    assert metrics.warnings == []
    assert metrics.timestamps.first_review_at == notes[0].created_at


def test_calculate_cycle_time_uses_earliest_commit_regardless_of_order():
    """Verify unsorted commits still yield the earliest commit as the coding start."""
    commits = [
        _commit(datetime(2024, 12, 31, 20, 0, 0, tzinfo=timezone.utc)),
        _commit(datetime(2024, 12, 31, 12, 0, 0, tzinfo=timezone.utc)),
    ]

    metrics = calculate_cycle_time(_mr(), commits, [])

    assert metrics.timestamps.first_commit_at == datetime(2024, 12, 31, 12, 0, 0, tzinfo=timezone.utc)
    assert metrics.stages.coding_hours == pytest.approx(12.0)


def test_calculate_cycle_time_without_reviews_measures_merge_from_creation():
    """Verify merge time starts at MR creation when no review comment exists."""
    metrics = calculate_cycle_time(_mr(), [_commit(CREATED - timedelta(hours=1))], [])

    assert metrics.stages.pickup_hours is None
    assert metrics.stages.review_hours is None
    assert metrics.stages.merge_hours == pytest.approx(4.0)


def test_draft_without_ready_marker_has_no_pickup_or_review():
    """Verify a draft that never became ready has null pickup and review stages."""
    notes = [
        _comment(1, datetime(2025, 1, 1, 1, 0, 0, tzinfo=timezone.utc)),
        _comment(2, datetime(2025, 1, 1, 2, 0, 0, tzinfo=timezone.utc)),
    ]

    metrics = calculate_cycle_time(_mr(is_draft=True), [_commit(CREATED)], notes)

    assert metrics.stages.pickup_hours is None
    assert metrics.stages.review_hours is None


def test_draft_review_window_starts_at_ready_marker():
    """Verify comments before the ready marker are not review activity for drafts."""
    notes = [
        _comment(1, datetime(2025, 1, 1, 0, 30, 0, tzinfo=timezone.utc)),
        _comment(
            2,
            datetime(2025, 1, 1, 1, 0, 0, tzinfo=timezone.utc),
            body="**marked this merge request as ready**",
            system=True,
        ),
        _comment(3, datetime(2025, 1, 1, 3, 0, 0, tzinfo=timezone.utc)),
    ]

    metrics = calculate_cycle_time(_mr(is_draft=True), [_commit(CREATED)], notes)

    assert metrics.timestamps.first_review_at == datetime(2025, 1, 1, 3, 0, 0, tzinfo=timezone.utc)
    assert metrics.stages.pickup_hours == pytest.approx(2.0)


@pytest.mark.parametrize("offset_seconds, counted", [(3, True), (6, False)])
def test_comment_after_merge_respects_five_second_tolerance(offset_seconds, counted):
    """Verify comments up to 5 seconds after the merge still count as review input."""
    late = MERGED + timedelta(seconds=offset_seconds)
    notes = [
        _comment(1, datetime(2025, 1, 1, 2, 0, 0, tzinfo=timezone.utc)),
        _comment(2, late),
    ]

    metrics = calculate_cycle_time(_mr(), [_commit(CREATED)], notes)

    expected_last = late if counted else notes[0].created_at
    assert metrics.timestamps.last_review_at == expected_last


def test_system_and_empty_notes_are_not_review_activity():
    """Verify system notes and empty bodies never count as review comments."""
    notes = [
        _comment(1, datetime(2025, 1, 1, 1, 0, 0, tzinfo=timezone.utc), body="added 1 commit", system=True),
        _comment(2, datetime(2025, 1, 1, 1, 30, 0, tzinfo=timezone.utc), body=""),
    ]

    metrics = calculate_cycle_time(_mr(), [_commit(CREATED)], notes)

    assert metrics.timestamps.first_review_at is None


def test_negative_coding_time_is_clamped_with_warning_callback():
    """Verify a commit after creation clamps coding time to zero and warns once."""
    received = []

    metrics = calculate_cycle_time(
        _mr(),
        [_commit(CREATED + timedelta(hours=1))],
        [],
        on_warning=received.append,
    )

    assert metrics.stages.coding_hours == 0.0
    assert len(received) == 1
    assert "coding time is negative" in received[0]
    assert metrics.warnings == received


def test_calculate_cycle_time_requires_merged_mr():
    """Verify unmerged merge requests are rejected."""
    with pytest.raises(NotMergedError):
        calculate_cycle_time(_mr(merged_at=None), [_commit(CREATED)], [])


def test_calculate_cycle_time_requires_commits():
    """Verify merge requests without commits are rejected."""
    with pytest.raises(NoCommitsError):
        calculate_cycle_time(_mr(), [], [])


def test_clamp_duration_positive_has_no_warning():
    """Verify non-negative intervals pass through unchanged."""
    result = clamp_duration(CREATED, MERGED, "merge", 7)
    assert result.seconds == pytest.approx(4 * 3600)
    assert result.warning is None


def test_ready_marker_matching_ignores_markdown_and_case():
    """Verify ready markers match after emphasis markup is removed."""
    note = _comment(1, CREATED, body="_Marked_ **as Ready**", system=True)
    assert strip_markdown("**bold** `code`") == "bold code"
    assert is_ready_marker(note)
    assert not is_ready_marker(_comment(2, CREATED, body="marked as ready", system=False))


def test_calculate_cycle_time_measures_coding_from_commit_time():
    """Verify coding time starts at the commit time, not the older author date."""
    commit = Commit(
        sha="rebased",
        authored_at=datetime(2024, 12, 30, 0, 0, 0, tzinfo=timezone.utc),
        committed_at=datetime(2024, 12, 31, 22, 0, 0, tzinfo=timezone.utc),
    )

    metrics = calculate_cycle_time(_mr(), [commit], [])

    assert metrics.timestamps.first_commit_at == commit.committed_at
    assert metrics.stages.coding_hours == pytest.approx(2.0)
