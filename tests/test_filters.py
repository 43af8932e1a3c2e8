"""Tests for row filters, the phase filter diagnostics and sorting."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrflow.errors import ValidationError
from mrflow.filters import MERGE_OPEN_MR_BUCKET, apply_filter, apply_phase_filter, apply_sort
from mrflow.models import (
    BatchRow,
    CodeChanges,
    PhaseBounds,
    PhaseBreakdown,
    PhaseData,
    PhaseFilter,
    RowFilter,
    SortSpec,
)

DAY = 86400


def _breakdown(dev: int, wait: int, review: int, merge: int) -> PhaseBreakdown:
    total = dev + wait + review + merge

    def _data(seconds: int) -> PhaseData:
        return PhaseData(duration_seconds=seconds, percentage=round(seconds / total * 100, 1))

    return PhaseBreakdown(
        dev=_data(dev),
        wait=_data(wait),
        review=_data(review),
        merge=_data(merge),
        total_duration_seconds=total,
    )


def _row(iid: int, status: str = "merged", author: str = "Alice", cycle_days: float = 1.0, **phases) -> BatchRow:
    durations = {"dev": DAY, "wait": DAY, "review": DAY, "merge": DAY}
    durations.update(phases)
    return BatchRow(
        iid=iid,
        title=f"MR {iid}",
        author=author,
        cycle_days=cycle_days,
        code_changes=CodeChanges(commits=iid, files=iid * 2, total_lines=iid * 10),
        timeline=_breakdown(**durations),
        status=status,
        created_at=datetime(2025, 1, iid, tzinfo=timezone.utc),
    )


def test_empty_phase_filter_is_rejected():
    """Verify a filter without any bound raises ValidationError."""
    with pytest.raises(ValidationError):
        apply_phase_filter([_row(1)], PhaseFilter())


def test_merge_bound_excludes_open_rows_under_dedicated_bucket():
    """Verify open MRs are excluded as merge-open-mr, never merge-percent-min."""
    rows = [_row(1, status="open"), _row(2)]
    phase_filter = PhaseFilter(merge=PhaseBounds(percent_min=10))

    result = apply_phase_filter(rows, phase_filter)

    assert [row.iid for row in result.rows] == [2]
    assert result.stats.excluded_by_filter == {MERGE_OPEN_MR_BUCKET: 1}
    assert "merge-percent-min" not in result.stats.excluded_by_filter
    assert result.matched_phase_filters == {2: ["merge"]}


def test_first_failing_predicate_is_counted():
    """Verify each excluded row is attributed to its first failing bound in phase order."""
    rows = [
        _row(1, dev=DAY, wait=DAY, review=DAY, merge=DAY),
        _row(2, dev=10 * DAY, wait=DAY, review=DAY, merge=DAY),
        _row(3, dev=DAY, wait=5 * DAY, review=DAY, merge=DAY),
    ]
    phase_filter = PhaseFilter(
        dev=PhaseBounds(percent_max=50),
        wait=PhaseBounds(days_max=2),
    )

    result = apply_phase_filter(rows, phase_filter)

    assert [row.iid for row in result.rows] == [1]
    assert result.stats.total_count == 3
    assert result.stats.filtered_count == 1
    assert result.stats.excluded_by_filter == {"dev-percent-max": 1, "wait-days-max": 1}
    assert result.matched_phase_filters == {1: ["dev", "wait"]}


def test_error_rows_bypass_phase_filter():
    """Verify failed rows always stay visible."""
    rows = [BatchRow.error_row(9, "boom"), _row(1, dev=20 * DAY)]
    phase_filter = PhaseFilter(dev=PhaseBounds(days_max=1))

    result = apply_phase_filter(rows, phase_filter)

    assert [row.iid for row in result.rows] == [9]


def test_phase_filter_is_idempotent():
    """Verify filtering twice with the same input yields identical output."""
    rows = [_row(1), _row(2, review=9 * DAY), _row(3, status="open")]
    phase_filter = PhaseFilter(review=PhaseBounds(percent_min=40), merge=PhaseBounds(days_min=0.5))

    first = apply_phase_filter(rows, phase_filter)
    second = apply_phase_filter(rows, phase_filter)

    assert first == second
    assert [row.iid for row in first.rows] == [2]


def test_apply_filter_runs_row_predicates_before_phase_filter():
    """Verify author, status and cycle bounds apply before phase bounds."""
    rows = [
        _row(1, author="Alice Smith", cycle_days=2.0),
        _row(2, author="Bob", cycle_days=2.0),
        _row(3, author="alice jones", cycle_days=9.0),
    ]
    row_filter = RowFilter(
        author="ALICE",
        max_cycle_days=5.0,
        phase=PhaseFilter(dev=PhaseBounds(percent_min=10)),
    )

    filtered, phase_result = apply_filter(rows, row_filter)

    assert [row.iid for row in filtered] == [1]
    assert phase_result is not None
    assert phase_result.stats.total_count == 1


def test_apply_filter_without_filter_returns_all_rows():
    """Verify no filter leaves the rows untouched."""
    rows = [_row(1), _row(2)]

    filtered, phase_result = apply_filter(rows, None)

    assert filtered == rows
    assert phase_result is None


def test_apply_sort_orders_rows_and_keeps_errors_last():
    """Verify sorting by field and direction with failed rows at the end."""
    rows = [_row(2), BatchRow.error_row(99, "boom"), _row(3), _row(1)]

    descending = apply_sort(rows, SortSpec(field="commits", order="desc"))
    ascending = apply_sort(rows, SortSpec(field="created_at", order="asc"))

    assert [row.iid for row in descending] == [3, 2, 1, 99]
    assert [row.iid for row in ascending] == [1, 2, 3, 99]


def test_apply_sort_rejects_unknown_field_and_order():
    """Verify invalid sort settings raise ValidationError."""
    with pytest.raises(ValidationError):
        apply_sort([_row(1)], SortSpec(field="stars"))
    with pytest.raises(ValidationError):
        apply_sort([_row(1)], SortSpec(order="sideways"))


@pytest.mark.parametrize(
    "phase_filter, field_name",
    [
        (PhaseFilter(dev=PhaseBounds(percent_min=150)), "dev-percent-min"),
        (PhaseFilter(review=PhaseBounds(percent_max=-1)), "review-percent-max"),
        (PhaseFilter(merge=PhaseBounds(days_max=-2)), "merge-days-max"),
        (PhaseFilter(wait=PhaseBounds(days_min=5, days_max=1)), "wait-days-min"),
        (PhaseFilter(dev=PhaseBounds(percent_min=60, percent_max=40)), "dev-percent-min"),
    ],
)
def test_out_of_range_bounds_are_rejected(phase_filter, field_name):
    """Verify invalid percent ranges, negative days and min above max raise ValidationError."""
    with pytest.raises(ValidationError, match=field_name):
        apply_phase_filter([_row(1)], phase_filter)


def test_boundary_values_are_accepted():
    """Verify 0 and 100 percent and equal min/max are valid bounds."""
    phase_filter = PhaseFilter(
        dev=PhaseBounds(percent_min=0, percent_max=100),
        wait=PhaseBounds(days_min=1, days_max=1),
    )

    result = apply_phase_filter([_row(1)], phase_filter)

    assert [row.iid for row in result.rows] == [1]
