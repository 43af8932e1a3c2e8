"""Tests for statistical calculations and duration formatting."""

import sys
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrflow.errors import ValidationError
from mrflow.stats import (
    calculate_mean,
    calculate_median,
    calculate_percentile,
    compute_band,
    format_duration,
    round_to,
)


def test_calculate_percentile_empty_returns_zero():
    """Verify percentile calculation returns 0 when the sample list is empty."""
    assert calculate_percentile([], 50) == 0.0


def test_calculate_percentile_single_value_returns_same_for_common_percentiles():
    """Verify all percentiles return the only value in a single-item sample."""
    values = [42.0]
    assert calculate_percentile(values, 0) == 42.0
    assert calculate_percentile(values, 50) == 42.0
    assert calculate_percentile(values, 100) == 42.0


def test_calculate_percentile_interpolates_between_order_statistics():
    """Verify linear interpolation on a multi-value sample."""
    values = [10.0, 20.0, 30.0, 40.0]
    assert calculate_percentile(values, 50) == pytest.approx(25.0)
    assert calculate_percentile(values, 75) == pytest.approx(32.5)
    assert calculate_percentile(values, 90) == pytest.approx(37.0)


def test_calculate_percentile_bounds_return_min_and_max():
    """Verify P0 and P100 return the smallest and largest values."""
    values = [7.0, 3.0, 9.0, 1.0]
    assert calculate_percentile(values, 0) == 1.0
    assert calculate_percentile(values, 100) == 9.0


def test_calculate_percentile_does_not_mutate_input():
    """Verify the caller's list keeps its original order."""
    values = [3.0, 1.0, 2.0]
    calculate_percentile(values, 50)
    assert values == [3.0, 1.0, 2.0]


def test_calculate_percentile_is_monotonic_in_p():
    """Verify higher percentiles never return smaller values."""
    values = [5.0, 1.0, 8.0, 2.0, 13.0, 3.0]
    results = [calculate_percentile(values, p) for p in range(0, 101, 5)]
    assert results == sorted(results)


@pytest.mark.parametrize("p", [-1, 100.5, 150])
def test_calculate_percentile_out_of_range_raises_validation_error(p):
    """Verify percentiles outside [0, 100] are rejected."""
    with pytest.raises(ValidationError):
        calculate_percentile([1.0, 2.0], p)


def test_median_and_mean_helpers():
    """Verify the median and mean helpers, including the empty case."""
    assert calculate_median([1.0, 3.0, 2.0]) == 2.0
    assert calculate_mean([1.0, 2.0, 6.0]) == pytest.approx(3.0)
    assert calculate_mean([]) == 0.0


def test_compute_band_ignores_none_and_nan():
    """Verify band computation skips missing samples."""
    band = compute_band([10.0, None, 20.0, float("nan"), 30.0])

    assert band.avg == pytest.approx(20.0)
    assert band.p50 == pytest.approx(20.0)
    assert band.p90 == pytest.approx(28.0)
    assert band.p95 == pytest.approx(29.0)


def test_compute_band_empty_returns_zeros():
    """Verify an empty sample yields an all-zero band."""
    band = compute_band([])
    assert (band.avg, band.p50, band.p75, band.p90, band.p95) == (0.0, 0.0, 0.0, 0.0, 0.0)


def test_round_to_rounds_half_away_from_zero():
    """Verify rounding is half-up instead of banker's rounding."""
    assert round_to(0.25, 1) == pytest.approx(0.3)
    assert round_to(2.5, 0) == pytest.approx(3.0)
    assert round_to(-1.25, 1) == pytest.approx(-1.3)


def test_format_duration_handles_none_and_typical_values():
    """Verify duration formatting for missing, small and multi-day values."""
    assert format_duration(None) == "n/a"
    assert format_duration(0) == "0m"
    assert format_duration(3660) == "1h 1m"
    assert format_duration(2 * 86400 + 3 * 3600 + 4 * 60) == "2d 3h 4m"
