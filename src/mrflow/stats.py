"""Statistics and formatting helpers shared by the cycle-time and summary code.

This module provides utilities for:
- Computing linear-interpolation percentiles from unsorted samples.
- Building mean/percentile bands (P50, P75, P90, P95).
- Rounding and formatting second-based durations.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence

from .errors import ValidationError
from .models import Band


def calculate_percentile(values: Sequence[float], p: float) -> float:
    """Calculate a percentile using linear interpolation.

    The input is copied and sorted, never mutated. The rank position is
    ``(n - 1) * p / 100``; the two neighbouring order statistics are
    interpolated by the fractional remainder.

    - Empty input returns ``0.0``.
    - A single value is returned as-is.

    Args:
        values: Numeric samples in any order.
        p: Percentile in the inclusive range ``[0, 100]``.

    Returns:
        Percentile value as ``float``.

    Raises:
        ValidationError: If ``p`` is outside ``[0, 100]``.
    """
    if not 0 <= p <= 100:
        raise ValidationError("Percentile 'p' must be in the range [0, 100].")

    if not values:
        return 0.0

    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return float(sorted_values[0])

    position = (len(sorted_values) - 1) * (p / 100.0)
    lower_index = math.floor(position)
    upper_index = math.ceil(position)

    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return float(lower_value + (upper_value - lower_value) * (position - lower_index))


def calculate_median(values: Sequence[float]) -> float:
    """Return the conventional median (P50) of ``values``."""
    return calculate_percentile(values, 50)


def calculate_mean(values: Sequence[float]) -> float:
    """Return the arithmetic mean of ``values`` or ``0.0`` when empty."""
    if not values:
        return 0.0
    return float(sum(values)) / len(values)


def compute_band(samples: Iterable[Optional[float]]) -> Band:
    """Compute mean plus P50/P75/P90/P95 for a sample.

    ``None`` and NaN entries are ignored so that optional per-row metrics can be
    passed straight through.
    """
    clean: List[float] = [
        float(sample)
        for sample in samples
        if sample is not None and not math.isnan(sample)
    ]
    return Band(
        avg=calculate_mean(clean),
        p50=calculate_percentile(clean, 50),
        p75=calculate_percentile(clean, 75),
        p90=calculate_percentile(clean, 90),
        p95=calculate_percentile(clean, 95),
    )


def round_to(value: float, decimals: int = 1) -> float:
    """Round half away from zero to ``decimals`` places."""
    factor = 10 ** decimals
    scaled = abs(value) * factor
    rounded = math.floor(scaled + 0.5) / factor
    return math.copysign(rounded, value) if value else 0.0


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as a compact ``1d 2h 3m`` string.

    Args:
        seconds: Duration in seconds.

    Returns:
        ``"n/a"`` when ``seconds`` is ``None``; otherwise the rounded duration.
    """
    if seconds is None:
        return "n/a"

    total_seconds = max(0, int(round(seconds)))
    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60

    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
