"""
Aggregation - Per-Sample Status Percentages.

============================================================
RESPONSIBILITY
============================================================
Bucket status percentages come from genuine per-sample
classification of the period's raw telemetry samples, never
from production events.

Per sample:
- full tank flag                       -> full_water
- producing flag or compressor running  -> producing
- anything else (defrosting included)   -> idle

Per period:
- each category rounded half-up to an integer percentage
- a +/-1 rounding remainder goes to the largest category,
  ties broken producing > idle > full_water
- no samples at all                     -> disconnected 100

============================================================
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable

from monitoring.status_classifier import parse_flag

from .models import CATEGORY_PRIORITY, SampleCategory, StatusCounts, StatusPercentages


def classify_sample(sample: Any) -> SampleCategory:
    """Category of one TelemetrySample."""
    if parse_flag(sample.full_tank):
        return SampleCategory.FULL_WATER
    if parse_flag(sample.producing_water) or parse_flag(sample.compressor_on):
        return SampleCategory.PRODUCING
    return SampleCategory.IDLE


def tally_samples(samples: Iterable[Any]) -> StatusCounts:
    """Count samples per category."""
    counts = StatusCounts()
    for sample in samples:
        counts.add(classify_sample(sample))
    return counts


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentages_from_counts(counts: StatusCounts) -> StatusPercentages:
    """
    Integer percentages summing to exactly 100.

    Args:
        counts: Samples per category for the period

    Returns:
        StatusPercentages; disconnected is 100 only when there are
        no samples and 0 otherwise
    """
    total = counts.total
    if total == 0:
        return StatusPercentages()

    rounded: Dict[SampleCategory, int] = {
        category: _round_half_up(Decimal(counts.get(category) * 100) / Decimal(total))
        for category in CATEGORY_PRIORITY
    }

    remainder = 100 - sum(rounded.values())
    if remainder:
        # max() keeps the first of equal keys, so priority order breaks ties
        largest = max(CATEGORY_PRIORITY, key=lambda c: counts.get(c))
        rounded[largest] += remainder

    return StatusPercentages(
        producing=rounded[SampleCategory.PRODUCING],
        idle=rounded[SampleCategory.IDLE],
        full_water=rounded[SampleCategory.FULL_WATER],
        disconnected=0,
    )


def compute_status_percentages(samples: Iterable[Any]) -> StatusPercentages:
    """Classify every sample of a period and return its percentages."""
    return percentages_from_counts(tally_samples(samples))


__all__ = [
    "classify_sample",
    "tally_samples",
    "percentages_from_counts",
    "compute_status_percentages",
]
