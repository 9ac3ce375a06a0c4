"""
Aggregation - Bucket Construction.

============================================================
RESPONSIBILITY
============================================================
Pure functions that build buckets.

- Daily buckets from one day's events and samples
- Parent buckets strictly from their stored children
- One-decimal, round-half-up liters at every level

============================================================
SOURCE SELECTION
============================================================
The level-delta and edge-signal estimators are never merged
into one number. A daily bucket takes its total from exactly
one source, chosen by policy:

- prefer_edge_signal: edge_signal if the day has any
  edge-signal events, else level_delta
- level_delta / edge_signal: that source only

The chosen source is recorded on the bucket. A parent bucket
records the common source of its children, or "mixed".

============================================================
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, List, Optional, Sequence

from production.models import ProductionSource

from .models import AggregateBucket, Granularity, StatusCounts
from .periods import period_key
from .status import percentages_from_counts, tally_samples


MIXED_SOURCE = "mixed"


def round_liters(value: float) -> float:
    """Round liters to one decimal, half-up."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def select_source(policy: str, events: Sequence[Any]) -> Optional[str]:
    """
    Pick the estimator a day's total is taken from.

    Returns:
        Source value, or None when the day has no events
    """
    sources = {event.source for event in events}
    if not sources:
        return None
    if policy == ProductionSource.LEVEL_DELTA.value:
        return ProductionSource.LEVEL_DELTA.value
    if policy == ProductionSource.EDGE_SIGNAL.value:
        return ProductionSource.EDGE_SIGNAL.value
    if ProductionSource.EDGE_SIGNAL.value in sources:
        return ProductionSource.EDGE_SIGNAL.value
    return ProductionSource.LEVEL_DELTA.value


def build_daily_bucket(
    machine_id: str,
    day: date,
    events: Sequence[Any],
    samples: Iterable[Any],
    policy: str,
) -> AggregateBucket:
    """
    Build the daily bucket for one UTC day.

    Args:
        events: ProductionEvent rows of the day, any source
        samples: TelemetrySample rows of the day
        policy: Source selection policy
    """
    source = select_source(policy, events)
    chosen = [event for event in events if event.source == source]
    counts = tally_samples(samples)

    return AggregateBucket(
        machine_id=machine_id,
        granularity=Granularity.DAILY,
        period_key=period_key(Granularity.DAILY, day),
        period_start=day,
        total_production=round_liters(sum(event.production_liters for event in chosen)),
        event_count=len(chosen),
        status_counts=counts,
        status_percentages=percentages_from_counts(counts),
        source=source,
    )


def rollup(
    machine_id: str,
    granularity: Granularity,
    start: date,
    children: Sequence[AggregateBucket],
) -> AggregateBucket:
    """
    Build a parent bucket by summing its stored children.

    Children totals are already rounded; the sum is rounded again
    at this level so the result is reproducible from the children
    alone.
    """
    counts = StatusCounts()
    for child in children:
        counts = counts + child.status_counts

    sources = {child.source for child in children if child.source}
    if not sources:
        source = None
    elif len(sources) == 1:
        source = sources.pop()
    else:
        source = MIXED_SOURCE

    return AggregateBucket(
        machine_id=machine_id,
        granularity=granularity,
        period_key=period_key(granularity, start),
        period_start=start,
        total_production=round_liters(sum(child.total_production for child in children)),
        event_count=sum(child.event_count for child in children),
        status_counts=counts,
        status_percentages=percentages_from_counts(counts),
        source=source,
    )


def empty_bucket(
    machine_id: str,
    granularity: Granularity,
    key: str,
    start: date,
) -> AggregateBucket:
    """Zero bucket used to fill a gap."""
    return AggregateBucket(
        machine_id=machine_id,
        granularity=granularity,
        period_key=key,
        period_start=start,
    )


def children_total(children: List[AggregateBucket]) -> float:
    return round_liters(sum(child.total_production for child in children))


__all__ = [
    "MIXED_SOURCE",
    "round_liters",
    "select_source",
    "build_daily_bucket",
    "rollup",
    "empty_bucket",
    "children_total",
]
