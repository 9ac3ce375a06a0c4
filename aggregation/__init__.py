"""
Aggregation Package.

============================================================
PURPOSE
============================================================
Hierarchical daily / weekly / monthly / yearly production
buckets with per-sample status percentages.

Parents are always recomputed from their stored children, so
every level stays consistent with the one below it.

============================================================
"""

from .models import (
    AggregateBucket,
    AggregationMode,
    AggregationResult,
    CATEGORY_PRIORITY,
    Granularity,
    SampleCategory,
    StatusCounts,
    StatusPercentages,
)
from .periods import last_periods, period_key, period_start, week_start
from .rollup import MIXED_SOURCE, build_daily_bucket, round_liters, rollup, select_source
from .service import AggregationService
from .status import classify_sample, compute_status_percentages, percentages_from_counts


__all__ = [
    # Types
    "AggregateBucket",
    "AggregationMode",
    "AggregationResult",
    "CATEGORY_PRIORITY",
    "Granularity",
    "SampleCategory",
    "StatusCounts",
    "StatusPercentages",
    # Periods
    "last_periods",
    "period_key",
    "period_start",
    "week_start",
    # Buckets
    "MIXED_SOURCE",
    "build_daily_bucket",
    "round_liters",
    "rollup",
    "select_source",
    # Status
    "classify_sample",
    "compute_status_percentages",
    "percentages_from_counts",
    # Service
    "AggregationService",
]
