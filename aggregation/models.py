"""
Aggregation - Type Definitions.

============================================================
PURPOSE
============================================================
Shared types for the hierarchical aggregator.

- Granularity and run mode enums
- Status sample counts and percentages
- The aggregate bucket
- Per-run result type

============================================================
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================
# ENUMS
# =============================================================

class Granularity(str, Enum):
    """Bucket granularities, finest first."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AggregationMode(str, Enum):
    """How much history a run recomputes."""
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


class SampleCategory(str, Enum):
    """Per-sample status categories used for bucket percentages."""
    PRODUCING = "producing"
    IDLE = "idle"
    FULL_WATER = "full_water"


# Remainder tie-break order after rounding
CATEGORY_PRIORITY = (
    SampleCategory.PRODUCING,
    SampleCategory.IDLE,
    SampleCategory.FULL_WATER,
)


# =============================================================
# STATUS TYPES
# =============================================================

@dataclass
class StatusCounts:
    """Number of samples per category in a period."""
    producing: int = 0
    idle: int = 0
    full_water: int = 0

    @property
    def total(self) -> int:
        return self.producing + self.idle + self.full_water

    def add(self, category: SampleCategory) -> None:
        setattr(self, category.value, getattr(self, category.value) + 1)

    def get(self, category: SampleCategory) -> int:
        return getattr(self, category.value)

    def __add__(self, other: "StatusCounts") -> "StatusCounts":
        return StatusCounts(
            producing=self.producing + other.producing,
            idle=self.idle + other.idle,
            full_water=self.full_water + other.full_water,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "producing": self.producing,
            "idle": self.idle,
            "full_water": self.full_water,
        }


@dataclass(frozen=True)
class StatusPercentages:
    """Integer percentages; always sum to exactly 100."""
    producing: int = 0
    idle: int = 0
    full_water: int = 0
    disconnected: int = 100

    def to_dict(self) -> Dict[str, int]:
        return {
            "producing": self.producing,
            "idle": self.idle,
            "full_water": self.full_water,
            "disconnected": self.disconnected,
        }


# =============================================================
# BUCKET
# =============================================================

@dataclass
class AggregateBucket:
    """Pre-aggregated production for one period at one granularity."""
    machine_id: str
    granularity: Granularity
    period_key: str
    period_start: date
    total_production: float = 0.0
    event_count: int = 0
    status_counts: StatusCounts = field(default_factory=StatusCounts)
    status_percentages: StatusPercentages = field(default_factory=StatusPercentages)
    source: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Column values for ProductionSummaryRepository.upsert_bucket."""
        return {
            "period_start": self.period_start,
            "total_production": self.total_production,
            "event_count": self.event_count,
            "producing_samples": self.status_counts.producing,
            "idle_samples": self.status_counts.idle,
            "full_water_samples": self.status_counts.full_water,
            "producing_pct": self.status_percentages.producing,
            "idle_pct": self.status_percentages.idle,
            "full_water_pct": self.status_percentages.full_water,
            "disconnected_pct": self.status_percentages.disconnected,
            "source": self.source,
        }

    @classmethod
    def from_row(cls, row: Any) -> "AggregateBucket":
        """Build from a ProductionSummary row."""
        return cls(
            machine_id=row.machine_id,
            granularity=Granularity(row.granularity),
            period_key=row.period_key,
            period_start=row.period_start,
            total_production=row.total_production,
            event_count=row.event_count,
            status_counts=StatusCounts(
                producing=row.producing_samples,
                idle=row.idle_samples,
                full_water=row.full_water_samples,
            ),
            status_percentages=StatusPercentages(
                producing=row.producing_pct,
                idle=row.idle_pct,
                full_water=row.full_water_pct,
                disconnected=row.disconnected_pct,
            ),
            source=row.source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "granularity": self.granularity.value,
            "period_key": self.period_key,
            "period_start": self.period_start.isoformat(),
            "total_production": self.total_production,
            "event_count": self.event_count,
            "status_percentages": self.status_percentages.to_dict(),
            "source": self.source,
        }


# =============================================================
# RESULT TYPES
# =============================================================

@dataclass
class AggregationResult:
    """Structured result of an aggregation run."""
    mode: AggregationMode
    machine_id: Optional[str] = None
    processed_buckets: int = 0
    machines_processed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, machine_id: str, error: str) -> None:
        self.errors.append({"machine_id": machine_id, "error": error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "machine_id": self.machine_id,
            "processed_buckets": self.processed_buckets,
            "machines_processed": self.machines_processed,
            "errors": self.errors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
