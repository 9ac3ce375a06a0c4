"""
Production - Type Definitions.

============================================================
PURPOSE
============================================================
Shared types for the production derivators.

- Reading types consumed by the derivators
- The derived event shape, tagged by source
- Pump cycle bookkeeping
- Per-run result type

============================================================
DESIGN PRINCIPLES
============================================================
- Derivators work on plain readings, never on ORM rows
- Every derived event carries the estimator that produced it
- Serializable for logging and CLI output

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================
# ENUMS
# =============================================================

class ProductionSource(str, Enum):
    """Independent production estimators."""
    LEVEL_DELTA = "level_delta"
    EDGE_SIGNAL = "edge_signal"


class DerivationStatus(str, Enum):
    """Status of a derivation pass."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# =============================================================
# READINGS
# =============================================================

@dataclass(frozen=True)
class LevelReading:
    """A tank level at a moment."""
    machine_id: str
    level: float
    captured_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: Any) -> "LevelReading":
        """Build from a WaterLevelSnapshot row."""
        return cls(
            machine_id=snapshot.machine_id,
            level=snapshot.water_level_liters,
            captured_at=snapshot.captured_at,
        )


@dataclass(frozen=True)
class SignalReading:
    """Collector float switch state and tank level at a moment."""
    captured_at: datetime
    signal: Any
    level: Optional[float]

    @classmethod
    def from_sample(cls, sample: Any) -> "SignalReading":
        """Build from a TelemetrySample row."""
        return cls(
            captured_at=sample.captured_at,
            signal=sample.collector_ls1,
            level=sample.water_level_liters,
        )


# =============================================================
# DERIVED TYPES
# =============================================================

@dataclass(frozen=True)
class DerivedEvent:
    """Production attributed to a machine by one estimator."""
    machine_id: str
    source: ProductionSource
    production_liters: float
    previous_level: float
    current_level: float
    occurred_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "source": self.source.value,
            "production_liters": self.production_liters,
            "previous_level": self.previous_level,
            "current_level": self.current_level,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class PumpCycle:
    """
    Interval between two consecutive pump-cycle boundaries.

    Open until the next boundary sets ended_at.
    """
    started_at: datetime
    start_level: float
    ended_at: Optional[datetime] = None
    end_level: Optional[float] = None
    production_liters: float = 0.0

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None


# =============================================================
# RESULT TYPES
# =============================================================

@dataclass
class DerivationResult:
    """Result of one derivation pass over one or more machines."""
    source: ProductionSource
    status: DerivationStatus = DerivationStatus.SUCCESS

    machines_processed: int = 0
    events_written: int = 0
    events_replaced: int = 0

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    errors: List[Dict[str, str]] = field(default_factory=list)

    def add_error(self, machine_id: str, error: str) -> None:
        """Record a per-machine failure."""
        self.errors.append({"machine_id": machine_id, "error": error})
        if self.status == DerivationStatus.SUCCESS:
            self.status = DerivationStatus.PARTIAL

    def mark_complete(self, completed_at: datetime) -> None:
        self.completed_at = completed_at
        if self.errors and self.machines_processed == 0:
            self.status = DerivationStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/monitoring."""
        return {
            "source": self.source.value,
            "status": self.status.value,
            "machines_processed": self.machines_processed,
            "events_written": self.events_written,
            "events_replaced": self.events_replaced,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "errors": self.errors,
        }
