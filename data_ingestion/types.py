"""
Data Ingestion - Type Definitions.

============================================================
PURPOSE
============================================================
Shared types for snapshot capture.

- Capture status enum
- Telemetry point returned by a telemetry source
- Per-run capture result

No business logic lives here.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================
# ENUMS
# =============================================================

class CaptureStatus(str, Enum):
    """Status of a capture run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================
# TELEMETRY TYPES
# =============================================================

@dataclass(frozen=True)
class TelemetryPoint:
    """Most recent point of one device, pivoted by field name."""
    device_uid: str
    captured_at: datetime
    fields: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def water_level(self) -> Optional[float]:
        value = self.fields.get("water_level_L")
        if value is None:
            return None
        return float(value)


@dataclass(frozen=True)
class SnapshotWriteResult:
    """Outcome of SnapshotService.record_snapshot."""
    machine_id: str
    captured_at: datetime
    inserted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "captured_at": self.captured_at.isoformat(),
            "inserted": self.inserted,
        }


# =============================================================
# CAPTURE RESULT TYPES
# =============================================================

@dataclass
class CaptureResult:
    """Result of one capture tick across machines."""
    status: CaptureStatus = CaptureStatus.SUCCESS

    # Counts
    machines_polled: int = 0
    snapshots_inserted: int = 0
    snapshots_duplicate: int = 0
    machines_without_data: int = 0

    # Timing
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    errors: List[Dict[str, str]] = field(default_factory=list)

    def mark_complete(self, completed_at: datetime) -> None:
        """Mark the run as complete and calculate duration."""
        self.completed_at = completed_at
        if self.started_at:
            self.duration_seconds = (completed_at - self.started_at).total_seconds()
        if self.machines_polled == 0 and not self.errors:
            self.status = CaptureStatus.SKIPPED

    def add_error(self, machine_id: str, error: str) -> None:
        """Record a per-machine failure."""
        self.errors.append({"machine_id": machine_id, "error": error})
        if self.status == CaptureStatus.SUCCESS:
            self.status = CaptureStatus.PARTIAL

    def mark_failed(self, error: str) -> None:
        """Mark the whole run as failed."""
        self.status = CaptureStatus.FAILED
        self.errors.append({"machine_id": "*", "error": error})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/monitoring."""
        return {
            "status": self.status.value,
            "machines_polled": self.machines_polled,
            "snapshots_inserted": self.snapshots_inserted,
            "snapshots_duplicate": self.snapshots_duplicate,
            "machines_without_data": self.machines_without_data,
            "duration_seconds": self.duration_seconds,
            "error_count": len(self.errors),
            "errors": self.errors[:5],
        }
