"""
Data Ingestion - Snapshot Service.

============================================================
RESPONSIBILITY
============================================================
The single write path for snapshots and telemetry samples.

- Validates input (level >= 0, parseable timestamp)
- Writes exactly once per (machine_id, captured_at)
- Publishes SnapshotInserted after the row is committed

============================================================
ERROR HANDLING
============================================================
- Malformed input raises SnapshotValidationError; it is logged
  and never retried
- A duplicate is not an error: inserted=False
- Storage failures propagate to the caller

============================================================
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from core.clock import ensure_utc, from_iso8601
from core.exceptions import SnapshotValidationError
from production.channel import SnapshotChannel, SnapshotInserted
from storage.database import SessionFactory, transaction_scope
from storage.repositories.telemetry import SnapshotRepository, TelemetrySampleRepository

from .types import SnapshotWriteResult, TelemetryPoint


logger = logging.getLogger(__name__)


# Telemetry field name -> telemetry_samples column
SAMPLE_COLUMN_MAP: Dict[str, str] = {
    "water_level_L": "water_level_liters",
    "collector_ls1": "collector_ls1",
    "compressor_on": "compressor_on",
    "producing_water": "producing_water",
    "full_tank": "full_tank",
    "defrosting": "defrosting",
    "ambient_temp_C": "ambient_temp_c",
    "ambient_rh_pct": "ambient_rh_pct",
    "refrigerant_temp_C": "refrigerant_temp_c",
    "current_A": "current_a",
}


def _numeric_or_none(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return 1.0 if value.strip().lower() == "true" else 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def sample_columns(fields: Mapping[str, Any]) -> Dict[str, Optional[float]]:
    """Map telemetry fields to sample columns; unparseable values become None."""
    return {
        column: _numeric_or_none(fields.get(name))
        for name, column in SAMPLE_COLUMN_MAP.items()
        if name in fields
    }


def validate_snapshot(
    machine_id: str,
    level: Any,
    timestamp: Union[datetime, str],
) -> Tuple[float, datetime]:
    """
    Validate and normalize snapshot input.

    Returns:
        (level as float, aware UTC timestamp)

    Raises:
        SnapshotValidationError: Missing machine, non-numeric or
            negative level, unparseable timestamp
    """
    if not machine_id:
        raise SnapshotValidationError("machine_id is required", field="machine_id")

    if isinstance(level, bool):
        raise SnapshotValidationError(
            "Water level must be numeric", machine_id=machine_id, field="level", value=level
        )
    try:
        value = float(level)
    except (TypeError, ValueError):
        raise SnapshotValidationError(
            "Water level must be numeric", machine_id=machine_id, field="level", value=level
        )
    if math.isnan(value) or math.isinf(value):
        raise SnapshotValidationError(
            "Water level must be finite", machine_id=machine_id, field="level", value=level
        )
    if value < 0:
        raise SnapshotValidationError(
            f"Negative water level {value}L rejected",
            machine_id=machine_id,
            field="level",
            value=level,
        )

    if isinstance(timestamp, datetime):
        captured_at = ensure_utc(timestamp)
    elif isinstance(timestamp, str):
        try:
            captured_at = from_iso8601(timestamp)
        except ValueError as e:
            raise SnapshotValidationError(
                f"Unparseable timestamp {timestamp!r}",
                machine_id=machine_id,
                field="timestamp",
                value=timestamp,
                cause=e,
            )
    else:
        raise SnapshotValidationError(
            "Timestamp must be a datetime or ISO 8601 string",
            machine_id=machine_id,
            field="timestamp",
            value=timestamp,
        )

    return value, captured_at


class SnapshotService:
    """
    Snapshot ingestion.

    ============================================================
    USAGE
    ============================================================
    service = SnapshotService(session_factory, channel=channel)
    result = await service.record_snapshot("M-1", 5.3, "2024-03-05T10:00:00Z")
    result.inserted   # False on a retried tick

    ============================================================
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        channel: Optional[SnapshotChannel] = None,
    ) -> None:
        self._session_factory = session_factory
        self._channel = channel
        self._inserted = 0
        self._duplicates = 0
        self._rejected = 0

    async def record_snapshot(
        self,
        machine_id: str,
        level: Any,
        timestamp: Union[datetime, str],
    ) -> SnapshotWriteResult:
        """
        Record one tank level snapshot.

        Raises:
            SnapshotValidationError: Malformed level or timestamp
        """
        try:
            value, captured_at = validate_snapshot(machine_id, level, timestamp)
        except SnapshotValidationError as e:
            self._rejected += 1
            logger.warning(f"Snapshot rejected: {e.message} {e.context}")
            raise

        inserted = await asyncio.to_thread(
            self._write, machine_id, value, captured_at, None
        )
        return self._finish(machine_id, value, captured_at, inserted)

    async def record_point(self, machine_id: str, point: TelemetryPoint) -> SnapshotWriteResult:
        """
        Record the snapshot and the flag sample of one telemetry point.

        Both rows share one transaction and one timestamp.

        Raises:
            SnapshotValidationError: The point has no usable water level
        """
        try:
            value, captured_at = validate_snapshot(
                machine_id, point.get("water_level_L"), point.captured_at
            )
        except SnapshotValidationError as e:
            self._rejected += 1
            logger.warning(f"Telemetry point rejected: {e.message} {e.context}")
            raise

        inserted = await asyncio.to_thread(
            self._write, machine_id, value, captured_at, sample_columns(point.fields)
        )
        return self._finish(machine_id, value, captured_at, inserted)

    def _write(
        self,
        machine_id: str,
        level: float,
        captured_at: datetime,
        sample: Optional[Dict[str, Optional[float]]],
    ) -> bool:
        with transaction_scope(self._session_factory) as session:
            _, inserted = SnapshotRepository(session).insert(machine_id, level, captured_at)
            if sample is not None:
                TelemetrySampleRepository(session).insert(machine_id, captured_at, **sample)
        return inserted

    def _finish(
        self,
        machine_id: str,
        level: float,
        captured_at: datetime,
        inserted: bool,
    ) -> SnapshotWriteResult:
        if inserted:
            self._inserted += 1
            logger.info(f"Snapshot {machine_id}@{captured_at.isoformat()}: {level}L")
            if self._channel is not None:
                self._channel.publish(
                    SnapshotInserted(
                        machine_id=machine_id,
                        captured_at=captured_at,
                        water_level=level,
                    )
                )
        else:
            self._duplicates += 1
            logger.debug(f"Snapshot {machine_id}@{captured_at.isoformat()} already stored")

        return SnapshotWriteResult(
            machine_id=machine_id,
            captured_at=captured_at,
            inserted=inserted,
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            "inserted": self._inserted,
            "duplicates": self._duplicates,
            "rejected": self._rejected,
        }


__all__ = [
    "SAMPLE_COLUMN_MAP",
    "SnapshotService",
    "sample_columns",
    "validate_snapshot",
]
