"""
Telemetry Repositories.

============================================================
PURPOSE
============================================================
Append-only stores for the raw pipeline inputs.

============================================================
DATA LIFECYCLE
============================================================
- Stage: RAW
- Mutability: IMMUTABLE (append-only)
- Dedup key: (machine_id, captured_at)
- Deleted only through the administrative reset

============================================================
REPOSITORIES
============================================================
- SnapshotRepository: Tank level snapshots
- TelemetrySampleRepository: Per-point flag samples

============================================================
"""

from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import and_, desc, select
from sqlalchemy.orm import Session

from core.clock import now_utc
from storage.models.telemetry import TelemetrySample, WaterLevelSnapshot
from storage.repositories.base import BaseRepository


SAMPLE_FIELDS = (
    "water_level_liters",
    "collector_ls1",
    "compressor_on",
    "producing_water",
    "full_tank",
    "defrosting",
    "ambient_temp_c",
    "ambient_rh_pct",
    "refrigerant_temp_c",
    "current_a",
)


class SnapshotRepository(BaseRepository[WaterLevelSnapshot]):
    """
    Repository for water level snapshots.

    ============================================================
    IDEMPOTENCY
    ============================================================
    insert() is a no-op for an existing (machine_id, captured_at)
    so a scheduler re-running a crashed tick cannot duplicate a
    snapshot. Concurrent writers meet at the unique constraint;
    the loser keeps its transaction and gets the stored row.

    ============================================================
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, WaterLevelSnapshot, "SnapshotRepository")

    # =========================================================
    # CREATE OPERATIONS
    # =========================================================

    def insert(
        self,
        machine_id: str,
        water_level: float,
        captured_at: datetime,
    ) -> Tuple[WaterLevelSnapshot, bool]:
        """
        Insert a snapshot unless one exists at the same timestamp.

        Returns:
            (snapshot, inserted) where snapshot is the stored row
        """
        existing = self.get_at(machine_id, captured_at)
        if existing is not None:
            self._logger.debug(f"Snapshot {machine_id}@{captured_at} already stored")
            return existing, False

        inserted = self._insert_if_absent(
            {
                "machine_id": machine_id,
                "water_level_liters": water_level,
                "captured_at": captured_at,
                "recorded_at": now_utc(),
            },
            key_columns=("machine_id", "captured_at"),
        )
        stored = self.get_at(machine_id, captured_at)
        if not inserted:
            self._logger.debug(f"Snapshot {machine_id}@{captured_at} written concurrently")
        return stored, inserted

    # =========================================================
    # READ OPERATIONS
    # =========================================================

    def get_at(self, machine_id: str, captured_at: datetime) -> Optional[WaterLevelSnapshot]:
        """Get the snapshot stored at an exact timestamp."""
        stmt = select(WaterLevelSnapshot).where(
            and_(
                WaterLevelSnapshot.machine_id == machine_id,
                WaterLevelSnapshot.captured_at == captured_at,
            )
        )
        return self._execute_scalar(stmt, "get_at")

    def latest_two(self, machine_id: str) -> List[WaterLevelSnapshot]:
        """Get up to two most recent snapshots, newest first."""
        stmt = (
            select(WaterLevelSnapshot)
            .where(WaterLevelSnapshot.machine_id == machine_id)
            .order_by(desc(WaterLevelSnapshot.captured_at))
            .limit(2)
        )
        return self._execute_query(stmt, "latest_two")

    def latest(self, machine_id: str) -> Optional[WaterLevelSnapshot]:
        """Get the most recent snapshot."""
        stmt = (
            select(WaterLevelSnapshot)
            .where(WaterLevelSnapshot.machine_id == machine_id)
            .order_by(desc(WaterLevelSnapshot.captured_at))
            .limit(1)
        )
        return self._execute_scalar(stmt, "latest")

    def range(
        self,
        machine_id: str,
        start: datetime,
        end: datetime,
    ) -> List[WaterLevelSnapshot]:
        """Get snapshots in [start, end), oldest first."""
        stmt = (
            select(WaterLevelSnapshot)
            .where(
                and_(
                    WaterLevelSnapshot.machine_id == machine_id,
                    WaterLevelSnapshot.captured_at >= start,
                    WaterLevelSnapshot.captured_at < end,
                )
            )
            .order_by(WaterLevelSnapshot.captured_at)
        )
        return self._execute_query(stmt, "range")

    def captured_since(self, machine_id: str, start: datetime) -> List[WaterLevelSnapshot]:
        """Get snapshots captured at or after start, oldest first."""
        stmt = (
            select(WaterLevelSnapshot)
            .where(
                and_(
                    WaterLevelSnapshot.machine_id == machine_id,
                    WaterLevelSnapshot.captured_at >= start,
                )
            )
            .order_by(WaterLevelSnapshot.captured_at)
        )
        return self._execute_query(stmt, "captured_since")

    def recorded_since(self, machine_id: str, since: datetime) -> List[WaterLevelSnapshot]:
        """
        Get snapshots stored at or after a moment, whatever their captured_at.

        Finds late arrivals that slot in between older snapshots.
        """
        stmt = (
            select(WaterLevelSnapshot)
            .where(
                and_(
                    WaterLevelSnapshot.machine_id == machine_id,
                    WaterLevelSnapshot.recorded_at >= since,
                )
            )
            .order_by(WaterLevelSnapshot.captured_at)
        )
        return self._execute_query(stmt, "recorded_since")

    def neighbors(
        self,
        machine_id: str,
        captured_at: datetime,
    ) -> Tuple[Optional[WaterLevelSnapshot], Optional[WaterLevelSnapshot]]:
        """
        Get the snapshots immediately before and after a timestamp.

        Used to re-derive the pairs touched by a late arrival.
        """
        before = self._execute_scalar(
            select(WaterLevelSnapshot)
            .where(
                and_(
                    WaterLevelSnapshot.machine_id == machine_id,
                    WaterLevelSnapshot.captured_at < captured_at,
                )
            )
            .order_by(desc(WaterLevelSnapshot.captured_at))
            .limit(1),
            "neighbors",
        )
        after = self._execute_scalar(
            select(WaterLevelSnapshot)
            .where(
                and_(
                    WaterLevelSnapshot.machine_id == machine_id,
                    WaterLevelSnapshot.captured_at > captured_at,
                )
            )
            .order_by(WaterLevelSnapshot.captured_at)
            .limit(1),
            "neighbors",
        )
        return before, after

    # =========================================================
    # ADMINISTRATIVE
    # =========================================================

    def delete_for_machine(self, machine_id: str) -> int:
        """Delete every snapshot of a machine. Reset only."""
        return self._delete_where(
            WaterLevelSnapshot.machine_id == machine_id,
            operation="delete_for_machine",
        )


class TelemetrySampleRepository(BaseRepository[TelemetrySample]):
    """Repository for raw flag samples."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, TelemetrySample, "TelemetrySampleRepository")

    def insert(
        self,
        machine_id: str,
        captured_at: datetime,
        **fields: Any,
    ) -> Tuple[TelemetrySample, bool]:
        """
        Insert a sample unless one exists at the same timestamp.

        Args:
            machine_id: Machine identifier
            captured_at: Telemetry timestamp
            **fields: Any of SAMPLE_FIELDS; unknown names are ignored

        Returns:
            (sample, inserted)
        """
        existing = self.get_at(machine_id, captured_at)
        if existing is not None:
            return existing, False

        values = {name: fields[name] for name in SAMPLE_FIELDS if name in fields}
        values.update(machine_id=machine_id, captured_at=captured_at, recorded_at=now_utc())
        inserted = self._insert_if_absent(values, key_columns=("machine_id", "captured_at"))
        return self.get_at(machine_id, captured_at), inserted

    def get_at(self, machine_id: str, captured_at: datetime) -> Optional[TelemetrySample]:
        """Get the sample stored at an exact timestamp."""
        stmt = select(TelemetrySample).where(
            and_(
                TelemetrySample.machine_id == machine_id,
                TelemetrySample.captured_at == captured_at,
            )
        )
        return self._execute_scalar(stmt, "get_at")

    def range(
        self,
        machine_id: str,
        start: datetime,
        end: datetime,
    ) -> List[TelemetrySample]:
        """Get samples in [start, end), oldest first."""
        stmt = (
            select(TelemetrySample)
            .where(
                and_(
                    TelemetrySample.machine_id == machine_id,
                    TelemetrySample.captured_at >= start,
                    TelemetrySample.captured_at < end,
                )
            )
            .order_by(TelemetrySample.captured_at)
        )
        return self._execute_query(stmt, "range")

    def latest(self, machine_id: str) -> Optional[TelemetrySample]:
        """Get the most recent sample."""
        stmt = (
            select(TelemetrySample)
            .where(TelemetrySample.machine_id == machine_id)
            .order_by(desc(TelemetrySample.captured_at))
            .limit(1)
        )
        return self._execute_scalar(stmt, "latest")

    def earliest(self, machine_id: str) -> Optional[TelemetrySample]:
        """Get the oldest sample."""
        stmt = (
            select(TelemetrySample)
            .where(TelemetrySample.machine_id == machine_id)
            .order_by(TelemetrySample.captured_at)
            .limit(1)
        )
        return self._execute_scalar(stmt, "earliest")

    def recorded_since(self, machine_id: str, since: datetime) -> List[TelemetrySample]:
        """Get samples stored at or after a moment, oldest capture first."""
        stmt = (
            select(TelemetrySample)
            .where(
                and_(
                    TelemetrySample.machine_id == machine_id,
                    TelemetrySample.recorded_at >= since,
                )
            )
            .order_by(TelemetrySample.captured_at)
        )
        return self._execute_query(stmt, "recorded_since")

    def delete_for_machine(self, machine_id: str) -> int:
        """Delete every sample of a machine. Reset only."""
        return self._delete_where(
            TelemetrySample.machine_id == machine_id,
            operation="delete_for_machine",
        )
