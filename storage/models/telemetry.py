"""
Telemetry ORM Models.

============================================================
PURPOSE
============================================================
Raw inputs to the pipeline, written by the capture job.

============================================================
DATA LIFECYCLE ROLE
============================================================
- Stage: RAW
- Mutability: IMMUTABLE (append-only)
- Source: Time-series telemetry source via the capture job
- Consumers: Derivators, aggregator, health monitor
- Deletion: Administrative reset only

============================================================
MODELS
============================================================
- WaterLevelSnapshot: Periodic tank level reading
- TelemetrySample: Full flag set of one telemetry point

============================================================
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Float, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base


class WaterLevelSnapshot(Base):
    """
    Timestamped tank level reading.

    Unique per (machine_id, captured_at). Re-submitting the same
    reading is a no-op at the repository layer.
    """

    __tablename__ = "water_level_snapshots"

    snapshot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    machine_id: Mapped[str] = mapped_column(String(64), nullable=False)

    water_level_liters: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Tank level in liters, >= 0"
    )

    captured_at: Mapped[datetime] = mapped_column(
        nullable=False,
        comment="Telemetry timestamp (UTC)"
    )

    recorded_at: Mapped[datetime] = mapped_column(
        nullable=False,
        comment="When the row was stored; finds late arrivals"
    )

    __table_args__ = (
        UniqueConstraint("machine_id", "captured_at", name="uq_snapshot_machine_time"),
        Index("idx_snapshot_machine_time", "machine_id", "captured_at"),
        Index("idx_snapshot_machine_recorded", "machine_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaterLevelSnapshot {self.machine_id} "
            f"{self.water_level_liters}L @ {self.captured_at}>"
        )


class TelemetrySample(Base):
    """
    One telemetry point with its control flags.

    Flags are kept as the numbers the controller reports; they are
    interpreted by the status classifier, not at write time.
    """

    __tablename__ = "telemetry_samples"

    sample_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    machine_id: Mapped[str] = mapped_column(String(64), nullable=False)

    captured_at: Mapped[datetime] = mapped_column(nullable=False)

    water_level_liters: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Control flags
    collector_ls1: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Collector float switch, 1 -> 0 marks a pump cycle"
    )
    compressor_on: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    producing_water: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    full_tank: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    defrosting: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Ambient readings
    ambient_temp_c: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ambient_rh_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    refrigerant_temp_c: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_a: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("machine_id", "captured_at", name="uq_sample_machine_time"),
        Index("idx_sample_machine_time", "machine_id", "captured_at"),
        Index("idx_sample_machine_recorded", "machine_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<TelemetrySample {self.machine_id} @ {self.captured_at}>"
