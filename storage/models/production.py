"""
Production ORM Models.

============================================================
PURPOSE
============================================================
Derived production facts and the denormalized rollups built
from them.

============================================================
DATA LIFECYCLE ROLE
============================================================
- ProductionEvent: DERIVED, immutable once written. The
  (machine_id, source, occurred_at) key makes re-derivation
  idempotent.
- ProductionSummary: CACHE, overwritten by the aggregator and
  always re-derivable from events and samples.
- MachineProductionTotal: CACHE, cumulative figure plus the
  incremental aggregation watermark.
- ProductionEventRemoval: LOG, one row per event deleted by
  re-derivation; read by incremental aggregation.

============================================================
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, Float, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base


class ProductionEvent(Base):
    """
    Production attributed to a machine by one derivator.

    The source column tags which estimator produced the row
    ("level_delta" or "edge_signal"); the two are never merged.
    """

    __tablename__ = "production_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    machine_id: Mapped[str] = mapped_column(String(64), nullable=False)

    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Derivator that produced this event"
    )

    production_liters: Mapped[float] = mapped_column(Float, nullable=False)
    previous_level: Mapped[float] = mapped_column(Float, nullable=False)
    current_level: Mapped[float] = mapped_column(Float, nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    recorded_at: Mapped[datetime] = mapped_column(
        nullable=False,
        comment="When the derivator wrote the row; drives incremental aggregation"
    )

    __table_args__ = (
        UniqueConstraint(
            "machine_id", "source", "occurred_at",
            name="uq_event_machine_source_time",
        ),
        Index("idx_event_machine_time", "machine_id", "occurred_at"),
        Index("idx_event_machine_recorded", "machine_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProductionEvent {self.machine_id} {self.source} "
            f"{self.production_liters}L @ {self.occurred_at}>"
        )


class ProductionSummary(Base):
    """
    One aggregate bucket per (machine_id, granularity, period_key).

    Status sample counts are stored next to the percentages so
    parent buckets can be rebuilt from their children alone.
    """

    __tablename__ = "production_summaries"

    summary_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    machine_id: Mapped[str] = mapped_column(String(64), nullable=False)
    granularity: Mapped[str] = mapped_column(String(10), nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)

    total_production: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    producing_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idle_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    full_water_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    producing_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idle_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    full_water_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disconnected_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    source: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Estimator the total was taken from, or 'mixed'"
    )

    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "machine_id", "granularity", "period_key",
            name="uq_summary_machine_period",
        ),
        Index("idx_summary_machine_start", "machine_id", "granularity", "period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProductionSummary {self.machine_id} {self.granularity} "
            f"{self.period_key} {self.total_production}L>"
        )


class MachineProductionTotal(Base):
    """Cumulative production per machine and the aggregation watermark."""

    __tablename__ = "machine_production_totals"

    machine_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    total_liters: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    last_aggregated_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="Start of the last successful aggregation run"
    )

    last_updated: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<MachineProductionTotal {self.machine_id} {self.total_liters}L>"


class ProductionEventRemoval(Base):
    """
    Log of events deleted by re-derivation.

    A removed event leaves no row behind, so incremental
    aggregation reads this log to revisit the day it was in.
    """

    __tablename__ = "production_event_removals"

    removal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    machine_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    production_liters: Mapped[float] = mapped_column(Float, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    removed_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_removal_machine_removed", "machine_id", "removed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProductionEventRemoval {self.machine_id} {self.source} "
            f"{self.production_liters}L @ {self.occurred_at}>"
        )
