"""
Production Repositories.

============================================================
PURPOSE
============================================================
Stores for derived production data.

============================================================
REPOSITORIES
============================================================
- ProductionEventRepository: Derived events, one row per
  (machine_id, source, occurred_at)
- ProductionSummaryRepository: Aggregate buckets, upserted by
  (machine_id, granularity, period_key)
- MachineTotalsRepository: Cumulative totals and watermark

============================================================
"""

from datetime import date, datetime
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import and_, desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import now_utc
from storage.models.production import (
    MachineProductionTotal,
    ProductionEvent,
    ProductionEventRemoval,
    ProductionSummary,
)
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import ValidationError


# Bucket columns written by upsert_bucket
BUCKET_FIELDS = (
    "period_start",
    "total_production",
    "event_count",
    "producing_samples",
    "idle_samples",
    "full_water_samples",
    "producing_pct",
    "idle_pct",
    "full_water_pct",
    "disconnected_pct",
    "source",
)


class ProductionEventRepository(BaseRepository[ProductionEvent]):
    """
    Repository for production events.

    ============================================================
    IDEMPOTENCY
    ============================================================
    Derivators are stateless and re-invokable. insert() treats an
    existing (machine_id, source, occurred_at) row as already
    processed, so re-running a derivator never double-counts.
    replace_at() is the only way to change a stored event. Both
    derivation services write through it, so a pair or cycle
    re-derived after a late arrival overwrites the stale row.

    ============================================================
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, ProductionEvent, "ProductionEventRepository")

    # =========================================================
    # WRITE OPERATIONS
    # =========================================================

    def insert(
        self,
        machine_id: str,
        source: str,
        production_liters: float,
        previous_level: float,
        current_level: float,
        occurred_at: datetime,
        recorded_at: Optional[datetime] = None,
    ) -> Tuple[ProductionEvent, bool]:
        """
        Insert an event unless one exists for the same key.

        Returns:
            (event, inserted)

        Raises:
            ValidationError: If production_liters is not positive
        """
        if production_liters <= 0:
            raise ValidationError(
                repository_name=self._repository_name,
                operation="insert",
                field="production_liters",
                reason=f"must be > 0, got {production_liters}",
            )

        existing = self.get_at(machine_id, source, occurred_at)
        if existing is not None:
            return existing, False

        inserted = self._insert_if_absent(
            {
                "machine_id": machine_id,
                "source": source,
                "production_liters": production_liters,
                "previous_level": previous_level,
                "current_level": current_level,
                "occurred_at": occurred_at,
                "recorded_at": recorded_at or now_utc(),
            },
            key_columns=("machine_id", "source", "occurred_at"),
        )
        if inserted:
            self._logger.debug(
                f"Recorded {source} event {machine_id} {production_liters}L @ {occurred_at}"
            )
        return self.get_at(machine_id, source, occurred_at), inserted

    def replace_at(
        self,
        machine_id: str,
        source: str,
        occurred_at: datetime,
        production_liters: Optional[float] = None,
        previous_level: Optional[float] = None,
        current_level: Optional[float] = None,
    ) -> bool:
        """
        Make the stored event at a key match the given values.

        Passing production_liters=None removes any event at the key and
        logs the removal for incremental aggregation.

        Returns:
            True if the stored state changed
        """
        existing = self.get_at(machine_id, source, occurred_at)

        if production_liters is None:
            if existing is None:
                return False
            self._session.add(
                ProductionEventRemoval(
                    machine_id=machine_id,
                    source=source,
                    production_liters=existing.production_liters,
                    occurred_at=occurred_at,
                    removed_at=now_utc(),
                )
            )
            self._delete_where(
                ProductionEvent.event_id == existing.event_id,
                operation="replace_at",
            )
            self._logger.info(f"Removed superseded {source} event {machine_id} @ {occurred_at}")
            return True

        if existing is not None:
            if (
                existing.production_liters == production_liters
                and existing.previous_level == previous_level
                and existing.current_level == current_level
            ):
                return False
            self._delete_where(
                ProductionEvent.event_id == existing.event_id,
                operation="replace_at",
            )
            self._logger.info(
                f"Replacing {source} event {machine_id} @ {occurred_at}: "
                f"{existing.production_liters}L -> {production_liters}L"
            )

        self.insert(
            machine_id=machine_id,
            source=source,
            production_liters=production_liters,
            previous_level=previous_level,
            current_level=current_level,
            occurred_at=occurred_at,
        )
        return True

    # =========================================================
    # READ OPERATIONS
    # =========================================================

    def get_at(
        self,
        machine_id: str,
        source: str,
        occurred_at: datetime,
    ) -> Optional[ProductionEvent]:
        """Get the event stored at a key."""
        stmt = select(ProductionEvent).where(
            and_(
                ProductionEvent.machine_id == machine_id,
                ProductionEvent.source == source,
                ProductionEvent.occurred_at == occurred_at,
            )
        )
        return self._execute_scalar(stmt, "get_at")

    def sum_in_range(
        self,
        machine_id: str,
        start: datetime,
        end: datetime,
        source: Optional[str] = None,
    ) -> float:
        """
        Sum production in [start, end).

        Args:
            source: Restrict to one derivator; None sums every source
        """
        criteria = [
            ProductionEvent.machine_id == machine_id,
            ProductionEvent.occurred_at >= start,
            ProductionEvent.occurred_at < end,
        ]
        if source is not None:
            criteria.append(ProductionEvent.source == source)

        try:
            stmt = select(
                func.coalesce(func.sum(ProductionEvent.production_liters), 0.0)
            ).where(and_(*criteria))
            return float(self._session.execute(stmt).scalar() or 0.0)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "sum_in_range", {"machine_id": machine_id})
            raise

    def range(
        self,
        machine_id: str,
        start: datetime,
        end: datetime,
        source: Optional[str] = None,
    ) -> List[ProductionEvent]:
        """Get events in [start, end), oldest first."""
        criteria = [
            ProductionEvent.machine_id == machine_id,
            ProductionEvent.occurred_at >= start,
            ProductionEvent.occurred_at < end,
        ]
        if source is not None:
            criteria.append(ProductionEvent.source == source)

        stmt = (
            select(ProductionEvent)
            .where(and_(*criteria))
            .order_by(ProductionEvent.occurred_at, ProductionEvent.source)
        )
        return self._execute_query(stmt, "range")

    def latest(self, machine_id: str, source: Optional[str] = None) -> Optional[ProductionEvent]:
        """Get the most recent event."""
        stmt = select(ProductionEvent).where(ProductionEvent.machine_id == machine_id)
        if source is not None:
            stmt = stmt.where(ProductionEvent.source == source)
        stmt = stmt.order_by(desc(ProductionEvent.occurred_at)).limit(1)
        return self._execute_scalar(stmt, "latest")

    def earliest(self, machine_id: str) -> Optional[ProductionEvent]:
        """Get the oldest event of any source."""
        stmt = (
            select(ProductionEvent)
            .where(ProductionEvent.machine_id == machine_id)
            .order_by(ProductionEvent.occurred_at)
            .limit(1)
        )
        return self._execute_scalar(stmt, "earliest")

    def recorded_since(self, machine_id: str, since: datetime) -> List[ProductionEvent]:
        """
        Get events written at or after a moment, whatever their occurred_at.

        Catches late events that land in periods already aggregated.
        """
        stmt = (
            select(ProductionEvent)
            .where(
                and_(
                    ProductionEvent.machine_id == machine_id,
                    ProductionEvent.recorded_at >= since,
                )
            )
            .order_by(ProductionEvent.occurred_at)
        )
        return self._execute_query(stmt, "recorded_since")

    def removed_since(self, machine_id: str, since: datetime) -> List[ProductionEventRemoval]:
        """Get removals logged at or after a moment."""
        stmt = (
            select(ProductionEventRemoval)
            .where(
                and_(
                    ProductionEventRemoval.machine_id == machine_id,
                    ProductionEventRemoval.removed_at >= since,
                )
            )
            .order_by(ProductionEventRemoval.occurred_at)
        )
        try:
            return list(self._session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "removed_since", {"machine_id": machine_id})
            raise

    # =========================================================
    # ADMINISTRATIVE
    # =========================================================

    def delete_all(self, machine_id: str) -> int:
        """Delete every event of a machine and its removal log. Reset only."""
        self._delete_where(
            ProductionEventRemoval.machine_id == machine_id,
            operation="delete_all",
            model_class=ProductionEventRemoval,
        )
        count = self._delete_where(
            ProductionEvent.machine_id == machine_id,
            operation="delete_all",
        )
        self._logger.warning(f"Deleted {count} production events for {machine_id}")
        return count


class ProductionSummaryRepository(BaseRepository[ProductionSummary]):
    """
    Repository for aggregate buckets.

    A bucket is overwritten as a whole by upsert_bucket, never
    incremented in place, so a rerun converges to the same row.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, ProductionSummary, "ProductionSummaryRepository")

    def upsert_bucket(
        self,
        machine_id: str,
        granularity: str,
        period_key: str,
        bucket: Mapping[str, Any],
    ) -> ProductionSummary:
        """
        Insert or overwrite the bucket for a period.

        Args:
            machine_id: Machine identifier
            granularity: daily, weekly, monthly or yearly
            period_key: Period identifier within the granularity
            bucket: Column values, see BUCKET_FIELDS

        Returns:
            The stored row
        """
        values = {name: bucket[name] for name in BUCKET_FIELDS if name in bucket}
        values["updated_at"] = now_utc()

        existing = self.get_bucket(machine_id, granularity, period_key)
        try:
            if existing is None:
                entity = ProductionSummary(
                    machine_id=machine_id,
                    granularity=granularity,
                    period_key=period_key,
                    **values,
                )
                self._session.add(entity)
            else:
                entity = existing
                for name, value in values.items():
                    setattr(entity, name, value)
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(
                e,
                "upsert_bucket",
                {"key": "period_key", "value": f"{machine_id}/{granularity}/{period_key}"},
            )
            raise

        return entity

    def get_bucket(
        self,
        machine_id: str,
        granularity: str,
        period_key: str,
    ) -> Optional[ProductionSummary]:
        """Get one bucket by key."""
        stmt = select(ProductionSummary).where(
            and_(
                ProductionSummary.machine_id == machine_id,
                ProductionSummary.granularity == granularity,
                ProductionSummary.period_key == period_key,
            )
        )
        return self._execute_scalar(stmt, "get_bucket")

    def get_buckets(
        self,
        machine_id: str,
        granularity: str,
        limit: int,
    ) -> List[ProductionSummary]:
        """Get the most recent stored buckets, newest first. No gap-filling."""
        stmt = (
            select(ProductionSummary)
            .where(
                and_(
                    ProductionSummary.machine_id == machine_id,
                    ProductionSummary.granularity == granularity,
                )
            )
            .order_by(desc(ProductionSummary.period_start))
            .limit(limit)
        )
        return self._execute_query(stmt, "get_buckets")

    def range_buckets(
        self,
        machine_id: str,
        granularity: str,
        first_start: date,
        last_start: date,
    ) -> List[ProductionSummary]:
        """Get buckets whose period_start is in [first_start, last_start], oldest first."""
        stmt = (
            select(ProductionSummary)
            .where(
                and_(
                    ProductionSummary.machine_id == machine_id,
                    ProductionSummary.granularity == granularity,
                    ProductionSummary.period_start >= first_start,
                    ProductionSummary.period_start <= last_start,
                )
            )
            .order_by(ProductionSummary.period_start)
        )
        return self._execute_query(stmt, "range_buckets")

    def all_buckets(self, machine_id: str, granularity: str) -> List[ProductionSummary]:
        """Get every bucket of a granularity, oldest first."""
        stmt = (
            select(ProductionSummary)
            .where(
                and_(
                    ProductionSummary.machine_id == machine_id,
                    ProductionSummary.granularity == granularity,
                )
            )
            .order_by(ProductionSummary.period_start)
        )
        return self._execute_query(stmt, "all_buckets")

    def delete_all(self, machine_id: str) -> int:
        """Delete every bucket of a machine."""
        return self._delete_where(
            ProductionSummary.machine_id == machine_id,
            operation="delete_all",
        )


class MachineTotalsRepository(BaseRepository[MachineProductionTotal]):
    """Repository for cumulative production totals."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, MachineProductionTotal, "MachineTotalsRepository")

    def get(self, machine_id: str) -> Optional[MachineProductionTotal]:
        try:
            return self._session.get(MachineProductionTotal, machine_id)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get", {"machine_id": machine_id})
            raise

    def upsert(
        self,
        machine_id: str,
        total_liters: float,
        last_aggregated_at: Optional[datetime],
    ) -> MachineProductionTotal:
        """Overwrite the cumulative total and watermark of a machine."""
        entity = self.get(machine_id)
        try:
            if entity is None:
                entity = MachineProductionTotal(machine_id=machine_id)
                self._session.add(entity)
            entity.total_liters = total_liters
            entity.last_aggregated_at = last_aggregated_at
            entity.last_updated = now_utc()
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "upsert", {"machine_id": machine_id})
            raise
        return entity

    def delete(self, machine_id: str) -> int:
        """Delete the totals row of a machine."""
        return self._delete_where(
            MachineProductionTotal.machine_id == machine_id,
            operation="delete",
        )

