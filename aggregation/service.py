"""
Aggregation - Hierarchical Aggregation Service.

============================================================
RESPONSIBILITY
============================================================
Turns production events and telemetry samples into daily,
weekly, monthly and yearly buckets in the summary store.

- daily   <- events + samples of one UTC day
- weekly  <- stored daily buckets of the week
- monthly <- stored weekly buckets whose Sunday is in the month
- yearly  <- stored monthly buckets of the year

============================================================
MODES
============================================================
- backfill: every bucket of the machine is rebuilt from the
  full history
- incremental: days from the last watermark to today, plus the
  days of any event written or removed since the watermark and
  of any late telemetry sample, and every parent above them

A machine's run is one transaction. A crash or a stop between
ticks leaves the previous buckets intact, never a partial sum.

============================================================
CONCURRENCY
============================================================
One job per machine, at most `aggregation_workers` at once,
each in a worker thread with its own session. The bound keeps
backfills from starving the derivators on the same store.

============================================================
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Set

from core.clock import ClockFactory, ClockProtocol
from core.config import PipelineConfig
from core.exceptions import AggregationError, RollupInvariantViolation
from storage.database import SessionFactory, transaction_scope
from storage.repositories.machines import MachineRepository
from storage.repositories.production import (
    MachineTotalsRepository,
    ProductionEventRepository,
    ProductionSummaryRepository,
)
from storage.repositories.telemetry import TelemetrySampleRepository

from .models import AggregateBucket, AggregationMode, AggregationResult, Granularity
from .periods import (
    day_bounds,
    iter_days,
    last_periods,
    month_start,
    next_period_start,
    week_start,
    year_start,
)
from .rollup import build_daily_bucket, children_total, empty_bucket, rollup, round_liters


# Parent granularity -> child granularity
CHILD_GRANULARITY = {
    Granularity.WEEKLY: Granularity.DAILY,
    Granularity.MONTHLY: Granularity.WEEKLY,
    Granularity.YEARLY: Granularity.MONTHLY,
}


class AggregationService:
    """
    Incremental and backfill aggregation over all machines.

    ============================================================
    USAGE
    ============================================================
    service = AggregationService(session_factory, config)
    result = await service.run("incremental")
    buckets = service.get_buckets("M-1", Granularity.DAILY, 7)

    ============================================================
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: Optional[PipelineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or PipelineConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._logger = logging.getLogger("aggregation_service")
        self._last_result: Optional[AggregationResult] = None

    # =========================================================
    # RUN
    # =========================================================

    async def run(
        self,
        mode: str = AggregationMode.INCREMENTAL.value,
        machine_id: Optional[str] = None,
    ) -> AggregationResult:
        """
        Aggregate one machine or all registered machines.

        Args:
            mode: "incremental" (default) or "backfill"
            machine_id: Single machine; None means all machines

        Returns:
            {mode, machine_id, processed_buckets, errors[]} result

        Raises:
            AggregationError: If the mode is unknown
        """
        try:
            run_mode = AggregationMode(mode)
        except ValueError as e:
            raise AggregationError(f"Unknown aggregation mode: {mode}", cause=e)

        result = AggregationResult(
            mode=run_mode,
            machine_id=machine_id,
            started_at=self._clock.now(),
        )

        if machine_id is not None:
            machine_ids = [machine_id]
        else:
            machine_ids = await asyncio.to_thread(self._list_machines)

        semaphore = asyncio.Semaphore(self._config.aggregation_workers)

        async def run_one(target: str) -> int:
            async with semaphore:
                return await asyncio.to_thread(self.aggregate_machine, target, run_mode)

        outcomes = await asyncio.gather(
            *(run_one(target) for target in machine_ids),
            return_exceptions=True,
        )

        for target, outcome in zip(machine_ids, outcomes):
            if isinstance(outcome, Exception):
                self._logger.error(
                    f"Aggregation failed for {target}: {outcome}",
                    exc_info=outcome,
                )
                result.add_error(target, str(outcome))
                continue
            result.machines_processed += 1
            result.processed_buckets += outcome

        result.completed_at = self._clock.now()
        self._last_result = result
        self._logger.info(
            f"Aggregation ({run_mode.value}) finished: "
            f"{result.machines_processed}/{len(machine_ids)} machines, "
            f"{result.processed_buckets} buckets, {len(result.errors)} errors"
        )
        return result

    def aggregate_machine(self, machine_id: str, mode: AggregationMode) -> int:
        """
        Recompute a machine's buckets in one transaction.

        Returns:
            Number of buckets written
        """
        started_at = self._clock.now()
        today = started_at.date()

        with transaction_scope(self._session_factory) as session:
            events = ProductionEventRepository(session)
            samples = TelemetrySampleRepository(session)
            summaries = ProductionSummaryRepository(session)
            totals = MachineTotalsRepository(session)

            watermark_row = totals.get(machine_id)
            watermark = watermark_row.last_aggregated_at if watermark_row else None

            if mode == AggregationMode.BACKFILL or watermark is None:
                days = self._history_days(events, samples, machine_id, today)
                if mode == AggregationMode.BACKFILL:
                    removed = summaries.delete_all(machine_id)
                    self._logger.info(f"{machine_id}: backfill dropped {removed} buckets")
            else:
                days = set(iter_days(watermark.date(), today))
                days.update(
                    event.occurred_at.date()
                    for event in events.recorded_since(machine_id, watermark)
                )
                days.update(
                    removal.occurred_at.date()
                    for removal in events.removed_since(machine_id, watermark)
                )
                days.update(
                    sample.captured_at.date()
                    for sample in samples.recorded_since(machine_id, watermark)
                )

            written = 0
            touched_days: List[date] = []
            for day in sorted(days):
                start, end = day_bounds(day)
                day_events = events.range(machine_id, start, end)
                day_samples = samples.range(machine_id, start, end)
                key = day.isoformat()
                if (
                    not day_events
                    and not day_samples
                    and summaries.get_bucket(machine_id, Granularity.DAILY.value, key) is None
                ):
                    continue
                bucket = build_daily_bucket(
                    machine_id, day, day_events, day_samples, self._config.source_policy
                )
                summaries.upsert_bucket(
                    machine_id, Granularity.DAILY.value, bucket.period_key, bucket.to_row()
                )
                touched_days.append(day)
                written += 1

            weeks = sorted({week_start(day) for day in touched_days})
            written += self._rebuild_parents(summaries, machine_id, Granularity.WEEKLY, weeks)

            months = sorted({month_start(start) for start in weeks})
            written += self._rebuild_parents(summaries, machine_id, Granularity.MONTHLY, months)

            years = sorted({year_start(start) for start in months})
            written += self._rebuild_parents(summaries, machine_id, Granularity.YEARLY, years)

            yearly = summaries.all_buckets(machine_id, Granularity.YEARLY.value)
            cumulative = round_liters(sum(row.total_production for row in yearly))
            totals.upsert(machine_id, cumulative, started_at)

        self._logger.info(
            f"{machine_id}: {mode.value} wrote {written} buckets "
            f"({len(touched_days)} days), cumulative {cumulative}L"
        )
        return written

    # =========================================================
    # HELPERS
    # =========================================================

    def _history_days(
        self,
        events: ProductionEventRepository,
        samples: TelemetrySampleRepository,
        machine_id: str,
        today: date,
    ) -> Set[date]:
        """Every day from the first event or sample to today."""
        firsts = []
        lasts = [today]

        first_event = events.earliest(machine_id)
        if first_event is not None:
            firsts.append(first_event.occurred_at.date())
            lasts.append(events.latest(machine_id).occurred_at.date())

        first_sample = samples.earliest(machine_id)
        if first_sample is not None:
            firsts.append(first_sample.captured_at.date())
            lasts.append(samples.latest(machine_id).captured_at.date())

        if not firsts:
            return set()
        return set(iter_days(min(firsts), max(lasts)))

    def _children(
        self,
        summaries: ProductionSummaryRepository,
        machine_id: str,
        granularity: Granularity,
        start: date,
    ) -> List[AggregateBucket]:
        """Stored child buckets of the parent period starting at `start`."""
        last_child_start = next_period_start(granularity, start) - timedelta(days=1)
        rows = summaries.range_buckets(
            machine_id,
            CHILD_GRANULARITY[granularity].value,
            start,
            last_child_start,
        )
        return [AggregateBucket.from_row(row) for row in rows]

    def _rebuild_parents(
        self,
        summaries: ProductionSummaryRepository,
        machine_id: str,
        granularity: Granularity,
        starts: List[date],
    ) -> int:
        for start in starts:
            children = self._children(summaries, machine_id, granularity, start)
            parent = rollup(machine_id, granularity, start, children)
            summaries.upsert_bucket(
                machine_id, granularity.value, parent.period_key, parent.to_row()
            )
        return len(starts)

    def _list_machines(self) -> List[str]:
        with transaction_scope(self._session_factory) as session:
            return MachineRepository(session).list_machine_ids()

    # =========================================================
    # READS
    # =========================================================

    def get_buckets(
        self,
        machine_id: str,
        granularity: Granularity,
        count: int,
    ) -> List[AggregateBucket]:
        """
        The last `count` periods up to today, gaps filled.

        Returns:
            Exactly `count` buckets in ascending calendar order;
            periods without a stored bucket are zero with
            disconnected = 100
        """
        granularity = Granularity(granularity)
        periods = last_periods(granularity, count, self._clock.today())
        if not periods:
            return []

        with transaction_scope(self._session_factory) as session:
            rows = ProductionSummaryRepository(session).range_buckets(
                machine_id,
                granularity.value,
                periods[0][1],
                periods[-1][1],
            )
            stored = {row.period_key: AggregateBucket.from_row(row) for row in rows}

        return [
            stored.get(key) or empty_bucket(machine_id, granularity, key, start)
            for key, start in periods
        ]

    def verify_rollups(self, machine_id: str) -> List[RollupInvariantViolation]:
        """
        Re-check every stored parent bucket against its stored children.

        Mismatches beyond the tolerance are returned and logged,
        never corrected.
        """
        violations: List[RollupInvariantViolation] = []
        tolerance = self._config.rollup_tolerance_liters + 1e-9

        with transaction_scope(self._session_factory) as session:
            summaries = ProductionSummaryRepository(session)
            for granularity in CHILD_GRANULARITY:
                for row in summaries.all_buckets(machine_id, granularity.value):
                    children = self._children(summaries, machine_id, granularity, row.period_start)
                    expected = children_total(children)
                    if abs(row.total_production - expected) > tolerance:
                        violation = RollupInvariantViolation(
                            machine_id=machine_id,
                            granularity=granularity.value,
                            period_key=row.period_key,
                            stored_total=row.total_production,
                            children_total=expected,
                        )
                        self._logger.warning(violation.message)
                        violations.append(violation)

        return violations

    def get_status(self) -> Dict[str, Any]:
        return {
            "workers": self._config.aggregation_workers,
            "source_policy": self._config.source_policy,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }


__all__ = ["AggregationService", "CHILD_GRANULARITY"]
