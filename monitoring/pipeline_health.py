"""
Monitoring - Pipeline Health Monitor.

============================================================
RESPONSIBILITY
============================================================
Detects machines whose pipeline has silently stopped.

Every sweep, for each machine with an active device binding:
- raw_data_age:   minutes since the latest snapshot
- production_age: minutes since the latest production event

Issues:
- raw_data_age > 60 min                      -> stale raw data
- production_age < 60 min, raw data stale    -> events recent but raw data stale
- no snapshot and no event ever              -> no data available
- stored parent bucket disagrees with its
  children (when rollup checks are enabled)  -> rollup mismatch

============================================================
DESIGN PRINCIPLES
============================================================
- Report only, never repair
- Records are transient and rebuilt on every sweep
- One machine's failed check never hides the others

============================================================
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.clock import ClockFactory, ClockProtocol
from core.config import PipelineConfig
from core.constants import SECONDS_PER_MINUTE
from storage.database import SessionFactory, transaction_scope
from storage.repositories.machines import MachineRepository
from storage.repositories.production import ProductionEventRepository
from storage.repositories.telemetry import SnapshotRepository


logger = logging.getLogger(__name__)


class HealthIssue(str, Enum):
    """Pipeline health issues."""
    STALE_RAW_DATA = "stale raw data"
    EVENTS_WITHOUT_RAW_DATA = "events recent but raw data stale"
    NO_DATA = "no data available"
    ROLLUP_MISMATCH = "rollup mismatch"


@dataclass
class PipelineHealthRecord:
    """Health of one machine's pipeline at one sweep."""
    machine_id: str
    raw_data_age_minutes: float
    production_age_minutes: float
    checked_at: datetime
    device_uid: Optional[str] = None
    issues: List[HealthIssue] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "device_uid": self.device_uid,
            "is_healthy": self.is_healthy,
            "raw_data_age_minutes": _finite_or_none(self.raw_data_age_minutes),
            "production_age_minutes": _finite_or_none(self.production_age_minutes),
            "issues": [issue.value for issue in self.issues],
            "checked_at": self.checked_at.isoformat(),
        }


def _finite_or_none(value: float) -> Optional[float]:
    if math.isinf(value):
        return None
    return round(value, 1)


def _age_minutes(now: datetime, moment: Optional[datetime]) -> float:
    if moment is None:
        return math.inf
    return (now - moment).total_seconds() / SECONDS_PER_MINUTE


def evaluate_issues(
    raw_data_age_minutes: float,
    production_age_minutes: float,
    stale_minutes: float,
) -> List[HealthIssue]:
    """Issues implied by the two ages."""
    issues: List[HealthIssue] = []
    raw_stale = raw_data_age_minutes > stale_minutes

    if raw_stale:
        issues.append(HealthIssue.STALE_RAW_DATA)
    if production_age_minutes < stale_minutes and raw_stale:
        issues.append(HealthIssue.EVENTS_WITHOUT_RAW_DATA)
    if math.isinf(raw_data_age_minutes) and math.isinf(production_age_minutes):
        issues.append(HealthIssue.NO_DATA)

    return issues


class PipelineHealthMonitor:
    """
    Periodic health sweep across bound machines.

    The optional aggregation service enables rollup checks; it
    must expose verify_rollups(machine_id).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: Optional[PipelineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        aggregation_service: Optional[Any] = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or PipelineConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._aggregation_service = aggregation_service
        self._last_records: List[PipelineHealthRecord] = []
        self._last_check: Optional[datetime] = None

    # =========================================================
    # CHECKS
    # =========================================================

    def check_machine(
        self,
        machine_id: str,
        device_uid: Optional[str] = None,
    ) -> PipelineHealthRecord:
        """Compute the health record of one machine."""
        now = self._clock.now()

        with transaction_scope(self._session_factory) as session:
            snapshot = SnapshotRepository(session).latest(machine_id)
            event = ProductionEventRepository(session).latest(machine_id)
            raw_captured_at = snapshot.captured_at if snapshot else None
            event_occurred_at = event.occurred_at if event else None

        record = PipelineHealthRecord(
            machine_id=machine_id,
            device_uid=device_uid,
            raw_data_age_minutes=_age_minutes(now, raw_captured_at),
            production_age_minutes=_age_minutes(now, event_occurred_at),
            checked_at=now,
        )
        record.issues = evaluate_issues(
            record.raw_data_age_minutes,
            record.production_age_minutes,
            self._config.health_stale_minutes,
        )

        if self._aggregation_service is not None:
            if self._aggregation_service.verify_rollups(machine_id):
                record.issues.append(HealthIssue.ROLLUP_MISMATCH)

        return record

    async def sweep(self) -> List[PipelineHealthRecord]:
        """
        Check every machine with an active device binding.

        A machine whose check raises is logged and left out of the
        result; the others are still reported.
        """
        bound = await asyncio.to_thread(self._list_bound_machines)

        outcomes = await asyncio.gather(
            *(
                asyncio.to_thread(self.check_machine, machine_id, device_uid)
                for machine_id, device_uid in bound
            ),
            return_exceptions=True,
        )

        records: List[PipelineHealthRecord] = []
        for (machine_id, _), outcome in zip(bound, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    f"Health check failed for {machine_id}: {outcome}",
                    exc_info=outcome,
                )
                continue
            records.append(outcome)

        unhealthy = [record.machine_id for record in records if not record.is_healthy]
        if unhealthy:
            logger.warning(
                f"Pipeline issues detected for {len(unhealthy)} machines: {unhealthy}"
            )
        else:
            logger.info(f"Pipeline healthy for {len(records)} machines")

        self._last_records = records
        self._last_check = self._clock.now()
        return records

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Sweep every health interval until stop_event is set."""
        interval = self._config.health_interval_seconds
        logger.info(f"Starting pipeline health monitoring every {interval}s")

        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Health sweep failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Stopped pipeline health monitoring")

    # =========================================================
    # READS
    # =========================================================

    def unhealthy_machines(self) -> List[PipelineHealthRecord]:
        return [record for record in self._last_records if not record.is_healthy]

    def healthy_machines(self) -> List[PipelineHealthRecord]:
        return [record for record in self._last_records if record.is_healthy]

    @property
    def last_check(self) -> Optional[datetime]:
        return self._last_check

    def _list_bound_machines(self):
        with transaction_scope(self._session_factory) as session:
            return MachineRepository(session).list_bound_machines()


__all__ = [
    "HealthIssue",
    "PipelineHealthRecord",
    "PipelineHealthMonitor",
    "evaluate_issues",
]
