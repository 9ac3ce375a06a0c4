"""
Production - Edge-Signal Derivation Service.

Re-scans a lookback window of telemetry samples per machine
through a fresh PumpCycleDerivator and writes the closed cycles
through replace_at. Event keys are stable across overlapping
windows, so repeated passes converge instead of double-counting,
and a cycle re-derived after a late sample replaces its old value.

Cycles at or below the noise threshold are counted by the
derivator but not stored; one that drops below it on a later
pass has its stored event removed.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.clock import ClockFactory, ClockProtocol
from core.config import PipelineConfig
from storage.database import SessionFactory, transaction_scope
from storage.repositories.machines import MachineRepository
from storage.repositories.production import ProductionEventRepository
from storage.repositories.telemetry import TelemetrySampleRepository

from .edge_signal import PumpCycleDerivator
from .models import DerivationResult, DerivedEvent, ProductionSource, SignalReading


class EdgeSignalService:
    """Pump-cycle derivation over the telemetry sample store."""

    def __init__(
        self,
        session_factory: SessionFactory,
        config: Optional[PipelineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or PipelineConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._logger = logging.getLogger("edge_signal_service")
        self._machine_state: Dict[str, Dict[str, Any]] = {}

    def _derive_machine_sync(self, machine_id: str) -> Dict[str, Any]:
        now = self._clock.now()
        start = now - timedelta(hours=self._config.edge_lookback_hours)

        with transaction_scope(self._session_factory) as session:
            samples = TelemetrySampleRepository(session).range(
                machine_id, start, now + timedelta(seconds=1)
            )
            derivator = PumpCycleDerivator(machine_id)
            events = derivator.derive(SignalReading.from_sample(s) for s in samples)

            repo = ProductionEventRepository(session)
            written = 0
            for event in events:
                if event.production_liters <= self._config.noise_threshold_liters:
                    changed = repo.replace_at(
                        machine_id=event.machine_id,
                        source=event.source.value,
                        occurred_at=event.occurred_at,
                    )
                else:
                    changed = repo.replace_at(
                        machine_id=event.machine_id,
                        source=event.source.value,
                        occurred_at=event.occurred_at,
                        production_liters=event.production_liters,
                        previous_level=event.previous_level,
                        current_level=event.current_level,
                    )
                if changed:
                    written += 1

            written += self._drop_superseded(repo, derivator, events, now)

        summary = derivator.to_dict()
        summary["samples_scanned"] = len(samples)
        summary["events_written"] = written
        self._machine_state[machine_id] = summary
        return summary

    def _drop_superseded(
        self,
        repo: ProductionEventRepository,
        derivator: PumpCycleDerivator,
        events: List[DerivedEvent],
        now: datetime,
    ) -> int:
        """
        Remove stored cycles this pass no longer closes.

        Only the span after the first boundary is covered: every
        cycle ending there was fully re-derived. A late sample that
        adds a boundary moves a cycle's key, leaving the old one here.
        """
        if derivator.first_boundary_at is None:
            return 0

        derived = {event.occurred_at for event in events}
        removed = 0
        stored = repo.range(
            derivator.machine_id,
            derivator.first_boundary_at,
            now + timedelta(seconds=1),
            source=ProductionSource.EDGE_SIGNAL.value,
        )
        for event in stored:
            if event.occurred_at <= derivator.first_boundary_at or event.occurred_at in derived:
                continue
            if repo.replace_at(
                machine_id=event.machine_id,
                source=event.source,
                occurred_at=event.occurred_at,
            ):
                removed += 1
        return removed

    async def derive_machine(self, machine_id: str) -> Dict[str, Any]:
        """
        Derive pump-cycle events for one machine.

        Returns:
            Cycle counters, production rate and events written
        """
        return await asyncio.to_thread(self._derive_machine_sync, machine_id)

    async def derive_all(self, machine_ids: Optional[List[str]] = None) -> DerivationResult:
        """Run derive_machine for every machine with failure isolation."""
        result = DerivationResult(
            source=ProductionSource.EDGE_SIGNAL,
            started_at=self._clock.now(),
        )

        if machine_ids is None:
            machine_ids = await asyncio.to_thread(self._list_machines)

        outcomes = await asyncio.gather(
            *(self.derive_machine(machine_id) for machine_id in machine_ids),
            return_exceptions=True,
        )
        for machine_id, outcome in zip(machine_ids, outcomes):
            if isinstance(outcome, Exception):
                self._logger.error(
                    f"Edge-signal derivation failed for {machine_id}: {outcome}",
                    exc_info=outcome,
                )
                result.add_error(machine_id, str(outcome))
                continue
            result.machines_processed += 1
            result.events_written += outcome["events_written"]

        result.mark_complete(self._clock.now())
        self._logger.info(
            f"Edge-signal pass: {result.machines_processed} machines, "
            f"{result.events_written} events changed"
        )
        return result

    def production_rate(self, machine_id: str) -> float:
        """Rate from the last pass over a machine; 0.0 if never derived."""
        state = self._machine_state.get(machine_id)
        return state["production_rate_lph"] if state else 0.0

    def _list_machines(self) -> List[str]:
        with transaction_scope(self._session_factory) as session:
            return MachineRepository(session).list_machine_ids()


__all__ = ["EdgeSignalService"]
