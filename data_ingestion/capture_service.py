"""
Data Ingestion - Snapshot Capture Job.

============================================================
RESPONSIBILITY
============================================================
Periodic capture of the latest telemetry point of every
machine with an active device binding.

1. List bound machines (machine_id, device_uid)
2. Query the telemetry source for each device
3. Record snapshot + flag sample through SnapshotService
4. Return a CaptureResult

============================================================
ERROR HANDLING
============================================================
- No point in the window: nothing is written, counted as
  machines_without_data
- Source errors and malformed points are recorded per machine
  in the result; the other machines still run
- A failed listing of machines marks the whole run failed

============================================================
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from core.clock import ClockFactory, ClockProtocol
from storage.database import SessionFactory, transaction_scope
from storage.repositories.machines import MachineRepository

from .snapshot_service import SnapshotService
from .telemetry_source import TelemetrySource
from .types import CaptureResult, SnapshotWriteResult


class SnapshotCaptureService:
    """
    Timer-driven snapshot capture.

    ============================================================
    WIRING
    ============================================================
    Source: TelemetrySource (InfluxDB in production)
    Writer: SnapshotService
    Machines: MachineRepository.list_bound_machines()

    ============================================================
    """

    def __init__(
        self,
        source: TelemetrySource,
        snapshot_service: SnapshotService,
        session_factory: SessionFactory,
        clock: Optional[ClockProtocol] = None,
        window: Optional[str] = None,
    ) -> None:
        self._source = source
        self._snapshot_service = snapshot_service
        self._session_factory = session_factory
        self._clock = clock or ClockFactory.get_clock()
        self._window = window
        self._logger = logging.getLogger("capture_service")
        self._last_result: Optional[CaptureResult] = None

    async def capture_machine(
        self,
        machine_id: str,
        device_uid: str,
    ) -> Optional[SnapshotWriteResult]:
        """
        Capture one machine.

        Returns:
            The write result, or None when the source had no point

        Raises:
            TelemetrySourceError: Source unreachable or payload malformed
            SnapshotValidationError: Point without a usable level
        """
        point = await self._source.query_latest(device_uid, window=self._window)
        if point is None:
            self._logger.info(f"{machine_id}: no telemetry point for device {device_uid}")
            return None
        return await self._snapshot_service.record_point(machine_id, point)

    async def capture_all(self) -> CaptureResult:
        """Capture every bound machine concurrently."""
        result = CaptureResult(started_at=self._clock.now())

        try:
            bound: List[Tuple[str, str]] = await asyncio.to_thread(self._list_bound_machines)
        except Exception as e:
            self._logger.error(f"Capture aborted, cannot list machines: {e}", exc_info=True)
            result.mark_failed(str(e))
            result.mark_complete(self._clock.now())
            self._last_result = result
            return result

        outcomes = await asyncio.gather(
            *(self.capture_machine(machine_id, device_uid) for machine_id, device_uid in bound),
            return_exceptions=True,
        )

        for (machine_id, device_uid), outcome in zip(bound, outcomes):
            result.machines_polled += 1
            if isinstance(outcome, Exception):
                self._logger.error(
                    f"Capture failed for {machine_id} ({device_uid}): {outcome}",
                    exc_info=outcome,
                )
                result.add_error(machine_id, str(outcome))
            elif outcome is None:
                result.machines_without_data += 1
            elif outcome.inserted:
                result.snapshots_inserted += 1
            else:
                result.snapshots_duplicate += 1

        result.mark_complete(self._clock.now())
        self._last_result = result
        self._logger.info(
            f"Capture finished: {result.snapshots_inserted} new, "
            f"{result.snapshots_duplicate} duplicate, "
            f"{result.machines_without_data} without data, {len(result.errors)} errors"
        )
        return result

    def _list_bound_machines(self) -> List[Tuple[str, str]]:
        with transaction_scope(self._session_factory) as session:
            return MachineRepository(session).list_bound_machines()

    @property
    def last_result(self) -> Optional[CaptureResult]:
        return self._last_result


__all__ = ["SnapshotCaptureService"]
