"""
Production - Level-Delta Derivation Service.

============================================================
RESPONSIBILITY
============================================================
Runs the level-delta derivator against the snapshot store and
persists its events.

Two triggers, one result:
- push: a SnapshotInserted message re-derives the pairs around
  the new snapshot (handles late, out-of-order arrivals)
- poll: every 30 minutes each machine's pairs over a lookback
  window are re-derived, plus the pairs around any older
  snapshot stored inside that window

Both write through replace_at on the (machine_id, source,
occurred_at) key, so any interleaving of the two converges to
the event set implied by the snapshot history.

============================================================
DESIGN PRINCIPLES
============================================================
- Per-machine failures are isolated; one machine never aborts
  the batch
- Storage calls run in worker threads with their own session
- A failed machine is retried on the next trigger

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.clock import ClockFactory, ClockProtocol
from storage.database import SessionFactory, transaction_scope
from storage.repositories.machines import MachineRepository
from storage.repositories.production import ProductionEventRepository
from storage.repositories.telemetry import SnapshotRepository

from .channel import SnapshotChannel
from .level_delta import LevelDeltaDerivator
from .models import DerivationResult, LevelReading, ProductionSource


class DerivationService:
    """
    Level-delta derivation over the snapshot store.

    ============================================================
    USAGE
    ============================================================
    service = DerivationService(session_factory, channel=channel)
    await service.poll_once()                  # fallback poll
    await service.process_channel(stop_event)  # push consumer

    ============================================================
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        derivator: Optional[LevelDeltaDerivator] = None,
        channel: Optional[SnapshotChannel] = None,
        clock: Optional[ClockProtocol] = None,
        lookback: timedelta = timedelta(hours=24),
    ) -> None:
        self._session_factory = session_factory
        self._lookback = lookback
        self._derivator = derivator or LevelDeltaDerivator()
        self._channel = channel
        self._clock = clock or ClockFactory.get_clock()
        self._logger = logging.getLogger("derivation_service")

        self._messages_processed = 0
        self._last_poll: Optional[DerivationResult] = None

    # =========================================================
    # PAIR APPLICATION
    # =========================================================

    def _apply_pair(
        self,
        events: ProductionEventRepository,
        older: Any,
        newer: Any,
    ) -> bool:
        """Make the stored event at newer.captured_at match this pair."""
        event = self._derivator.derive(
            LevelReading.from_snapshot(older),
            LevelReading.from_snapshot(newer),
        )
        if event is None:
            return events.replace_at(
                machine_id=newer.machine_id,
                source=ProductionSource.LEVEL_DELTA.value,
                occurred_at=newer.captured_at,
            )
        return events.replace_at(
            machine_id=event.machine_id,
            source=event.source.value,
            occurred_at=event.occurred_at,
            production_liters=event.production_liters,
            previous_level=event.previous_level,
            current_level=event.current_level,
        )

    def _derive_latest_sync(self, machine_id: str) -> int:
        with transaction_scope(self._session_factory) as session:
            pair = SnapshotRepository(session).latest_two(machine_id)
            if len(pair) < 2:
                self._logger.debug(f"{machine_id}: fewer than two snapshots, nothing to derive")
                return 0
            newer, older = pair
            changed = self._apply_pair(ProductionEventRepository(session), older, newer)
            return 1 if changed else 0

    def _poll_machine_sync(self, machine_id: str, since: datetime) -> int:
        """
        Re-derive every pair a poll is responsible for.

        - each consecutive pair ending at or after `since`
        - both pairs around any older snapshot stored since `since`

        Pairs are keyed by the newer snapshot's timestamp and applied
        oldest first.
        """
        with transaction_scope(self._session_factory) as session:
            snapshots = SnapshotRepository(session)
            events = ProductionEventRepository(session)

            pairs: Dict[datetime, Tuple[Any, Any]] = {}

            window = snapshots.captured_since(machine_id, since)
            if window:
                before, _ = snapshots.neighbors(machine_id, window[0].captured_at)
                if before is not None:
                    window.insert(0, before)
            for older, newer in zip(window, window[1:]):
                pairs[newer.captured_at] = (older, newer)

            for late in snapshots.recorded_since(machine_id, since):
                if late.captured_at >= since:
                    continue
                before, after = snapshots.neighbors(machine_id, late.captured_at)
                if before is not None:
                    pairs[late.captured_at] = (before, late)
                if after is not None:
                    pairs[after.captured_at] = (late, after)
                self._logger.info(
                    f"{machine_id}: late snapshot at {late.captured_at.isoformat()} "
                    f"picked up by poll"
                )

            changed = 0
            for key in sorted(pairs):
                older, newer = pairs[key]
                if self._apply_pair(events, older, newer):
                    changed += 1
            return changed

    def _derive_around_sync(self, machine_id: str, captured_at: datetime) -> int:
        with transaction_scope(self._session_factory) as session:
            snapshots = SnapshotRepository(session)
            events = ProductionEventRepository(session)

            current = snapshots.get_at(machine_id, captured_at)
            if current is None:
                self._logger.warning(
                    f"{machine_id}: snapshot at {captured_at.isoformat()} not found, skipping"
                )
                return 0

            before, after = snapshots.neighbors(machine_id, captured_at)
            changed = 0
            if before is not None and self._apply_pair(events, before, current):
                changed += 1
            if after is not None and self._apply_pair(events, current, after):
                self._logger.info(
                    f"{machine_id}: late snapshot at {captured_at.isoformat()} "
                    f"re-derived successor pair at {after.captured_at.isoformat()}"
                )
                changed += 1
            return changed

    # =========================================================
    # PUBLIC OPERATIONS
    # =========================================================

    async def derive_latest(self, machine_id: str) -> int:
        """
        Derive from the two most recent snapshots of a machine.

        Returns:
            Number of event keys whose stored state changed (0 or 1)
        """
        return await asyncio.to_thread(self._derive_latest_sync, machine_id)

    async def derive_around(self, machine_id: str, captured_at: datetime) -> int:
        """
        Re-derive both pairs touching a snapshot.

        (predecessor, snapshot) and (snapshot, successor) are
        recomputed; the second replaces whatever was stored at the
        successor's timestamp.

        Returns:
            Number of event keys whose stored state changed (0-2)
        """
        return await asyncio.to_thread(self._derive_around_sync, machine_id, captured_at)

    async def poll_once(self, machine_ids: Optional[List[str]] = None) -> DerivationResult:
        """
        Re-derive each machine's pairs over the lookback window.

        Reaches the same events as push when the channel is down or
        dropped messages, as long as polls are less than one window
        apart.

        Args:
            machine_ids: Restrict to these machines (default: registry)
        """
        result = DerivationResult(
            source=ProductionSource.LEVEL_DELTA,
            started_at=self._clock.now(),
        )
        since = result.started_at - self._lookback

        if machine_ids is None:
            machine_ids = await asyncio.to_thread(self._list_machines)

        outcomes = await asyncio.gather(
            *(
                asyncio.to_thread(self._poll_machine_sync, machine_id, since)
                for machine_id in machine_ids
            ),
            return_exceptions=True,
        )

        for machine_id, outcome in zip(machine_ids, outcomes):
            if isinstance(outcome, Exception):
                self._logger.error(
                    f"Level-delta derivation failed for {machine_id}: {outcome}",
                    exc_info=outcome,
                )
                result.add_error(machine_id, str(outcome))
                continue
            result.machines_processed += 1
            result.events_written += outcome

        result.mark_complete(self._clock.now())
        self._last_poll = result
        self._logger.info(
            f"Level-delta poll: {result.machines_processed} machines, "
            f"{result.events_written} events changed, {len(result.errors)} errors"
        )
        return result

    async def process_channel(
        self,
        stop_event: asyncio.Event,
        receive_timeout: float = 1.0,
    ) -> None:
        """
        Consume SnapshotInserted messages until stop_event is set.

        A failing message is logged and dropped; the poll re-derives it.
        """
        if self._channel is None:
            self._logger.info("No snapshot channel configured, push derivation disabled")
            return

        self._logger.info("Snapshot channel consumer started")
        while not stop_event.is_set():
            message = await self._channel.receive(timeout=receive_timeout)
            if message is None:
                continue
            try:
                await self.derive_around(message.machine_id, message.captured_at)
                self._messages_processed += 1
            except Exception as e:
                self._logger.error(
                    f"Push derivation failed for {message.machine_id}@"
                    f"{message.captured_at.isoformat()}: {e}",
                    exc_info=True,
                )
            finally:
                self._channel.task_done()
        self._logger.info("Snapshot channel consumer stopped")

    def _list_machines(self) -> List[str]:
        with transaction_scope(self._session_factory) as session:
            return MachineRepository(session).list_machine_ids()

    def get_status(self) -> Dict[str, Any]:
        return {
            "noise_threshold_liters": self._derivator.noise_threshold,
            "messages_processed": self._messages_processed,
            "channel_pending": self._channel.pending() if self._channel else None,
            "last_poll": self._last_poll.to_dict() if self._last_poll else None,
        }


__all__ = ["DerivationService"]
