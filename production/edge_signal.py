"""
Production - Edge-Signal (Pump-Cycle) Derivator.

============================================================
RESPONSIBILITY
============================================================
Independent production estimator driven by the collector
float switch (collector_ls1).

- A 1 -> 0 transition marks a pump-cycle boundary
- Each boundary closes the open cycle:
      production = max(0, level_at_boundary - level_at_open)
- Then a new cycle opens at the current level
- The first boundary only opens a cycle
- The cycle left open after the last boundary is never closed

The boundary level is the reading just before the transition
(the tank level when the pump started); the new cycle opens at
the level reported once the switch dropped.

============================================================
RATE
============================================================
Liters/hour over the last three closed cycles, divided by the
wall-clock time between the first and last of them. Zero with
fewer than two closed cycles.

============================================================
"""

import logging
from collections import deque
from datetime import datetime
from typing import Deque, Iterable, List, Optional

from core.constants import RATE_WINDOW_CYCLES, SECONDS_PER_HOUR
from monitoring.status_classifier import parse_flag

from .models import DerivedEvent, ProductionSource, PumpCycle, SignalReading


logger = logging.getLogger(__name__)


class PumpCycleDerivator:
    """
    Stateful pump-cycle tracker for one machine.

    Feed readings in timestamp order. Readings without a signal or
    level are skipped and do not count as the previous reading.
    """

    source = ProductionSource.EDGE_SIGNAL

    def __init__(self, machine_id: str, rate_window: int = RATE_WINDOW_CYCLES) -> None:
        self._machine_id = machine_id
        self._rate_window = rate_window
        self._previous: Optional[SignalReading] = None
        self._open_cycle: Optional[PumpCycle] = None
        self._recent: Deque[PumpCycle] = deque(maxlen=rate_window)
        self._cycles_closed = 0
        self._boundaries = 0
        self._first_boundary_at: Optional[datetime] = None
        self._total_production = 0.0

    # =========================================================
    # PROPERTIES
    # =========================================================

    @property
    def machine_id(self) -> str:
        return self._machine_id

    @property
    def cycles_closed(self) -> int:
        return self._cycles_closed

    @property
    def boundaries_seen(self) -> int:
        return self._boundaries

    @property
    def first_boundary_at(self) -> Optional[datetime]:
        """Timestamp of the first boundary fed; every closed cycle ends after it."""
        return self._first_boundary_at

    @property
    def total_production(self) -> float:
        return round(self._total_production, 3)

    @property
    def open_cycle(self) -> Optional[PumpCycle]:
        return self._open_cycle

    @property
    def recent_cycles(self) -> List[PumpCycle]:
        return list(self._recent)

    # =========================================================
    # DERIVATION
    # =========================================================

    def feed(self, reading: SignalReading) -> Optional[DerivedEvent]:
        """
        Process the next reading.

        Returns:
            The event for the cycle closed by this reading, if any.
            Zero-production cycles still yield an event.
        """
        if reading.signal is None or reading.level is None:
            return None

        previous = self._previous
        self._previous = reading

        if previous is None:
            return None
        if previous.captured_at >= reading.captured_at:
            logger.warning(
                f"Out-of-order reading for {self._machine_id} at "
                f"{reading.captured_at.isoformat()}, ignoring"
            )
            self._previous = previous
            return None

        if not (parse_flag(previous.signal) and not parse_flag(reading.signal)):
            return None

        self._boundaries += 1
        if self._first_boundary_at is None:
            self._first_boundary_at = previous.captured_at
        event = None

        if self._open_cycle is not None:
            cycle = self._open_cycle
            cycle.ended_at = previous.captured_at
            cycle.end_level = previous.level
            cycle.production_liters = round(max(0.0, previous.level - cycle.start_level), 3)

            self._recent.append(cycle)
            self._cycles_closed += 1
            self._total_production += cycle.production_liters

            event = DerivedEvent(
                machine_id=self._machine_id,
                source=self.source,
                production_liters=cycle.production_liters,
                previous_level=cycle.start_level,
                current_level=previous.level,
                occurred_at=previous.captured_at,
            )

        self._open_cycle = PumpCycle(
            started_at=reading.captured_at,
            start_level=reading.level,
        )
        return event

    def derive(self, readings: Iterable[SignalReading]) -> List[DerivedEvent]:
        """Feed a batch of readings and collect every closed-cycle event."""
        events = []
        for reading in readings:
            event = self.feed(reading)
            if event is not None:
                events.append(event)
        return events

    def production_rate(self) -> float:
        """
        Recent production rate in liters/hour.

        Returns:
            0.0 with fewer than two closed cycles or no elapsed time
        """
        cycles = list(self._recent)
        if len(cycles) < 2:
            return 0.0

        first_end: datetime = cycles[0].ended_at
        last_end: datetime = cycles[-1].ended_at
        hours = (last_end - first_end).total_seconds() / SECONDS_PER_HOUR
        if hours <= 0:
            return 0.0

        total = sum(cycle.production_liters for cycle in cycles)
        return round(total / hours, 3)

    def to_dict(self) -> dict:
        return {
            "machine_id": self._machine_id,
            "boundaries_seen": self._boundaries,
            "cycles_closed": self._cycles_closed,
            "total_production": self.total_production,
            "production_rate_lph": self.production_rate(),
            "open_cycle_started_at": (
                self._open_cycle.started_at.isoformat() if self._open_cycle else None
            ),
        }


__all__ = ["PumpCycleDerivator"]
