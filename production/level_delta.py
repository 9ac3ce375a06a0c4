"""
Production - Level-Delta Derivator.

============================================================
RESPONSIBILITY
============================================================
Turns a pair of consecutive snapshots into at most one
production event.

- delta = newer.level - older.level
- delta > noise threshold   -> event at newer.captured_at
- delta <= noise threshold  -> no event (includes draining)

============================================================
DESIGN PRINCIPLES
============================================================
- Stateless and re-invokable
- Deduplication is the event store's job, keyed on
  (machine_id, source, occurred_at)
- Deltas are rounded to the millilitre before comparison so
  float noise never crosses the threshold

============================================================
"""

from typing import Optional

from core.constants import NOISE_THRESHOLD_LITERS
from core.exceptions import DerivationError

from .models import DerivedEvent, LevelReading, ProductionSource


DELTA_PRECISION = 3


class LevelDeltaDerivator:
    """Level-delta production estimator."""

    source = ProductionSource.LEVEL_DELTA

    def __init__(self, noise_threshold: float = NOISE_THRESHOLD_LITERS) -> None:
        self._noise_threshold = noise_threshold

    @property
    def noise_threshold(self) -> float:
        return self._noise_threshold

    def derive(self, older: LevelReading, newer: LevelReading) -> Optional[DerivedEvent]:
        """
        Derive the event for one snapshot pair.

        Args:
            older: Earlier snapshot
            newer: Immediately following snapshot

        Returns:
            The event, or None when the increase is within noise

        Raises:
            DerivationError: If the pair is not in timestamp order or
                spans two machines
        """
        if older.machine_id != newer.machine_id:
            raise DerivationError(
                "Snapshot pair spans two machines",
                context={"older": older.machine_id, "newer": newer.machine_id},
            )
        if newer.captured_at <= older.captured_at:
            raise DerivationError(
                "Snapshot pair is not in timestamp order",
                context={
                    "machine_id": newer.machine_id,
                    "older": older.captured_at.isoformat(),
                    "newer": newer.captured_at.isoformat(),
                },
            )

        delta = round(newer.level - older.level, DELTA_PRECISION)
        if delta <= self._noise_threshold:
            return None

        return DerivedEvent(
            machine_id=newer.machine_id,
            source=self.source,
            production_liters=delta,
            previous_level=older.level,
            current_level=newer.level,
            occurred_at=newer.captured_at,
        )


__all__ = ["LevelDeltaDerivator"]
