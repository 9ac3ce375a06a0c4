"""
Monitoring - Machine Status Classifier.

============================================================
RESPONSIBILITY
============================================================
Computes a machine's operating status on read from its latest
snapshot, its control flags and the current time.

Decision order (first match wins):
1. no snapshot at all            -> Offline
2. data age > staleness          -> Disconnected
3. defrosting                    -> Defrosting
4. full water                    -> Full Water
5. producing                     -> Producing
6. idle                          -> Idle
7. no flag: fill >= 95%          -> Full Water, else Idle

============================================================
DESIGN PRINCIPLES
============================================================
- Staleness threshold is always a parameter: live views use a
  short threshold, historical views the legacy one
- Flags are parsed permissively; upstream encodes booleans as
  numbers and garbage means "unset", never an error
- Status is never persisted as authoritative state

============================================================
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from core.clock import ensure_utc
from core.constants import (
    DEFAULT_TANK_CAPACITY_LITERS,
    FULL_WATER_FILL_RATIO,
    LEGACY_STALENESS_SECONDS,
    LIVE_STALENESS_SECONDS,
)


# =============================================================
# STATUS
# =============================================================

class MachineStatus(str, Enum):
    """Operating status of a machine."""
    PRODUCING = "Producing"
    IDLE = "Idle"
    FULL_WATER = "Full Water"
    DISCONNECTED = "Disconnected"
    DEFROSTING = "Defrosting"
    OFFLINE = "Offline"


# =============================================================
# FLAG PARSING
# =============================================================

def parse_flag(value: Any) -> bool:
    """
    Interpret an upstream flag value.

    Any nonzero number counts as set. Numeric strings are parsed.
    None, NaN, and anything unparseable count as unset.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return not math.isnan(value) and value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text == "true":
            return True
        try:
            number = float(text)
        except ValueError:
            return False
        return not math.isnan(number) and number != 0
    return False


@dataclass(frozen=True)
class StatusFlags:
    """The four flags the classifier looks at, as raw upstream values."""
    producing: Any = None
    full_water: Any = None
    idle: Any = None
    defrosting: Any = None

    @classmethod
    def from_sample(cls, sample: Any) -> "StatusFlags":
        """
        Build from a TelemetrySample row.

        The controller has no explicit idle flag; a running
        compressor also counts as producing.
        """
        producing = sample.producing_water
        if not parse_flag(producing) and parse_flag(sample.compressor_on):
            producing = sample.compressor_on
        return cls(
            producing=producing,
            full_water=sample.full_tank,
            idle=None,
            defrosting=sample.defrosting,
        )


# =============================================================
# CLASSIFICATION
# =============================================================

def classify_status(
    level: Optional[float],
    captured_at: Optional[datetime],
    flags: StatusFlags,
    now: datetime,
    staleness_seconds: float,
    tank_capacity: float = DEFAULT_TANK_CAPACITY_LITERS,
    full_ratio: float = FULL_WATER_FILL_RATIO,
) -> MachineStatus:
    """
    Classify a machine from its latest reading.

    Args:
        level: Latest tank level in liters
        captured_at: Timestamp of the latest reading, None if never seen
        flags: Control flags from the same reading
        now: Current time
        staleness_seconds: Maximum data age before Disconnected
        tank_capacity: Tank size in liters for the fill fallback
        full_ratio: Fill fraction that counts as full

    Returns:
        The machine status
    """
    if captured_at is None:
        return MachineStatus.OFFLINE

    age = ensure_utc(now) - ensure_utc(captured_at)
    if age > timedelta(seconds=staleness_seconds):
        return MachineStatus.DISCONNECTED

    if parse_flag(flags.defrosting):
        return MachineStatus.DEFROSTING
    if parse_flag(flags.full_water):
        return MachineStatus.FULL_WATER
    if parse_flag(flags.producing):
        return MachineStatus.PRODUCING
    if parse_flag(flags.idle):
        return MachineStatus.IDLE

    if level is not None and tank_capacity > 0 and level / tank_capacity >= full_ratio:
        return MachineStatus.FULL_WATER
    return MachineStatus.IDLE


class StatusClassifier:
    """
    classify_status bound to a configuration and a clock.

    live() and legacy() pick the two staleness thresholds.
    """

    def __init__(
        self,
        live_staleness_seconds: float = LIVE_STALENESS_SECONDS,
        legacy_staleness_seconds: float = LEGACY_STALENESS_SECONDS,
        tank_capacity: float = DEFAULT_TANK_CAPACITY_LITERS,
        full_ratio: float = FULL_WATER_FILL_RATIO,
    ) -> None:
        self.live_staleness_seconds = live_staleness_seconds
        self.legacy_staleness_seconds = legacy_staleness_seconds
        self.tank_capacity = tank_capacity
        self.full_ratio = full_ratio

    @classmethod
    def from_config(cls, config: Any) -> "StatusClassifier":
        return cls(
            live_staleness_seconds=config.live_staleness_seconds,
            legacy_staleness_seconds=config.legacy_staleness_seconds,
            tank_capacity=config.tank_capacity_liters,
            full_ratio=config.full_water_ratio,
        )

    def classify(
        self,
        sample: Optional[Any],
        now: datetime,
        staleness_seconds: float,
    ) -> MachineStatus:
        """Classify from a TelemetrySample (or None)."""
        if sample is None:
            return MachineStatus.OFFLINE
        return classify_status(
            level=sample.water_level_liters,
            captured_at=sample.captured_at,
            flags=StatusFlags.from_sample(sample),
            now=now,
            staleness_seconds=staleness_seconds,
            tank_capacity=self.tank_capacity,
            full_ratio=self.full_ratio,
        )

    def live(self, sample: Optional[Any], now: datetime) -> MachineStatus:
        return self.classify(sample, now, self.live_staleness_seconds)

    def legacy(self, sample: Optional[Any], now: datetime) -> MachineStatus:
        return self.classify(sample, now, self.legacy_staleness_seconds)


__all__ = [
    "MachineStatus",
    "StatusFlags",
    "StatusClassifier",
    "classify_status",
    "parse_flag",
]
