"""
Production Package.

Derives production events from raw telemetry.

Modules:
- level_delta: Snapshot-pair estimator
- edge_signal: Pump-cycle estimator on the collector float switch
- channel: Snapshot-inserted message channel
- derivation_service: Push and poll level-delta derivation
- edge_service: Windowed pump-cycle derivation
"""

from .channel import SnapshotChannel, SnapshotInserted
from .derivation_service import DerivationService
from .edge_service import EdgeSignalService
from .edge_signal import PumpCycleDerivator
from .level_delta import LevelDeltaDerivator
from .models import (
    DerivationResult,
    DerivedEvent,
    LevelReading,
    ProductionSource,
    PumpCycle,
    SignalReading,
)

__all__ = [
    "SnapshotChannel",
    "SnapshotInserted",
    "DerivationService",
    "EdgeSignalService",
    "PumpCycleDerivator",
    "LevelDeltaDerivator",
    "DerivationResult",
    "DerivedEvent",
    "LevelReading",
    "ProductionSource",
    "PumpCycle",
    "SignalReading",
]
