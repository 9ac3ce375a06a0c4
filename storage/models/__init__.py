"""
ORM Models Package.

Importing this package registers every table on Base.metadata.
"""

from storage.models.base import Base, TimestampMixin, UTCDateTime
from storage.models.machines import Machine, MachineDevice
from storage.models.production import (
    MachineProductionTotal,
    ProductionEvent,
    ProductionEventRemoval,
    ProductionSummary,
)
from storage.models.telemetry import TelemetrySample, WaterLevelSnapshot

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "Machine",
    "MachineDevice",
    "WaterLevelSnapshot",
    "TelemetrySample",
    "ProductionEvent",
    "ProductionEventRemoval",
    "ProductionSummary",
    "MachineProductionTotal",
]
