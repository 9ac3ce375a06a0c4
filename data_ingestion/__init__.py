"""
Data Ingestion Package.

This package captures telemetry and writes snapshots.
No derivation logic - only acquisition and validation.

- telemetry_source: latest-point contract + InfluxDB client
- snapshot_service: validated, idempotent snapshot writes
- capture_service: periodic capture across bound machines
"""

from data_ingestion.capture_service import SnapshotCaptureService
from data_ingestion.snapshot_service import SnapshotService, validate_snapshot
from data_ingestion.telemetry_source import (
    InfluxTelemetrySource,
    TelemetrySource,
    build_latest_query,
    parse_latest_csv,
)
from data_ingestion.types import (
    CaptureResult,
    CaptureStatus,
    SnapshotWriteResult,
    TelemetryPoint,
)


__all__ = [
    # Services
    "SnapshotCaptureService",
    "SnapshotService",
    "validate_snapshot",
    # Telemetry
    "InfluxTelemetrySource",
    "TelemetrySource",
    "build_latest_query",
    "parse_latest_csv",
    # Types
    "CaptureResult",
    "CaptureStatus",
    "SnapshotWriteResult",
    "TelemetryPoint",
]
