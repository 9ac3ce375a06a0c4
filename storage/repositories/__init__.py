"""
Repository Layer Package.

============================================================
PURPOSE
============================================================
The Repository Layer is the ONLY gateway to persistent storage.
All database access MUST go through repository classes.

============================================================
ARCHITECTURE PRINCIPLES
============================================================
1. Session Injection: Sessions are injected, not created internally
2. No commits: the caller's transaction_scope owns the unit of work
3. Dedup on natural keys: inserts are safe to repeat
4. Exception Handling: All DB errors wrapped in repository exceptions

============================================================
REPOSITORY GROUPS
============================================================

RAW (Append-Only)
-----------------
- SnapshotRepository: Tank level snapshots
- TelemetrySampleRepository: Flag samples

DERIVED
-------
- ProductionEventRepository: Production events per source
- ProductionSummaryRepository: Aggregate buckets
- MachineTotalsRepository: Cumulative totals and watermark

REGISTRY
--------
- MachineRepository: Machines and device bindings

============================================================
"""

from storage.repositories.exceptions import (
    ConnectionError,
    DuplicateRecordError,
    IntegrityError,
    QueryError,
    RecordNotFoundError,
    RepositoryException,
    ValidationError,
)
from storage.repositories.machines import MachineRepository
from storage.repositories.production import (
    MachineTotalsRepository,
    ProductionEventRepository,
    ProductionSummaryRepository,
)
from storage.repositories.telemetry import SnapshotRepository, TelemetrySampleRepository

__all__ = [
    "RepositoryException",
    "RecordNotFoundError",
    "DuplicateRecordError",
    "IntegrityError",
    "ConnectionError",
    "QueryError",
    "ValidationError",
    "SnapshotRepository",
    "TelemetrySampleRepository",
    "ProductionEventRepository",
    "ProductionSummaryRepository",
    "MachineTotalsRepository",
    "MachineRepository",
]
