"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Read-only observation of the machines and the pipeline.

- Status classifier: current operating status per machine
- Pipeline health monitor: silent-failure detection
  (import from monitoring.pipeline_health)

Nothing here writes to the stores.

============================================================
"""

from .status_classifier import (
    MachineStatus,
    StatusClassifier,
    StatusFlags,
    classify_status,
    parse_flag,
)


__all__ = [
    "MachineStatus",
    "StatusClassifier",
    "StatusFlags",
    "classify_status",
    "parse_flag",
]
