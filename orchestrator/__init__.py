"""
Orchestrator Package.

============================================================
PURPOSE
============================================================
Process entrypoint: wires the services, schedules the
periodic jobs and exposes the CLI.

- core: PipelineOrchestrator, create_orchestrator
- scheduler: JobScheduler, PeriodicJob
- cli: argparse entrypoint (python -m orchestrator.cli)

============================================================
"""

from .core import PipelineOrchestrator, create_orchestrator
from .scheduler import JobScheduler, PeriodicJob


__all__ = [
    "PipelineOrchestrator",
    "create_orchestrator",
    "JobScheduler",
    "PeriodicJob",
]
