"""
Storage - Administrative Reset.

============================================================
RESPONSIBILITY
============================================================
Single entry point that clears a machine's pipeline state.

Snapshots, samples, events, buckets and the cumulative total are
removed together in the caller's transaction so no derivable
state is left orphaned. The machine and its device binding stay
registered.

============================================================
"""

import logging
from typing import Dict

from sqlalchemy.orm import Session

from storage.repositories.machines import MachineRepository
from storage.repositories.production import (
    MachineTotalsRepository,
    ProductionEventRepository,
    ProductionSummaryRepository,
)
from storage.repositories.telemetry import SnapshotRepository, TelemetrySampleRepository


logger = logging.getLogger(__name__)


def reset_machine(session: Session, machine_id: str) -> Dict[str, int]:
    """
    Delete all stored pipeline data of one machine.

    Must run inside transaction_scope; nothing is committed here.

    Returns:
        Deleted row counts per store
    """
    counts = {
        "snapshots": SnapshotRepository(session).delete_for_machine(machine_id),
        "samples": TelemetrySampleRepository(session).delete_for_machine(machine_id),
        "events": ProductionEventRepository(session).delete_all(machine_id),
        "buckets": ProductionSummaryRepository(session).delete_all(machine_id),
        "totals": MachineTotalsRepository(session).delete(machine_id),
    }
    logger.warning(f"Reset machine {machine_id}: {counts}")
    return counts


def reset_all_machines(session: Session) -> Dict[str, Dict[str, int]]:
    """Reset every registered machine."""
    return {
        machine_id: reset_machine(session, machine_id)
        for machine_id in MachineRepository(session).list_machine_ids()
    }


__all__ = ["reset_machine", "reset_all_machines"]
