"""
Machine Registry Repository.

Machines and their device bindings. Every job discovers its
work from here instead of a fixed machine identifier.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import now_utc
from storage.models.machines import Machine, MachineDevice
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import RecordNotFoundError


class MachineRepository(BaseRepository[Machine]):
    """Repository for machines and device bindings."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Machine, "MachineRepository")

    def get(self, machine_id: str) -> Optional[Machine]:
        try:
            return self._session.get(Machine, machine_id)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get", {"machine_id": machine_id})
            raise

    def register(self, machine_id: str, name: Optional[str] = None) -> Machine:
        """Register a machine, or return it if already registered."""
        existing = self.get(machine_id)
        if existing is not None:
            if name and existing.name != name:
                existing.name = name
                self._session.flush()
            return existing
        self._logger.info(f"Registering machine {machine_id}")
        return self._add(Machine(machine_id=machine_id, name=name))

    def active_binding(self, machine_id: str) -> Optional[MachineDevice]:
        stmt = select(MachineDevice).where(
            and_(
                MachineDevice.machine_id == machine_id,
                MachineDevice.unassigned_at.is_(None),
            )
        )
        return self._execute_scalar(stmt, "active_binding")

    def bind_device(
        self,
        machine_id: str,
        device_uid: str,
        assigned_at: Optional[datetime] = None,
    ) -> MachineDevice:
        """
        Bind a device uid to a machine, closing any active binding.

        Raises:
            RecordNotFoundError: If the machine is not registered
        """
        if self.get(machine_id) is None:
            raise RecordNotFoundError(self._repository_name, machine_id)

        moment = assigned_at or now_utc()
        current = self.active_binding(machine_id)
        if current is not None:
            if current.device_uid == device_uid:
                return current
            current.unassigned_at = moment

        binding = MachineDevice(
            machine_id=machine_id,
            device_uid=device_uid,
            assigned_at=moment,
        )
        self._logger.info(f"Binding {machine_id} to device {device_uid}")
        return self._add(binding)

    def unbind_device(self, machine_id: str) -> bool:
        """Close the active binding. Returns False if none was active."""
        current = self.active_binding(machine_id)
        if current is None:
            return False
        current.unassigned_at = now_utc()
        self._session.flush()
        return True

    def list_machine_ids(self) -> List[str]:
        """Get every registered machine id, sorted."""
        stmt = select(Machine.machine_id).order_by(Machine.machine_id)
        return self._execute_query(stmt, "list_machine_ids")

    def list_bound_machines(self) -> List[Tuple[str, str]]:
        """Get (machine_id, device_uid) for every active binding."""
        try:
            stmt = (
                select(MachineDevice.machine_id, MachineDevice.device_uid)
                .where(MachineDevice.unassigned_at.is_(None))
                .order_by(MachineDevice.machine_id)
            )
            return [(row[0], row[1]) for row in self._session.execute(stmt).all()]
        except SQLAlchemyError as e:
            self._handle_db_error(e, "list_bound_machines")
            raise
