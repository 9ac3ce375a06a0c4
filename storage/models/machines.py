"""
Machine Registry ORM Models.

============================================================
PURPOSE
============================================================
Machines are an index, not a compiled-in constant. Every job
iterates the registry to discover which machines to process.

============================================================
MODELS
============================================================
- Machine: A water-generation machine
- MachineDevice: Binding of a machine to the microcontroller
  whose uid tags its telemetry. At most one binding per
  machine is active (unassigned_at IS NULL).

============================================================
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin


class Machine(Base, TimestampMixin):
    """A registered water-generation machine."""

    __tablename__ = "machines"

    machine_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Business identifier of the machine"
    )

    name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Display name"
    )

    def __repr__(self) -> str:
        return f"<Machine {self.machine_id}>"


class MachineDevice(Base):
    """
    Device binding history for a machine.

    Rebinding closes the previous row instead of deleting it so the
    history of which uid fed which machine is kept.
    """

    __tablename__ = "machine_devices"

    binding_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    machine_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("machines.machine_id", ondelete="CASCADE"),
        nullable=False,
    )

    device_uid: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Microcontroller uid used as telemetry tag"
    )

    assigned_at: Mapped[datetime] = mapped_column(nullable=False)

    unassigned_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="NULL while the binding is active"
    )

    __table_args__ = (
        Index("idx_machine_devices_machine", "machine_id", "unassigned_at"),
        Index("idx_machine_devices_uid", "device_uid"),
    )

    @property
    def is_active(self) -> bool:
        return self.unassigned_at is None

    def __repr__(self) -> str:
        return f"<MachineDevice {self.machine_id}->{self.device_uid}>"
