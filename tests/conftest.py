"""
Shared fixtures for the pipeline test suite.

Every test that touches storage gets its own SQLite file under
tmp_path, so tests never share rows.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

import pytest

from core.clock import ClockFactory, MockClock
from storage.database import (
    create_all_tables,
    create_database_engine,
    create_session_factory,
    transaction_scope,
)
from storage.repositories.machines import MachineRepository
from storage.repositories.production import (
    MachineTotalsRepository,
    ProductionEventRepository,
    ProductionSummaryRepository,
)
from storage.repositories.telemetry import SnapshotRepository, TelemetrySampleRepository


# Wednesday; its week starts Sunday 2024-03-03
NOW = datetime(2024, 3, 6, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_database_engine(f"sqlite:///{tmp_path / 'pipeline.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    """Global mock clock pinned to NOW."""
    mock = MockClock(NOW)
    ClockFactory.set_clock(mock)
    yield mock
    ClockFactory.reset()


@pytest.fixture
def store(session_factory, clock):
    return SeedStore(session_factory)


# =============================================================
# SEEDING HELPERS
# =============================================================

class SeedStore:
    """Writes and reads rows through the repositories, one transaction each."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def machine(self, machine_id: str, device_uid: Optional[str] = None) -> None:
        with transaction_scope(self.session_factory) as session:
            machines = MachineRepository(session)
            machines.register(machine_id)
            if device_uid:
                machines.bind_device(machine_id, device_uid)

    def snapshot(self, machine_id: str, level: float, captured_at: datetime) -> None:
        with transaction_scope(self.session_factory) as session:
            SnapshotRepository(session).insert(machine_id, level, captured_at)

    def sample(self, machine_id: str, captured_at: datetime, **fields: Any) -> None:
        with transaction_scope(self.session_factory) as session:
            TelemetrySampleRepository(session).insert(machine_id, captured_at, **fields)

    def event(
        self,
        machine_id: str,
        liters: float,
        occurred_at: datetime,
        source: str = "level_delta",
        recorded_at: Optional[datetime] = None,
    ) -> None:
        with transaction_scope(self.session_factory) as session:
            ProductionEventRepository(session).insert(
                machine_id=machine_id,
                source=source,
                production_liters=liters,
                previous_level=0.0,
                current_level=liters,
                occurred_at=occurred_at,
                recorded_at=recorded_at,
            )

    def events(self, machine_id: str, source: Optional[str] = None) -> List[Any]:
        with transaction_scope(self.session_factory) as session:
            return ProductionEventRepository(session).range(
                machine_id,
                datetime(2000, 1, 1, tzinfo=timezone.utc),
                datetime(2100, 1, 1, tzinfo=timezone.utc),
                source=source,
            )

    def bucket(self, machine_id: str, granularity: str, period_key: str) -> Any:
        with transaction_scope(self.session_factory) as session:
            return ProductionSummaryRepository(session).get_bucket(
                machine_id, granularity, period_key
            )

    def buckets(self, machine_id: str, granularity: str) -> List[Any]:
        with transaction_scope(self.session_factory) as session:
            return ProductionSummaryRepository(session).all_buckets(machine_id, granularity)

    def total(self, machine_id: str) -> Any:
        with transaction_scope(self.session_factory) as session:
            return MachineTotalsRepository(session).get(machine_id)
