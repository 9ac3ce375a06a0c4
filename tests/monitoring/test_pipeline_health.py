"""
Tests for the pipeline health monitor.
"""

import asyncio
import math
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from core.config import PipelineConfig
from monitoring.pipeline_health import (
    HealthIssue,
    PipelineHealthMonitor,
    PipelineHealthRecord,
    evaluate_issues,
)


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def monitor(session_factory, clock):
    return PipelineHealthMonitor(session_factory, clock=clock)


# =============================================================
# ISSUE RULES
# =============================================================

class TestEvaluateIssues:

    def test_fresh_pipeline_is_healthy(self):
        assert evaluate_issues(30.0, 10.0, 60) == []

    def test_stale_raw_data_with_recent_events(self):
        assert evaluate_issues(90.0, 10.0, 60) == [
            HealthIssue.STALE_RAW_DATA,
            HealthIssue.EVENTS_WITHOUT_RAW_DATA,
        ]

    def test_stale_raw_data_and_old_events(self):
        assert evaluate_issues(90.0, 120.0, 60) == [HealthIssue.STALE_RAW_DATA]

    def test_nothing_ever_seen(self):
        assert evaluate_issues(math.inf, math.inf, 60) == [
            HealthIssue.STALE_RAW_DATA,
            HealthIssue.NO_DATA,
        ]

    def test_snapshots_without_events_are_fine(self):
        assert evaluate_issues(5.0, math.inf, 60) == []


# =============================================================
# PER-MACHINE CHECK
# =============================================================

class TestCheckMachine:

    def test_healthy_machine(self, store, monitor, clock):
        store.snapshot("M-1", 2.0, clock.now() - timedelta(minutes=30))
        store.event("M-1", 1.0, clock.now() - timedelta(minutes=45))

        record = monitor.check_machine("M-1", "dev-1")

        assert record.is_healthy
        assert record.raw_data_age_minutes == pytest.approx(30.0)
        assert record.production_age_minutes == pytest.approx(45.0)
        assert record.device_uid == "dev-1"

    def test_events_without_fresh_snapshots(self, store, monitor, clock):
        store.snapshot("M-1", 2.0, clock.now() - timedelta(hours=2))
        store.event("M-1", 1.0, clock.now() - timedelta(minutes=10))

        record = monitor.check_machine("M-1")

        assert record.issues == [HealthIssue.STALE_RAW_DATA, HealthIssue.EVENTS_WITHOUT_RAW_DATA]

    def test_no_data(self, monitor):
        record = monitor.check_machine("M-1")

        assert HealthIssue.NO_DATA in record.issues
        assert record.to_dict()["raw_data_age_minutes"] is None
        assert record.to_dict()["issues"] == ["stale raw data", "no data available"]

    def test_custom_stale_threshold(self, store, session_factory, clock):
        monitor = PipelineHealthMonitor(
            session_factory, config=PipelineConfig(health_stale_minutes=15), clock=clock
        )
        store.snapshot("M-1", 2.0, clock.now() - timedelta(minutes=30))

        assert monitor.check_machine("M-1").issues == [HealthIssue.STALE_RAW_DATA]

    def test_rollup_mismatch_is_reported(self, store, session_factory, clock):
        aggregation = MagicMock()
        aggregation.verify_rollups.return_value = [MagicMock()]
        monitor = PipelineHealthMonitor(session_factory, clock=clock, aggregation_service=aggregation)
        store.snapshot("M-1", 2.0, clock.now() - timedelta(minutes=5))

        record = monitor.check_machine("M-1")

        assert record.issues == [HealthIssue.ROLLUP_MISMATCH]
        aggregation.verify_rollups.assert_called_once_with("M-1")

    def test_record_serializes_rounded_ages(self, clock):
        record = PipelineHealthRecord(
            machine_id="M-1",
            raw_data_age_minutes=12.345,
            production_age_minutes=math.inf,
            checked_at=clock.now(),
        )

        payload = record.to_dict()

        assert payload["raw_data_age_minutes"] == 12.3
        assert payload["production_age_minutes"] is None
        assert payload["is_healthy"]


# =============================================================
# SWEEP
# =============================================================

class TestSweep:

    @pytest.mark.asyncio
    async def test_only_bound_machines_are_checked(self, store, monitor, clock):
        store.machine("M-1", "dev-1")
        store.machine("M-2")
        store.snapshot("M-1", 2.0, clock.now() - timedelta(minutes=5))

        records = await monitor.sweep()

        assert [record.machine_id for record in records] == ["M-1"]
        assert monitor.healthy_machines() == records
        assert monitor.unhealthy_machines() == []
        assert monitor.last_check == clock.now()

    @pytest.mark.asyncio
    async def test_failed_check_does_not_hide_others(self, store, monitor):
        store.machine("M-1", "dev-1")
        store.machine("M-2", "dev-2")
        original = monitor.check_machine

        def flaky(machine_id, device_uid=None):
            if machine_id == "M-1":
                raise RuntimeError("database locked")
            return original(machine_id, device_uid)

        with patch.object(monitor, "check_machine", side_effect=flaky):
            records = await monitor.sweep()

        assert [record.machine_id for record in records] == ["M-2"]
        assert monitor.unhealthy_machines()[0].issues[-1] == HealthIssue.NO_DATA

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, store, monitor):
        store.machine("M-1", "dev-1")
        stop_event = asyncio.Event()

        task = asyncio.create_task(monitor.run_forever(stop_event))
        for _ in range(100):
            if monitor.last_check is not None:
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

        assert monitor.last_check is not None
