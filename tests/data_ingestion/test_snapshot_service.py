"""
Tests for snapshot ingestion and the capture job.

Tests cover:
- Input validation
- Write-once per (machine_id, captured_at)
- Channel notification on first insert only
- Capture across bound machines with per-machine isolation
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from core.exceptions import SnapshotValidationError, TelemetrySourceError
from data_ingestion.capture_service import SnapshotCaptureService
from data_ingestion.snapshot_service import SnapshotService, sample_columns, validate_snapshot
from data_ingestion.telemetry_source import TelemetrySource
from data_ingestion.types import CaptureStatus, TelemetryPoint
from production.channel import SnapshotChannel
from storage.database import transaction_scope
from storage.repositories.telemetry import SnapshotRepository, TelemetrySampleRepository


CAPTURED_AT = datetime(2024, 3, 6, 11, 59, tzinfo=timezone.utc)


def stored_snapshot(session_factory, machine_id, captured_at=CAPTURED_AT):
    with transaction_scope(session_factory) as session:
        return SnapshotRepository(session).get_at(machine_id, captured_at)


def stored_sample(session_factory, machine_id, captured_at=CAPTURED_AT):
    with transaction_scope(session_factory) as session:
        return TelemetrySampleRepository(session).get_at(machine_id, captured_at)


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def channel():
    return SnapshotChannel()


@pytest.fixture
def service(session_factory, channel):
    return SnapshotService(session_factory, channel=channel)


# =============================================================
# VALIDATION
# =============================================================

class TestValidateSnapshot:

    def test_normalizes_input(self):
        level, captured_at = validate_snapshot("M-1", "5.3", "2024-03-06T11:59:00Z")

        assert level == 5.3
        assert captured_at == CAPTURED_AT

    def test_naive_datetime_is_utc(self):
        _, captured_at = validate_snapshot("M-1", 1, datetime(2024, 3, 6, 11, 59))

        assert captured_at == CAPTURED_AT

    def test_zero_level_is_valid(self):
        assert validate_snapshot("M-1", 0, CAPTURED_AT)[0] == 0.0

    @pytest.mark.parametrize("level", [-0.1, "abc", None, True, float("nan"), float("inf")])
    def test_bad_level(self, level):
        with pytest.raises(SnapshotValidationError) as exc_info:
            validate_snapshot("M-1", level, CAPTURED_AT)

        assert exc_info.value.context["field"] == "level"

    @pytest.mark.parametrize("timestamp", ["not a time", 1709726340, None])
    def test_bad_timestamp(self, timestamp):
        with pytest.raises(SnapshotValidationError) as exc_info:
            validate_snapshot("M-1", 5.0, timestamp)

        assert exc_info.value.context["field"] == "timestamp"

    def test_machine_required(self):
        with pytest.raises(SnapshotValidationError):
            validate_snapshot("", 5.0, CAPTURED_AT)


class TestSampleColumns:

    def test_maps_and_parses_fields(self):
        columns = sample_columns({
            "water_level_L": 5.3,
            "full_tank": "true",
            "producing_water": "n/a",
            "current_A": "2.5",
            "unknown": 1.0,
        })

        assert columns == {
            "water_level_liters": 5.3,
            "full_tank": 1.0,
            "producing_water": None,
            "current_a": 2.5,
        }

    def test_nan_becomes_none(self):
        assert sample_columns({"defrosting": float("nan")}) == {"defrosting": None}


# =============================================================
# SNAPSHOT SERVICE
# =============================================================

class TestSnapshotService:

    @pytest.mark.asyncio
    async def test_first_write_inserts_and_publishes(self, service, channel, session_factory):
        result = await service.record_snapshot("M-1", 5.3, "2024-03-06T11:59:00Z")

        assert result.inserted
        assert stored_snapshot(session_factory, "M-1").water_level_liters == 5.3
        message = await channel.receive(timeout=1)
        assert (message.machine_id, message.captured_at, message.water_level) == ("M-1", CAPTURED_AT, 5.3)

    @pytest.mark.asyncio
    async def test_duplicate_is_not_an_error(self, service, channel):
        await service.record_snapshot("M-1", 5.3, CAPTURED_AT)

        result = await service.record_snapshot("M-1", 6.0, CAPTURED_AT)

        assert not result.inserted
        assert channel.published == 1
        assert service.get_stats() == {"inserted": 1, "duplicates": 1, "rejected": 0}

    @pytest.mark.asyncio
    async def test_first_value_wins(self, service, session_factory):
        await service.record_snapshot("M-1", 5.3, CAPTURED_AT)
        await service.record_snapshot("M-1", 6.0, CAPTURED_AT)

        assert stored_snapshot(session_factory, "M-1").water_level_liters == 5.3

    @pytest.mark.asyncio
    async def test_rejection_is_counted(self, service, session_factory):
        with pytest.raises(SnapshotValidationError):
            await service.record_snapshot("M-1", -1.0, CAPTURED_AT)

        assert service.get_stats()["rejected"] == 1
        assert stored_snapshot(session_factory, "M-1") is None

    @pytest.mark.asyncio
    async def test_without_channel(self, session_factory):
        service = SnapshotService(session_factory)

        result = await service.record_snapshot("M-1", 5.3, CAPTURED_AT)

        assert result.to_dict() == {
            "machine_id": "M-1",
            "captured_at": "2024-03-06T11:59:00+00:00",
            "inserted": True,
        }

    @pytest.mark.asyncio
    async def test_record_point_writes_sample(self, service, session_factory):
        point = TelemetryPoint(
            device_uid="dev-1",
            captured_at=CAPTURED_AT,
            fields={"water_level_L": 5.3, "producing_water": "true", "full_tank": "n/a"},
        )

        await service.record_point("M-1", point)

        sample = stored_sample(session_factory, "M-1")
        assert sample.water_level_liters == 5.3
        assert sample.producing_water == 1.0
        assert sample.full_tank is None
        assert stored_snapshot(session_factory, "M-1") is not None

    @pytest.mark.asyncio
    async def test_point_without_level_is_rejected(self, service, session_factory):
        point = TelemetryPoint(device_uid="dev-1", captured_at=CAPTURED_AT, fields={"full_tank": 1.0})

        with pytest.raises(SnapshotValidationError):
            await service.record_point("M-1", point)

        assert stored_sample(session_factory, "M-1") is None


# =============================================================
# CAPTURE JOB
# =============================================================

class TestSnapshotCaptureService:

    @pytest.fixture
    def source(self):
        source = AsyncMock(spec=TelemetrySource)

        async def query_latest(device_key, fields=None, window=None):
            if device_key == "dev-empty":
                return None
            if device_key == "dev-down":
                raise TelemetrySourceError("InfluxDB unreachable", device_key=device_key)
            return TelemetryPoint(
                device_uid=device_key,
                captured_at=CAPTURED_AT,
                fields={"water_level_L": 5.3, "producing_water": 1.0},
            )

        source.query_latest.side_effect = query_latest
        return source

    @pytest.fixture
    def capture(self, source, service, session_factory, clock):
        return SnapshotCaptureService(source, service, session_factory, clock=clock)

    @pytest.mark.asyncio
    async def test_partial_run(self, store, capture, session_factory):
        store.machine("M-1", "dev-1")
        store.machine("M-2", "dev-empty")
        store.machine("M-3", "dev-down")
        store.machine("M-4")

        result = await capture.capture_all()

        assert result.status == CaptureStatus.PARTIAL
        assert result.machines_polled == 3
        assert result.snapshots_inserted == 1
        assert result.machines_without_data == 1
        assert result.errors == [{"machine_id": "M-3", "error": "InfluxDB unreachable"}]
        assert stored_sample(session_factory, "M-1").producing_water == 1.0
        assert capture.last_result is result

    @pytest.mark.asyncio
    async def test_retried_tick_is_duplicate(self, store, capture):
        store.machine("M-1", "dev-1")
        await capture.capture_all()

        result = await capture.capture_all()

        assert result.status == CaptureStatus.SUCCESS
        assert result.snapshots_inserted == 0
        assert result.snapshots_duplicate == 1

    @pytest.mark.asyncio
    async def test_window_is_passed_to_source(self, store, source, service, session_factory, clock):
        store.machine("M-1", "dev-1")
        capture = SnapshotCaptureService(source, service, session_factory, clock=clock, window="-2h")

        await capture.capture_all()

        source.query_latest.assert_awaited_once_with("dev-1", window="-2h")

    @pytest.mark.asyncio
    async def test_no_bound_machines_is_skipped(self, capture, source):
        result = await capture.capture_all()

        assert result.status == CaptureStatus.SKIPPED
        source.query_latest.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listing_failure_fails_the_run(self, capture):
        with patch.object(capture, "_list_bound_machines", side_effect=RuntimeError("db down")):
            result = await capture.capture_all()

        assert result.status == CaptureStatus.FAILED
        assert result.to_dict()["error_count"] == 1
        assert result.errors[0]["machine_id"] == "*"

    @pytest.mark.asyncio
    async def test_duration_uses_clock(self, store, capture, clock):
        store.machine("M-1", "dev-1")

        result = await capture.capture_all()

        assert result.started_at == clock.now()
        assert result.duration_seconds == 0.0
        assert result.completed_at - result.started_at == timedelta(0)
