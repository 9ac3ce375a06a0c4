"""
Tests for the core module: configuration, clock and exceptions.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.clock import ClockFactory, MockClock, SystemClock, ensure_utc, from_iso8601
from core.config import AppConfig, PipelineConfig
from core.exceptions import (
    AggregationError,
    ConfigurationError,
    ErrorClassification,
    PipelineException,
    RollupInvariantViolation,
    SnapshotValidationError,
    TelemetrySourceError,
)


ENV_KEYS = (
    "DATABASE_URL",
    "NOISE_THRESHOLD_LITERS",
    "LIVE_STALENESS_SECONDS",
    "AGGREGATION_WORKERS",
    "SOURCE_POLICY",
    "INFLUXDB_URL",
    "INFLUXDB_TOKEN",
    "INFLUXDB_ORG",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# =============================================================
# CONFIGURATION
# =============================================================

class TestPipelineConfig:

    def test_defaults(self):
        config = PipelineConfig()

        assert config.noise_threshold_liters == 0.1
        assert config.live_staleness_seconds == 90
        assert config.legacy_staleness_seconds == 900
        assert config.health_stale_minutes == 60
        assert config.source_policy == "prefer_edge_signal"

    def test_negative_noise_threshold_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            PipelineConfig(noise_threshold_liters=-0.1)

        assert exc_info.value.context["config_key"] == "noise_threshold_liters"

    def test_unknown_source_policy_rejected(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig(source_policy="average")

    def test_worker_pool_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig(aggregation_workers=0)

    def test_full_ratio_bounds(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig(full_water_ratio=1.5)


class TestAppConfigFromEnv:

    def test_reads_environment(self, clean_env):
        clean_env.setenv("DATABASE_URL", "sqlite:///from-env.db")
        clean_env.setenv("NOISE_THRESHOLD_LITERS", "0.25")
        clean_env.setenv("SOURCE_POLICY", "level_delta")
        clean_env.setenv("INFLUXDB_URL", "http://influx:8086")
        clean_env.setenv("INFLUXDB_TOKEN", "secret")
        clean_env.setenv("INFLUXDB_ORG", "org")

        config = AppConfig.from_env()

        assert config.database.url == "sqlite:///from-env.db"
        assert config.pipeline.noise_threshold_liters == 0.25
        assert config.pipeline.source_policy == "level_delta"
        assert config.telemetry.is_configured

    def test_missing_influx_settings_disable_capture(self, clean_env):
        config = AppConfig.from_env()

        assert not config.telemetry.is_configured

    def test_invalid_number_raises(self, clean_env):
        clean_env.setenv("AGGREGATION_WORKERS", "many")

        with pytest.raises(ConfigurationError):
            AppConfig.from_env()

    def test_to_dict_hides_secrets(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://user:pw@db:5432/water")
        clean_env.setenv("INFLUXDB_TOKEN", "secret")

        payload = AppConfig.from_env().to_dict()

        assert payload["database"]["url"] == "db:5432/water"
        assert "token" not in payload["telemetry"]


# =============================================================
# CLOCK
# =============================================================

class TestClock:

    def test_mock_clock_advances(self):
        start = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)
        clock = MockClock(start)

        clock.advance(minutes=90)

        assert clock.now() == start + timedelta(minutes=90)
        assert clock.today().isoformat() == "2024-03-06"

    def test_age_of(self):
        clock = MockClock(datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc))

        assert clock.age_of(None) is None
        assert clock.age_of(datetime(2024, 3, 6, 11, 0)) == timedelta(hours=1)

    def test_factory_swaps_and_resets(self):
        mock = MockClock(datetime(2020, 1, 1, tzinfo=timezone.utc))

        ClockFactory.set_clock(mock)
        try:
            assert ClockFactory.get_clock() is mock
        finally:
            ClockFactory.reset()

        assert isinstance(ClockFactory.get_clock(), SystemClock)

    def test_ensure_utc_attaches_and_converts(self):
        naive = datetime(2024, 3, 6, 12, 0)
        offset = datetime(2024, 3, 6, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        assert ensure_utc(naive).tzinfo == timezone.utc
        assert ensure_utc(offset) == datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)

    def test_from_iso8601_accepts_z_and_nanoseconds(self):
        parsed = from_iso8601("2024-03-06T10:59:30.123456789Z")

        assert parsed == datetime(2024, 3, 6, 10, 59, 30, 123456, tzinfo=timezone.utc)

    def test_from_iso8601_rejects_garbage(self):
        with pytest.raises(ValueError):
            from_iso8601("yesterday")


# =============================================================
# EXCEPTIONS
# =============================================================

class TestExceptions:

    def test_rollup_violation_is_aggregation_error(self):
        error = RollupInvariantViolation("M-1", "weekly", "2024-03-03", 5.0, 3.3)

        assert isinstance(error, AggregationError)
        assert error.context["children_total"] == 3.3
        assert not error.is_recoverable

    def test_source_errors_are_transient(self):
        error = TelemetrySourceError("down", device_key="dev-1", status_code=503)

        assert error.classification == ErrorClassification.TRANSIENT
        assert error.is_recoverable
        assert error.context == {"device_key": "dev-1", "status_code": 503}

    def test_validation_errors_are_not_retried(self):
        error = SnapshotValidationError("bad", machine_id="M-1", field="level", value=-1)

        assert not error.is_recoverable
        assert error.to_dict()["type"] == "SnapshotValidationError"

    def test_cause_is_recorded(self):
        error = PipelineException("wrapped", cause=ValueError("inner"))

        assert error.context["cause_type"] == "ValueError"
        assert error.to_dict()["cause"] == "inner"
