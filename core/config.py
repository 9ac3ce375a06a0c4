"""
Core Module - Configuration.

============================================================
CONFIGURABLE PIPELINE PARAMETERS
============================================================

All tunable parameters live here:
- Derivation noise threshold
- Staleness thresholds (live and legacy)
- Tank capacity and full-water ratio
- Job intervals and worker pool size
- Storage and telemetry source connection settings

Configuration can be loaded from:
- Default values
- Environment variables (a .env file is loaded first)

============================================================
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .constants import (
    AGGREGATION_INTERVAL_SECONDS,
    CAPTURE_INTERVAL_SECONDS,
    DEFAULT_AGGREGATION_WORKERS,
    DEFAULT_TANK_CAPACITY_LITERS,
    DERIVATION_POLL_INTERVAL_SECONDS,
    FULL_WATER_FILL_RATIO,
    HEALTH_STALE_MINUTES,
    HEALTH_SWEEP_INTERVAL_SECONDS,
    LEGACY_STALENESS_SECONDS,
    LIVE_STALENESS_SECONDS,
    NOISE_THRESHOLD_LITERS,
    ROLLUP_TOLERANCE_LITERS,
    TELEMETRY_WINDOW,
)
from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)


SOURCE_POLICIES = ("prefer_edge_signal", "level_delta", "edge_signal")


# =============================================================
# PIPELINE SETTINGS
# =============================================================


@dataclass
class PipelineConfig:
    """
    Derivation, classification and scheduling parameters.

    - noise_threshold_liters: deltas at or below this are not production
    - live_staleness_seconds: live views mark a machine Disconnected after this
    - legacy_staleness_seconds: historical classification threshold
    """
    noise_threshold_liters: float = NOISE_THRESHOLD_LITERS
    live_staleness_seconds: int = LIVE_STALENESS_SECONDS
    legacy_staleness_seconds: int = LEGACY_STALENESS_SECONDS
    tank_capacity_liters: float = DEFAULT_TANK_CAPACITY_LITERS
    full_water_ratio: float = FULL_WATER_FILL_RATIO

    # Job cadence
    capture_interval_seconds: int = CAPTURE_INTERVAL_SECONDS
    derivation_poll_seconds: int = DERIVATION_POLL_INTERVAL_SECONDS
    health_interval_seconds: int = HEALTH_SWEEP_INTERVAL_SECONDS
    aggregation_interval_seconds: int = AGGREGATION_INTERVAL_SECONDS

    health_stale_minutes: float = HEALTH_STALE_MINUTES
    aggregation_workers: int = DEFAULT_AGGREGATION_WORKERS
    rollup_tolerance_liters: float = ROLLUP_TOLERANCE_LITERS
    source_policy: str = "prefer_edge_signal"

    # Samples re-scanned by each edge-signal pass
    edge_lookback_hours: int = 24
    # Snapshot pairs re-derived by each level-delta poll
    derivation_lookback_hours: int = 24

    def __post_init__(self) -> None:
        """Validate settings."""
        if self.noise_threshold_liters < 0:
            raise ConfigurationError(
                "noise_threshold_liters must be >= 0",
                config_key="noise_threshold_liters",
                actual_value=self.noise_threshold_liters,
            )
        if self.tank_capacity_liters <= 0:
            raise ConfigurationError(
                "tank_capacity_liters must be > 0",
                config_key="tank_capacity_liters",
                actual_value=self.tank_capacity_liters,
            )
        if not 0 < self.full_water_ratio <= 1:
            raise ConfigurationError(
                "full_water_ratio must be in (0, 1]",
                config_key="full_water_ratio",
                actual_value=self.full_water_ratio,
            )
        if self.live_staleness_seconds <= 0 or self.legacy_staleness_seconds <= 0:
            raise ConfigurationError("staleness thresholds must be > 0")
        if self.edge_lookback_hours < 1 or self.derivation_lookback_hours < 1:
            raise ConfigurationError("lookback windows must be at least one hour")
        if self.aggregation_workers < 1:
            raise ConfigurationError(
                "aggregation_workers must be >= 1",
                config_key="aggregation_workers",
                actual_value=self.aggregation_workers,
            )
        if self.source_policy not in SOURCE_POLICIES:
            raise ConfigurationError(
                f"source_policy must be one of {', '.join(SOURCE_POLICIES)}",
                config_key="source_policy",
                actual_value=self.source_policy,
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "noise_threshold_liters": self.noise_threshold_liters,
            "live_staleness_seconds": self.live_staleness_seconds,
            "legacy_staleness_seconds": self.legacy_staleness_seconds,
            "tank_capacity_liters": self.tank_capacity_liters,
            "full_water_ratio": self.full_water_ratio,
            "health_stale_minutes": self.health_stale_minutes,
            "aggregation_workers": self.aggregation_workers,
            "source_policy": self.source_policy,
        }


# =============================================================
# STORAGE SETTINGS
# =============================================================


@dataclass
class DatabaseConfig:
    """Relational store connection settings."""
    url: str = "sqlite:///water_production.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, hiding credentials."""
        return {
            "url": self.url.split("@")[-1],
            "echo": self.echo,
            "pool_size": self.pool_size,
        }


# =============================================================
# TELEMETRY SOURCE SETTINGS
# =============================================================


@dataclass
class TelemetryConfig:
    """Time-series telemetry source (InfluxDB v2 HTTP API)."""
    url: Optional[str] = None
    token: Optional[str] = None
    org: Optional[str] = None
    bucket: str = "KumulusData"
    measurement: str = "awg_data_full"
    window: str = TELEMETRY_WINDOW
    timeout_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        """Check whether the source can be queried."""
        return bool(self.url and self.token and self.org)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, hiding the token."""
        return {
            "url": self.url,
            "org": self.org,
            "bucket": self.bucket,
            "measurement": self.measurement,
            "window": self.window,
            "configured": self.is_configured,
        }


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class AppConfig:
    """Combines all sub-configurations."""
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - DATABASE_URL, DATABASE_ECHO
        - INFLUXDB_URL, INFLUXDB_TOKEN, INFLUXDB_ORG
        - INFLUXDB_BUCKET, INFLUXDB_MEASUREMENT
        - NOISE_THRESHOLD_LITERS
        - LIVE_STALENESS_SECONDS, LEGACY_STALENESS_SECONDS
        - TANK_CAPACITY_LITERS
        - AGGREGATION_WORKERS
        - SOURCE_POLICY

        Raises:
            ConfigurationError: If a value cannot be parsed or is out of range
        """
        load_dotenv()

        try:
            pipeline = PipelineConfig(
                noise_threshold_liters=float(
                    os.getenv("NOISE_THRESHOLD_LITERS", NOISE_THRESHOLD_LITERS)
                ),
                live_staleness_seconds=int(
                    os.getenv("LIVE_STALENESS_SECONDS", LIVE_STALENESS_SECONDS)
                ),
                legacy_staleness_seconds=int(
                    os.getenv("LEGACY_STALENESS_SECONDS", LEGACY_STALENESS_SECONDS)
                ),
                tank_capacity_liters=float(
                    os.getenv("TANK_CAPACITY_LITERS", DEFAULT_TANK_CAPACITY_LITERS)
                ),
                aggregation_workers=int(
                    os.getenv("AGGREGATION_WORKERS", DEFAULT_AGGREGATION_WORKERS)
                ),
                source_policy=os.getenv("SOURCE_POLICY", "prefer_edge_signal"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}", cause=e)

        database = DatabaseConfig(
            url=os.getenv("DATABASE_URL", DatabaseConfig.url),
            echo=os.getenv("DATABASE_ECHO", "false").lower() in ("1", "true", "yes"),
        )

        telemetry = TelemetryConfig(
            url=os.getenv("INFLUXDB_URL"),
            token=os.getenv("INFLUXDB_TOKEN"),
            org=os.getenv("INFLUXDB_ORG"),
            bucket=os.getenv("INFLUXDB_BUCKET", TelemetryConfig.bucket),
            measurement=os.getenv("INFLUXDB_MEASUREMENT", TelemetryConfig.measurement),
        )

        if not telemetry.is_configured:
            logger.warning("InfluxDB settings incomplete, snapshot capture is disabled")

        return cls(pipeline=pipeline, database=database, telemetry=telemetry)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pipeline": self.pipeline.to_dict(),
            "database": self.database.to_dict(),
            "telemetry": self.telemetry.to_dict(),
        }


# =============================================================
# GLOBAL CONFIG SINGLETON
# =============================================================


_default_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration."""
    global _default_config
    if _default_config is None:
        _default_config = AppConfig.from_env()
    return _default_config


def set_config(config: Optional[AppConfig]) -> None:
    """Set (or clear) the global configuration."""
    global _default_config
    _default_config = config


__all__ = [
    "SOURCE_POLICIES",
    "PipelineConfig",
    "DatabaseConfig",
    "TelemetryConfig",
    "AppConfig",
    "get_config",
    "set_config",
]
