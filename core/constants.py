"""
Core Module - Constants.

============================================================
RESPONSIBILITY
============================================================
Defines pipeline-wide constants and default values.

Tunable values are only defaults here; the live values
come from core.config.

============================================================
"""

from typing import Tuple


# ============================================================
# SYSTEM CONSTANTS
# ============================================================

SYSTEM_NAME = "water-production-pipeline"
SYSTEM_VERSION = "1.0.0"

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600

# ============================================================
# DERIVATION CONSTANTS
# ============================================================

# Minimum level increase (liters) counted as real production
NOISE_THRESHOLD_LITERS = 0.1

# Closed pump cycles used for the edge-signal production rate
RATE_WINDOW_CYCLES = 3

# ============================================================
# STATUS CONSTANTS
# ============================================================

# Live/interactive views
LIVE_STALENESS_SECONDS = 90

# Historical, backwards-compatible classification
LEGACY_STALENESS_SECONDS = 15 * SECONDS_PER_MINUTE

DEFAULT_TANK_CAPACITY_LITERS = 10.0
FULL_WATER_FILL_RATIO = 0.95

# ============================================================
# SCHEDULING CONSTANTS
# ============================================================

CAPTURE_INTERVAL_SECONDS = 30 * SECONDS_PER_MINUTE
DERIVATION_POLL_INTERVAL_SECONDS = 30 * SECONDS_PER_MINUTE
HEALTH_SWEEP_INTERVAL_SECONDS = 5 * SECONDS_PER_MINUTE
AGGREGATION_INTERVAL_SECONDS = SECONDS_PER_HOUR

# ============================================================
# HEALTH CONSTANTS
# ============================================================

HEALTH_STALE_MINUTES = 60

# ============================================================
# AGGREGATION CONSTANTS
# ============================================================

DEFAULT_AGGREGATION_WORKERS = 2
ROLLUP_TOLERANCE_LITERS = 0.1

# ============================================================
# TELEMETRY CONSTANTS
# ============================================================

TELEMETRY_FIELDS: Tuple[str, ...] = (
    "water_level_L",
    "collector_ls1",
    "compressor_on",
    "producing_water",
    "full_tank",
    "defrosting",
    "ambient_temp_C",
    "ambient_rh_pct",
    "refrigerant_temp_C",
    "current_A",
)

# Fields reported as 0/1 by the controller
TELEMETRY_FLAG_FIELDS: Tuple[str, ...] = (
    "collector_ls1",
    "compressor_on",
    "producing_water",
    "full_tank",
    "defrosting",
)

TELEMETRY_WINDOW = "-1h"
