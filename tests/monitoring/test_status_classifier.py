"""
Tests for the machine status classifier.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from core.config import PipelineConfig
from monitoring.status_classifier import (
    MachineStatus,
    StatusClassifier,
    StatusFlags,
    classify_status,
    parse_flag,
)


NOW = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)


def sample(age_seconds=10, level=5.0, **flags):
    values = {
        "water_level_liters": level,
        "captured_at": NOW - timedelta(seconds=age_seconds),
        "producing_water": None,
        "compressor_on": None,
        "full_tank": None,
        "defrosting": None,
    }
    values.update(flags)
    return SimpleNamespace(**values)


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def classifier():
    return StatusClassifier.from_config(PipelineConfig())


# =============================================================
# FLAG PARSING
# =============================================================

class TestParseFlag:

    @pytest.mark.parametrize("value", [1, 1.0, 2, -1, "1", " 1.0 ", "true", "TRUE", True])
    def test_set(self, value):
        assert parse_flag(value)

    @pytest.mark.parametrize("value", [None, 0, 0.0, "0", "", "n/a", "false", float("nan"), "nan", False, [1]])
    def test_unset(self, value):
        assert not parse_flag(value)


# =============================================================
# DECISION ORDER
# =============================================================

class TestClassifyStatus:

    def classify(self, flags=StatusFlags(), level=5.0, age_seconds=10, staleness=90):
        captured_at = None if age_seconds is None else NOW - timedelta(seconds=age_seconds)
        return classify_status(level, captured_at, flags, NOW, staleness)

    def test_never_seen_is_offline(self):
        assert self.classify(age_seconds=None) == MachineStatus.OFFLINE

    def test_stale_is_disconnected_whatever_the_flags(self):
        flags = StatusFlags(producing=1, defrosting=1)

        assert self.classify(flags, age_seconds=91) == MachineStatus.DISCONNECTED

    def test_age_equal_to_threshold_is_fresh(self):
        assert self.classify(StatusFlags(producing=1), age_seconds=90) == MachineStatus.PRODUCING

    def test_defrosting_beats_full_water(self):
        flags = StatusFlags(full_water=1, defrosting=1, producing=1)

        assert self.classify(flags) == MachineStatus.DEFROSTING

    def test_full_water_beats_producing(self):
        assert self.classify(StatusFlags(full_water=1, producing=1)) == MachineStatus.FULL_WATER

    def test_producing_beats_idle(self):
        assert self.classify(StatusFlags(producing="1", idle="1")) == MachineStatus.PRODUCING

    def test_idle_flag(self):
        assert self.classify(StatusFlags(idle=1), level=9.9) == MachineStatus.IDLE

    def test_fill_fallback(self):
        assert self.classify(level=9.5) == MachineStatus.FULL_WATER
        assert self.classify(level=9.4) == MachineStatus.IDLE
        assert self.classify(level=None) == MachineStatus.IDLE

    def test_custom_tank(self):
        status = classify_status(19.0, NOW, StatusFlags(), NOW, 90, tank_capacity=20.0)

        assert status == MachineStatus.FULL_WATER


# =============================================================
# CLASSIFIER
# =============================================================

class TestStatusClassifier:

    def test_missing_sample_is_offline(self, classifier):
        assert classifier.live(None, NOW) == MachineStatus.OFFLINE

    def test_live_and_legacy_thresholds(self, classifier):
        five_minutes_old = sample(age_seconds=300, producing_water=1.0)

        assert classifier.live(five_minutes_old, NOW) == MachineStatus.DISCONNECTED
        assert classifier.legacy(five_minutes_old, NOW) == MachineStatus.PRODUCING

    def test_legacy_threshold_expires(self, classifier):
        stale = sample(age_seconds=16 * 60, producing_water=1.0)

        assert classifier.legacy(stale, NOW) == MachineStatus.DISCONNECTED

    def test_compressor_counts_as_producing(self, classifier):
        assert classifier.live(sample(compressor_on=1.0), NOW) == MachineStatus.PRODUCING

    def test_full_tank_flag(self, classifier):
        assert classifier.live(sample(full_tank=1.0, compressor_on=1.0), NOW) == MachineStatus.FULL_WATER

    def test_explicit_threshold(self, classifier):
        status = classifier.classify(sample(age_seconds=30), NOW, staleness_seconds=20)

        assert status == MachineStatus.DISCONNECTED
