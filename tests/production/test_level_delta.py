"""
Tests for the level-delta derivator.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import DerivationError
from production.level_delta import LevelDeltaDerivator
from production.models import LevelReading, ProductionSource


T0 = datetime(2024, 3, 6, 10, 0, tzinfo=timezone.utc)


def reading(level, minutes=0, machine_id="M-1"):
    return LevelReading(machine_id=machine_id, level=level, captured_at=T0 + timedelta(minutes=minutes))


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def derivator():
    return LevelDeltaDerivator()


# =============================================================
# TESTS
# =============================================================

class TestLevelDeltaDerivator:

    def test_increase_yields_event_at_newer_snapshot(self, derivator):
        event = derivator.derive(reading(2.0), reading(5.3, minutes=30))

        assert event.production_liters == 3.3
        assert event.previous_level == 2.0
        assert event.current_level == 5.3
        assert event.occurred_at == T0 + timedelta(minutes=30)
        assert event.source == ProductionSource.LEVEL_DELTA

    def test_unchanged_level_yields_nothing(self, derivator):
        assert derivator.derive(reading(2.0), reading(2.0, minutes=30)) is None

    def test_drain_yields_nothing(self, derivator):
        assert derivator.derive(reading(5.3), reading(1.0, minutes=30)) is None

    @pytest.mark.parametrize("newer_level", [2.1, 2.1000001, 2.0999])
    def test_delta_at_threshold_is_noise(self, derivator, newer_level):
        assert derivator.derive(reading(2.0), reading(newer_level, minutes=30)) is None

    def test_delta_just_above_threshold_counts(self, derivator):
        event = derivator.derive(reading(2.0), reading(2.15, minutes=30))

        assert event.production_liters == 0.15

    def test_custom_threshold(self):
        derivator = LevelDeltaDerivator(noise_threshold=0.5)

        assert derivator.derive(reading(2.0), reading(2.4, minutes=30)) is None
        assert derivator.derive(reading(2.0), reading(2.6, minutes=30)).production_liters == 0.6

    def test_out_of_order_pair_raises(self, derivator):
        with pytest.raises(DerivationError):
            derivator.derive(reading(2.0, minutes=30), reading(5.0))

    def test_pair_across_machines_raises(self, derivator):
        with pytest.raises(DerivationError):
            derivator.derive(reading(2.0), reading(5.0, minutes=30, machine_id="M-2"))

    def test_event_serializes(self, derivator):
        payload = derivator.derive(reading(2.0), reading(5.3, minutes=30)).to_dict()

        assert payload["source"] == "level_delta"
        assert payload["occurred_at"] == "2024-03-06T10:30:00+00:00"
