"""
Tests for the pump-cycle (edge-signal) derivator.
"""

from datetime import datetime, timedelta, timezone

import pytest

from production.edge_signal import PumpCycleDerivator
from production.models import ProductionSource, SignalReading


T0 = datetime(2024, 3, 6, 0, 0, tzinfo=timezone.utc)


def readings(signals, levels, step_minutes=30):
    return [
        SignalReading(captured_at=T0 + timedelta(minutes=step_minutes * i), signal=s, level=l)
        for i, (s, l) in enumerate(zip(signals, levels))
    ]


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def derivator():
    return PumpCycleDerivator("M-1")


# =============================================================
# BOUNDARIES
# =============================================================

class TestBoundaries:

    def test_first_boundary_only_opens_a_cycle(self, derivator):
        events = derivator.derive(readings([1, 0], [1.0, 1.2]))

        assert events == []
        assert derivator.boundaries_seen == 1
        assert derivator.open_cycle.start_level == 1.2
        assert derivator.open_cycle.started_at == T0 + timedelta(minutes=30)

    def test_second_boundary_closes_cycle(self, derivator):
        events = derivator.derive(readings([1, 0, 1, 0], [1.0, 1.2, 3.0, 3.1]))

        assert len(events) == 1
        event = events[0]
        assert event.production_liters == pytest.approx(1.8)
        assert event.previous_level == 1.2
        assert event.current_level == 3.0
        assert event.occurred_at == T0 + timedelta(minutes=60)
        assert event.source == ProductionSource.EDGE_SIGNAL
        assert derivator.cycles_closed == 1

    def test_steady_signal_has_no_boundary(self, derivator):
        assert derivator.derive(readings([1, 1, 1, 0, 0, 0], [1, 2, 3, 4, 5, 6])) == []
        assert derivator.boundaries_seen == 1

    def test_rising_edge_is_not_a_boundary(self, derivator):
        derivator.derive(readings([0, 1, 1], [1.0, 2.0, 3.0]))

        assert derivator.boundaries_seen == 0
        assert derivator.open_cycle is None

    def test_level_drop_yields_zero_production(self, derivator):
        events = derivator.derive(readings([1, 0, 1, 0], [5.0, 5.0, 2.0, 2.0]))

        assert [event.production_liters for event in events] == [0.0]

    def test_string_flags_are_parsed(self, derivator):
        events = derivator.derive(readings(["1", "0", "1.0", "0.0"], [1.0, 1.0, 2.5, 2.5]))

        assert [event.production_liters for event in events] == [1.5]

    def test_readings_without_signal_or_level_are_skipped(self, derivator):
        data = readings([1, None, 0, 1, 0], [1.0, 9.9, 1.2, 3.0, 3.1])
        data.insert(3, SignalReading(captured_at=T0 + timedelta(minutes=80), signal=1, level=None))

        events = derivator.derive(data)

        assert [event.production_liters for event in events] == [pytest.approx(1.8)]

    def test_out_of_order_reading_is_ignored(self, derivator):
        derivator.feed(SignalReading(captured_at=T0 + timedelta(hours=1), signal=1, level=1.0))

        assert derivator.feed(SignalReading(captured_at=T0, signal=0, level=1.0)) is None
        assert derivator.boundaries_seen == 0


# =============================================================
# RATE
# =============================================================

class TestProductionRate:

    def test_rate_over_last_three_cycles(self, derivator):
        derivator.derive(readings([1, 0] * 4, [0, 1, 3, 3, 5, 5, 7, 7]))

        assert derivator.cycles_closed == 3
        assert derivator.total_production == 6.0
        # 6 liters between the first and last close, two hours apart
        assert derivator.production_rate() == 3.0

    def test_rate_window_keeps_most_recent_cycles(self):
        derivator = PumpCycleDerivator("M-1", rate_window=2)

        derivator.derive(readings([1, 0] * 4, [0, 1, 3, 3, 5, 5, 9, 9]))

        assert [cycle.production_liters for cycle in derivator.recent_cycles] == [2.0, 4.0]
        assert derivator.production_rate() == 6.0

    def test_rate_needs_two_closed_cycles(self, derivator):
        derivator.derive(readings([1, 0, 1, 0], [1.0, 1.2, 3.0, 3.1]))

        assert derivator.production_rate() == 0.0

    def test_to_dict(self, derivator):
        derivator.derive(readings([1, 0, 1, 0], [1.0, 1.2, 3.0, 3.1]))

        payload = derivator.to_dict()

        assert payload["machine_id"] == "M-1"
        assert payload["cycles_closed"] == 1
        assert payload["open_cycle_started_at"] == "2024-03-06T01:30:00+00:00"
