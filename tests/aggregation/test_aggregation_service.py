"""
Tests for the hierarchical aggregation service.

Tests cover:
- Gap-filled bucket reads
- Snapshots -> events -> buckets end to end
- Hierarchy consistency across week/month boundaries
- Incremental runs picking up late events
- Reset followed by re-aggregation
- Rollup verification
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from aggregation.models import AggregationMode, Granularity
from aggregation.service import AggregationService
from core.config import PipelineConfig
from core.exceptions import AggregationError
from production.derivation_service import DerivationService
from storage.database import transaction_scope
from storage.repositories.production import ProductionSummaryRepository
from storage.reset import reset_machine


def at(month, day, hour=10):
    return datetime(2024, month, day, hour, tzinfo=timezone.utc)


# =============================================================
# FIXTURES
# =============================================================

@pytest.fixture
def service(session_factory, clock):
    return AggregationService(session_factory, clock=clock)


@pytest.fixture
def boundary_history(store, clock):
    """Events on both sides of the February/March boundary, recorded an hour ago."""
    recorded = clock.now() - timedelta(hours=1)
    store.machine("M-1")
    store.event("M-1", 1.0, at(2, 27), recorded_at=recorded)   # Tue, week of Sun 02-25
    store.event("M-1", 2.0, at(3, 1), recorded_at=recorded)    # Fri, same week
    store.event("M-1", 4.0, at(3, 4), recorded_at=recorded)    # Mon, week of Sun 03-03
    return store


# =============================================================
# GAP-FILLED READS
# =============================================================

class TestGetBuckets:

    def test_no_data_gives_zero_buckets(self, service):
        buckets = service.get_buckets("M-1", Granularity.DAILY, 7)

        assert [bucket.period_key for bucket in buckets] == [
            "2024-02-29", "2024-03-01", "2024-03-02", "2024-03-03",
            "2024-03-04", "2024-03-05", "2024-03-06",
        ]
        for bucket in buckets:
            assert bucket.total_production == 0.0
            assert bucket.status_percentages.disconnected == 100

    def test_stored_buckets_fill_their_slots(self, service, boundary_history):
        service.aggregate_machine("M-1", AggregationMode.BACKFILL)

        buckets = service.get_buckets("M-1", Granularity.WEEKLY, 3)

        assert [(b.period_key, b.total_production) for b in buckets] == [
            ("2024-02-18", 0.0),
            ("2024-02-25", 3.0),
            ("2024-03-03", 4.0),
        ]

    def test_accepts_granularity_value(self, service):
        assert len(service.get_buckets("M-1", "monthly", 2)) == 2


# =============================================================
# END TO END
# =============================================================

class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_snapshots_to_every_granularity(self, store, session_factory, service, clock):
        store.machine("M-1")
        derivation = DerivationService(session_factory, clock=clock)
        for hour, level in ((9, 2.0), (10, 2.0), (11, 5.3)):
            store.snapshot("M-1", level, at(3, 6, hour))
            await derivation.derive_latest("M-1")

        result = await service.run()

        assert result.success
        assert result.processed_buckets == 4
        assert store.bucket("M-1", "daily", "2024-03-06").total_production == 3.3
        assert store.bucket("M-1", "weekly", "2024-03-03").total_production == 3.3
        assert store.bucket("M-1", "monthly", "2024-03").total_production == 3.3
        assert store.bucket("M-1", "yearly", "2024").total_production == 3.3
        assert store.total("M-1").total_liters == 3.3

    @pytest.mark.asyncio
    async def test_status_percentages_come_from_samples(self, store, service):
        store.machine("M-1")
        store.sample("M-1", at(3, 6, 8), producing_water=1.0)
        store.sample("M-1", at(3, 6, 9), full_tank=1.0)
        store.sample("M-1", at(3, 6, 10))

        await service.run(machine_id="M-1")

        daily = store.bucket("M-1", "daily", "2024-03-06")
        assert daily.total_production == 0.0
        assert (daily.producing_pct, daily.idle_pct, daily.full_water_pct) == (34, 33, 33)
        assert daily.disconnected_pct == 0

    @pytest.mark.asyncio
    async def test_edge_signal_preferred_over_level_delta(self, store, service):
        store.machine("M-1")
        store.event("M-1", 3.3, at(3, 6), source="level_delta")
        store.event("M-1", 3.0, at(3, 6), source="edge_signal")

        await service.run()

        daily = store.bucket("M-1", "daily", "2024-03-06")
        assert daily.total_production == 3.0
        assert daily.source == "edge_signal"

    @pytest.mark.asyncio
    async def test_level_delta_policy(self, store, session_factory, clock):
        service = AggregationService(
            session_factory, config=PipelineConfig(source_policy="level_delta"), clock=clock
        )
        store.machine("M-1")
        store.event("M-1", 3.3, at(3, 6), source="level_delta")
        store.event("M-1", 3.0, at(3, 6), source="edge_signal")

        await service.run()

        assert store.bucket("M-1", "daily", "2024-03-06").total_production == 3.3


# =============================================================
# HIERARCHY
# =============================================================

class TestHierarchy:

    def test_weeks_belong_to_the_month_of_their_sunday(self, service, boundary_history):
        written = service.aggregate_machine("M-1", AggregationMode.BACKFILL)

        store = boundary_history
        # 3 days + 2 weeks + 2 months + 1 year; empty days are skipped
        assert written == 8
        assert store.bucket("M-1", "daily", "2024-03-02") is None
        assert store.bucket("M-1", "weekly", "2024-02-25").total_production == 3.0
        assert store.bucket("M-1", "monthly", "2024-02").total_production == 3.0
        assert store.bucket("M-1", "monthly", "2024-03").total_production == 4.0
        assert store.bucket("M-1", "yearly", "2024").total_production == 7.0
        assert store.total("M-1").total_liters == 7.0

    def test_parents_match_children(self, service, boundary_history):
        service.aggregate_machine("M-1", AggregationMode.BACKFILL)
        store = boundary_history

        daily = sum(row.total_production for row in store.buckets("M-1", "daily"))
        weekly = sum(row.total_production for row in store.buckets("M-1", "weekly"))
        monthly = sum(row.total_production for row in store.buckets("M-1", "monthly"))
        yearly = sum(row.total_production for row in store.buckets("M-1", "yearly"))

        assert daily == weekly == monthly == yearly == 7.0
        assert service.verify_rollups("M-1") == []

    def test_backfill_is_repeatable(self, service, boundary_history):
        service.aggregate_machine("M-1", AggregationMode.BACKFILL)
        service.aggregate_machine("M-1", AggregationMode.BACKFILL)

        assert len(boundary_history.buckets("M-1", "daily")) == 3
        assert boundary_history.total("M-1").total_liters == 7.0


# =============================================================
# INCREMENTAL
# =============================================================

class TestIncremental:

    def test_first_run_covers_history(self, service, boundary_history):
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        assert boundary_history.total("M-1").total_liters == 7.0

    def test_watermark_is_run_start(self, service, boundary_history, clock):
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        assert boundary_history.total("M-1").last_aggregated_at == clock.now()

    def test_late_event_in_old_period_is_picked_up(self, service, boundary_history, clock):
        store = boundary_history
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        clock.advance(hours=1)
        store.event("M-1", 0.5, at(2, 28))
        written = service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        # one day, week, month and year; today has no data
        assert written == 4
        assert store.bucket("M-1", "daily", "2024-02-28").total_production == 0.5
        assert store.bucket("M-1", "weekly", "2024-02-25").total_production == 3.5
        assert store.bucket("M-1", "yearly", "2024").total_production == 7.5
        assert store.total("M-1").total_liters == 7.5
        assert service.verify_rollups("M-1") == []

    def test_nothing_new_keeps_buckets(self, service, boundary_history, clock):
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)
        clock.advance(hours=1)

        written = service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        assert written == 0
        assert boundary_history.total("M-1").total_liters == 7.0

    @pytest.mark.asyncio
    async def test_late_snapshot_removing_old_event_lowers_day(
        self, store, session_factory, service, clock
    ):
        store.machine("M-1")
        derivation = DerivationService(session_factory, clock=clock)
        store.snapshot("M-1", 2.0, at(3, 3, 22))
        store.snapshot("M-1", 5.0, at(3, 4, 2))
        await derivation.poll_once()
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)
        assert store.bucket("M-1", "daily", "2024-03-04").total_production == 3.0

        clock.advance(hours=1)
        store.snapshot("M-1", 5.0, at(3, 3, 23))
        await derivation.poll_once()
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        assert store.bucket("M-1", "daily", "2024-03-04").total_production == 0.0
        assert store.bucket("M-1", "daily", "2024-03-03").total_production == 3.0
        assert store.total("M-1").total_liters == 3.0
        assert service.verify_rollups("M-1") == []

    def test_late_sample_updates_old_status(self, store, service, clock):
        store.machine("M-1")
        store.sample("M-1", at(3, 4, 8), producing_water=1.0)
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        clock.advance(hours=1)
        store.sample("M-1", at(3, 4, 9), full_tank=1.0)
        service.aggregate_machine("M-1", AggregationMode.INCREMENTAL)

        daily = store.bucket("M-1", "daily", "2024-03-04")
        assert (daily.producing_pct, daily.full_water_pct) == (50, 50)


# =============================================================
# RUN
# =============================================================

class TestRun:

    @pytest.mark.asyncio
    async def test_unknown_mode_raises(self, service):
        with pytest.raises(AggregationError):
            await service.run("sometimes")

    @pytest.mark.asyncio
    async def test_all_machines(self, store, service):
        store.machine("M-1")
        store.machine("M-2")
        store.event("M-1", 1.0, at(3, 6))
        store.event("M-2", 2.0, at(3, 5))

        result = await service.run(AggregationMode.BACKFILL.value)

        assert result.machines_processed == 2
        assert result.processed_buckets == 8
        assert result.to_dict()["mode"] == "backfill"
        assert service.get_status()["last_result"]["machines_processed"] == 2

    @pytest.mark.asyncio
    async def test_failing_machine_is_isolated(self, store, service):
        store.machine("M-1")
        store.machine("M-BAD")
        store.event("M-1", 1.0, at(3, 6))
        original = service.aggregate_machine

        def flaky(machine_id, mode):
            if machine_id == "M-BAD":
                raise AggregationError("store unavailable")
            return original(machine_id, mode)

        with patch.object(service, "aggregate_machine", side_effect=flaky):
            result = await service.run()

        assert not result.success
        assert result.machines_processed == 1
        assert result.errors == [{"machine_id": "M-BAD", "error": "store unavailable"}]
        assert store.total("M-1").total_liters == 1.0


# =============================================================
# RESET
# =============================================================

class TestResetScenario:

    @pytest.mark.asyncio
    async def test_reset_then_aggregate_gives_empty_buckets(self, service, boundary_history):
        store = boundary_history
        await service.run(AggregationMode.BACKFILL.value)

        with transaction_scope(store.session_factory) as session:
            reset_machine(session, "M-1")
        result = await service.run(AggregationMode.BACKFILL.value, machine_id="M-1")

        assert result.processed_buckets == 0
        assert store.total("M-1").total_liters == 0.0
        buckets = service.get_buckets("M-1", Granularity.DAILY, 7)
        assert all(bucket.total_production == 0.0 for bucket in buckets)


# =============================================================
# VERIFICATION
# =============================================================

class TestVerifyRollups:

    def test_detects_tampered_parent(self, service, boundary_history):
        service.aggregate_machine("M-1", AggregationMode.BACKFILL)

        with transaction_scope(boundary_history.session_factory) as session:
            ProductionSummaryRepository(session).upsert_bucket(
                "M-1", "weekly", "2024-03-03",
                {"period_start": date(2024, 3, 3), "total_production": 9.9},
            )

        violations = service.verify_rollups("M-1")

        assert [(v.granularity, v.period_key) for v in violations] == [
            ("weekly", "2024-03-03"),
            ("monthly", "2024-03"),
        ]
        assert violations[0].stored_total == 9.9
        assert violations[0].children_total == 4.0

    def test_difference_within_tolerance_is_accepted(self, service, boundary_history):
        service.aggregate_machine("M-1", AggregationMode.BACKFILL)

        with transaction_scope(boundary_history.session_factory) as session:
            ProductionSummaryRepository(session).upsert_bucket(
                "M-1", "weekly", "2024-03-03",
                {"period_start": date(2024, 3, 3), "total_production": 4.1},
            )

        assert service.verify_rollups("M-1") == []
