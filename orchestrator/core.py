"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Wires the pipeline together and runs it.

- Builds every service from one AppConfig
- Registers the periodic jobs and workers
- Handles signals (SIGINT, SIGTERM)
- Single entrypoint for long-running operation

============================================================
JOBS
============================================================
capture          every 30 min  telemetry -> snapshots + samples
level_delta      every 30 min  fallback poll of the latest pair
edge_signal      every 30 min  pump-cycle re-derivation
aggregation      every 60 min  incremental buckets
snapshot_channel worker        push derivation
health           worker        sweep every 5 min

============================================================
ARCHITECTURAL POSITION
============================================================
- This orchestrator has NO derivation logic
- It ONLY coordinates execution

============================================================
"""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Any, Dict, Optional

from aggregation.service import AggregationService
from core.clock import ClockFactory, ClockProtocol
from core.config import AppConfig
from data_ingestion.capture_service import SnapshotCaptureService
from data_ingestion.snapshot_service import SnapshotService
from data_ingestion.telemetry_source import InfluxTelemetrySource, TelemetrySource
from monitoring.pipeline_health import PipelineHealthMonitor
from monitoring.status_classifier import StatusClassifier
from production.channel import SnapshotChannel
from production.derivation_service import DerivationService
from production.edge_service import EdgeSignalService
from production.level_delta import LevelDeltaDerivator
from storage.database import (
    SessionFactory,
    configure_database,
    create_all_tables,
    transaction_scope,
)
from storage.repositories.telemetry import TelemetrySampleRepository

from .scheduler import JobScheduler


logger = logging.getLogger("orchestrator")


class PipelineOrchestrator:
    """
    Owns the services and the scheduler of one process.

    Services are public attributes so the CLI can run a single
    operation without starting the scheduler.
    """

    def __init__(
        self,
        config: AppConfig,
        session_factory: SessionFactory,
        telemetry_source: Optional[TelemetrySource] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._config = config
        self._clock = clock or ClockFactory.get_clock()
        pipeline = config.pipeline

        self.session_factory = session_factory
        self.channel = SnapshotChannel()
        self.snapshots = SnapshotService(session_factory, channel=self.channel)
        self.derivation = DerivationService(
            session_factory,
            derivator=LevelDeltaDerivator(pipeline.noise_threshold_liters),
            channel=self.channel,
            clock=self._clock,
            lookback=timedelta(hours=pipeline.derivation_lookback_hours),
        )
        self.edge_signal = EdgeSignalService(session_factory, config=pipeline, clock=self._clock)
        self.aggregation = AggregationService(session_factory, config=pipeline, clock=self._clock)
        self.health = PipelineHealthMonitor(
            session_factory,
            config=pipeline,
            clock=self._clock,
            aggregation_service=self.aggregation,
        )
        self.classifier = StatusClassifier.from_config(pipeline)

        if telemetry_source is None and config.telemetry.is_configured:
            telemetry_source = InfluxTelemetrySource(config.telemetry)
        self.capture: Optional[SnapshotCaptureService] = None
        if telemetry_source is not None:
            self.capture = SnapshotCaptureService(
                telemetry_source,
                self.snapshots,
                session_factory,
                clock=self._clock,
                window=config.telemetry.window,
            )

        self.scheduler = self._build_scheduler()
        self._shutdown_requested = False

    # --------------------------------------------------------
    # Wiring
    # --------------------------------------------------------

    def _build_scheduler(self) -> JobScheduler:
        pipeline = self._config.pipeline
        scheduler = JobScheduler(clock=self._clock)

        if self.capture is not None:
            scheduler.add_job("capture", pipeline.capture_interval_seconds, self.capture.capture_all)
        else:
            logger.warning("No telemetry source, capture job not scheduled")

        scheduler.add_job(
            "level_delta", pipeline.derivation_poll_seconds, self.derivation.poll_once
        )
        scheduler.add_job(
            "edge_signal", pipeline.derivation_poll_seconds, self.edge_signal.derive_all
        )
        scheduler.add_job(
            "aggregation", pipeline.aggregation_interval_seconds, self.aggregation.run
        )
        scheduler.add_worker("snapshot_channel", self.derivation.process_channel)
        scheduler.add_worker("health", self.health.run_forever)
        return scheduler

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        logger.info("=== PIPELINE STARTUP ===")
        self._install_signal_handlers()
        await self.scheduler.start()
        logger.info("=== PIPELINE RUNNING ===")

    async def stop(self) -> None:
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("=== PIPELINE SHUTDOWN ===")
        await self.scheduler.stop()
        self._restore_signal_handlers()
        logger.info("=== PIPELINE STOPPED ===")

    async def run_forever(self) -> None:
        """Run all jobs until a signal or stop() ends them."""
        await self.start()
        try:
            await self.scheduler.wait_stopped()
        finally:
            await self.stop()

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.create_task(self._async_signal_handler(s)),
            )

    def _restore_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    async def _async_signal_handler(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}")
        await self.stop()

    # --------------------------------------------------------
    # Status
    # --------------------------------------------------------

    def machine_status(self, machine_id: str, legacy: bool = False) -> Dict[str, Any]:
        """
        Classify a machine from its latest telemetry sample.

        Live views use the short staleness threshold; legacy=True
        applies the historical one.
        """
        now = self._clock.now()
        with transaction_scope(self.session_factory) as session:
            sample = TelemetrySampleRepository(session).latest(machine_id)

        if legacy:
            status = self.classifier.legacy(sample, now)
            staleness = self.classifier.legacy_staleness_seconds
        else:
            status = self.classifier.live(sample, now)
            staleness = self.classifier.live_staleness_seconds

        return {
            "machine_id": machine_id,
            "status": status.value,
            "threshold": "legacy" if legacy else "live",
            "staleness_seconds": staleness,
            "captured_at": sample.captured_at.isoformat() if sample else None,
            "water_level_liters": sample.water_level_liters if sample else None,
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "current_time": self._clock.now().isoformat(),
            "config": self._config.to_dict(),
            "scheduler": self.scheduler.get_status(),
            "derivation": self.derivation.get_status(),
            "aggregation": self.aggregation.get_status(),
            "channel": {
                "pending": self.channel.pending(),
                "published": self.channel.published,
                "dropped": self.channel.dropped,
            },
        }


# ============================================================
# ORCHESTRATOR FACTORY
# ============================================================

def create_orchestrator(
    config: Optional[AppConfig] = None,
    telemetry_source: Optional[TelemetrySource] = None,
    create_tables: bool = True,
) -> PipelineOrchestrator:
    """
    Build an orchestrator against the configured database.

    Args:
        config: Configuration (or load from environment)
        telemetry_source: Overrides the InfluxDB source
        create_tables: Create missing tables first
    """
    if config is None:
        config = AppConfig.from_env()

    session_factory = configure_database(config.database.url, echo=config.database.echo)
    if create_tables:
        create_all_tables()

    return PipelineOrchestrator(
        config=config,
        session_factory=session_factory,
        telemetry_source=telemetry_source,
    )


__all__ = [
    "PipelineOrchestrator",
    "create_orchestrator",
]
