"""
Orchestrator - Periodic Job Scheduler.

============================================================
RESPONSIBILITY
============================================================
Single-process, timer-driven background tasks.

- Periodic jobs: an async callable run every N seconds
- Workers: long-running coroutines given the stop event
  (snapshot channel consumer, health monitor loop)

============================================================
CANCELLATION
============================================================
stop() sets the stop event. A job finishes its current tick
and exits while waiting for the next one; nothing is cancelled
mid-tick unless the shutdown timeout expires. Each tick's
writes are transactional, so even a cancelled tick leaves no
partial bucket behind.

A failing tick is logged and counted; the job runs again on
its next tick.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import SchedulerError


logger = logging.getLogger(__name__)


JobFunc = Callable[[], Awaitable[Any]]
WorkerFunc = Callable[[asyncio.Event], Awaitable[None]]


@dataclass
class PeriodicJob:
    """A named job and its run statistics."""
    name: str
    interval_seconds: float
    func: JobFunc
    run_immediately: bool = True

    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class _Worker:
    name: str
    func: WorkerFunc


class JobScheduler:
    """
    Runs periodic jobs and workers until stopped.

    ============================================================
    USAGE
    ============================================================
    scheduler = JobScheduler()
    scheduler.add_job("capture", 1800, capture.capture_all)
    scheduler.add_worker("health", monitor.run_forever)
    await scheduler.start()
    ...
    await scheduler.stop()

    ============================================================
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        self._clock = clock or ClockFactory.get_clock()
        self._shutdown_timeout = shutdown_timeout_seconds
        self._jobs: Dict[str, PeriodicJob] = {}
        self._workers: Dict[str, _Worker] = {}
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    # --------------------------------------------------------
    # Registration
    # --------------------------------------------------------

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: JobFunc,
        run_immediately: bool = True,
    ) -> PeriodicJob:
        """
        Register a periodic job.

        Raises:
            SchedulerError: Duplicate name, non-positive interval,
                or the scheduler is already running
        """
        self._check_registration(name)
        if interval_seconds <= 0:
            raise SchedulerError(
                f"Job {name} needs a positive interval, got {interval_seconds}",
                context={"job": name},
            )
        job = PeriodicJob(
            name=name,
            interval_seconds=interval_seconds,
            func=func,
            run_immediately=run_immediately,
        )
        self._jobs[name] = job
        return job

    def add_worker(self, name: str, func: WorkerFunc) -> None:
        """Register a long-running coroutine that receives the stop event."""
        self._check_registration(name)
        self._workers[name] = _Worker(name=name, func=func)

    def _check_registration(self, name: str) -> None:
        if self.is_running:
            raise SchedulerError(f"Cannot register {name} while running", context={"job": name})
        if name in self._jobs or name in self._workers:
            raise SchedulerError(f"Job {name} already registered", context={"job": name})

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and self._stop_event is not None and not self._stop_event.is_set()

    @property
    def stop_event(self) -> Optional[asyncio.Event]:
        return self._stop_event

    async def start(self) -> None:
        """Start every job and worker as a task."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        self._stop_event = asyncio.Event()
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._run_job(job), name=job.name))
        for worker in self._workers.values():
            self._tasks.append(
                asyncio.create_task(worker.func(self._stop_event), name=worker.name)
            )

        logger.info(
            f"Scheduler started: {len(self._jobs)} jobs "
            f"({', '.join(self._jobs)}), {len(self._workers)} workers"
        )

    async def stop(self) -> None:
        """Signal every task to stop and wait for them to finish."""
        if self._stop_event is None:
            return
        self._stop_event.set()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=self._shutdown_timeout)
            for task in pending:
                logger.warning(f"Cancelling {task.get_name()} after shutdown timeout")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        f"Task {task.get_name()} ended with error: {task.exception()}"
                    )

        self._tasks = []
        logger.info("Scheduler stopped")

    async def wait_stopped(self) -> None:
        """Block until stop() is called."""
        if self._stop_event is not None:
            await self._stop_event.wait()

    # --------------------------------------------------------
    # Execution
    # --------------------------------------------------------

    async def run_job_once(self, job: PeriodicJob) -> None:
        """Run one tick of a job, recording the outcome."""
        job.last_run_at = self._clock.now()
        try:
            await job.func()
            job.runs += 1
            job.last_error = None
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(f"Job {job.name} failed: {e}", exc_info=True)

    async def _run_job(self, job: PeriodicJob) -> None:
        stop_event = self._stop_event
        if not job.run_immediately and await self._wait(stop_event, job.interval_seconds):
            return

        while not stop_event.is_set():
            await self.run_job_once(job)
            if await self._wait(stop_event, job.interval_seconds):
                break

        logger.debug(f"Job {job.name} stopped")

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop was requested."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "jobs": [job.to_dict() for job in self._jobs.values()],
            "workers": list(self._workers),
        }


__all__ = ["JobScheduler", "PeriodicJob"]
