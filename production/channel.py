"""
Production - Snapshot Channel.

============================================================
RESPONSIBILITY
============================================================
In-process message channel carrying "snapshot inserted"
notifications from ingestion to the level-delta derivation.

- Ingestion publishes after a snapshot row is written
- The derivation service consumes and re-derives the pairs
  around the new snapshot
- A full channel drops the message; the periodic poll picks
  up whatever was missed, through the same dedup key

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotInserted:
    """A snapshot row was written for the first time."""
    machine_id: str
    captured_at: datetime
    water_level: float


class SnapshotChannel:
    """Bounded asyncio queue of SnapshotInserted messages."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: "asyncio.Queue[SnapshotInserted]" = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0
        self._published = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def published(self) -> int:
        return self._published

    def pending(self) -> int:
        return self._queue.qsize()

    def publish(self, message: SnapshotInserted) -> bool:
        """
        Enqueue without waiting.

        Returns:
            False if the channel was full and the message dropped
        """
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                f"Snapshot channel full, dropping {message.machine_id}@"
                f"{message.captured_at.isoformat()} (poll will recover it)"
            )
            return False
        self._published += 1
        return True

    async def receive(self, timeout: Optional[float] = None) -> Optional[SnapshotInserted]:
        """Wait for the next message; None on timeout."""
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def task_done(self) -> None:
        self._queue.task_done()


__all__ = ["SnapshotInserted", "SnapshotChannel"]
