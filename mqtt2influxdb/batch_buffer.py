"""
mqtt2influxdb — Batch Buffer

Accumulates points in memory and seals them into batches for the sink.

Flush triggers:
  1. Buffered count reaches batch_size
  2. Oldest buffered point is flush_interval seconds old
  3. Shutdown (close + drain)

Sealing moves the whole current buffer into the delivery queue, so intake
never waits for the sink.  Backpressure: if buffered + queued points reach
max_pending, the oldest point is dropped to make room and counted.  This
bounds memory while the sink is unreachable.

All methods except next_batch() are synchronous.  Intake and the flush
task share one event loop, so add() and take_due() can never interleave
and no critical section is longer than one batch copy.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from .points import Point

logger = logging.getLogger("mqtt2influxdb.buffer")


@dataclass
class Batch:
    points: list[Point]
    opened_at: float = 0.0      # clock() when the first point arrived

    def __len__(self) -> int:
        return len(self.points)


@dataclass
class BufferStats:
    points_added: int = 0
    points_dropped: int = 0
    batches_sealed: int = 0
    size_flushes: int = 0
    time_flushes: int = 0


class BatchBuffer:
    """Bounded point buffer with size and age flush triggers."""

    def __init__(
        self,
        batch_size: int,
        flush_interval: float,
        max_pending: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size < 1 or max_pending < 1:
            raise ValueError("batch_size and max_pending must be positive")
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_pending = max_pending
        self._clock = clock
        self._points: list[Point] = []
        self._opened_at: Optional[float] = None
        self._sealed: deque[Batch] = deque()
        self._queued = 0            # points inside sealed batches
        self._wakeup = asyncio.Event()
        self._closed = False
        self.stats = BufferStats()

    # ── Intake side ──────────────────────────────────────────────────────

    def add(self, point: Point) -> bool:
        """
        Buffer a point.  Returns False if an older point had to be dropped
        to stay under max_pending.
        """
        dropped = False
        if self.pending >= self.max_pending:
            self._drop_oldest()
            dropped = True

        if not self._points:
            self._opened_at = self._clock()
            # re-arm the flusher's wait with the new age deadline
            self._wakeup.set()
        self._points.append(point)
        self.stats.points_added += 1

        if len(self._points) >= self.batch_size:
            self.stats.size_flushes += 1
            self._seal()
        return not dropped

    def _drop_oldest(self) -> None:
        if self._sealed:
            oldest = self._sealed[0]
            oldest.points.pop(0)
            self._queued -= 1
            if not oldest.points:
                self._sealed.popleft()
        else:
            # opened_at is left as is: the batch just flushes a bit early.
            self._points.pop(0)
        self.stats.points_dropped += 1
        if self.stats.points_dropped % 1000 == 1:
            logger.warning(
                "Buffer full (%d pending) — dropping oldest points, %d dropped so far",
                self.max_pending, self.stats.points_dropped,
            )

    def _seal(self) -> None:
        batch = Batch(points=self._points, opened_at=self._opened_at or self._clock())
        self._points = []
        self._opened_at = None
        self._sealed.append(batch)
        self._queued += len(batch)
        self.stats.batches_sealed += 1
        self._wakeup.set()

    # ── Flush side ───────────────────────────────────────────────────────

    @property
    def pending(self) -> int:
        """Points held in memory: buffered plus sealed but not yet taken."""
        return len(self._points) + self._queued

    @property
    def buffered(self) -> int:
        return len(self._points)

    @property
    def queued_batches(self) -> int:
        return len(self._sealed)

    def time_until_due(self) -> Optional[float]:
        """Seconds until the age trigger fires, None if nothing is buffered."""
        if self._opened_at is None:
            return None
        return max(0.0, self._opened_at + self.flush_interval - self._clock())

    def take_due(self) -> Optional[Batch]:
        """
        Next batch ready for delivery, oldest first.  The open buffer is
        sealed as its own batch once it has aged out, even while earlier
        batches are still queued.
        """
        if self._points:
            if self._closed:
                self._seal()
            elif self.time_until_due() <= 0.0:
                self.stats.time_flushes += 1
                self._seal()
        if not self._sealed:
            return None
        batch = self._sealed.popleft()
        self._queued -= len(batch)
        return batch

    async def next_batch(self) -> Optional[Batch]:
        """
        Wait for the next batch.  Returns None once the buffer is closed
        and everything has been handed out.
        """
        while True:
            batch = self.take_due()
            if batch is not None:
                return batch
            if self._closed:
                return None
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.time_until_due())
            except asyncio.TimeoutError:
                pass

    def close(self) -> None:
        """Stop the age trigger; remaining points are sealed on the next take."""
        self._closed = True
        self._wakeup.set()

    def drain(self) -> list[Batch]:
        """Seal and return everything still held, oldest first."""
        if self._points:
            self._seal()
        batches = list(self._sealed)
        self._sealed.clear()
        self._queued = 0
        return batches
