"""
mqtt2influxdb — Sink Writer

Delivers one batch to the sink with bounded retries.

    RetryableDeliveryError   retry after backoff, up to max_attempts in total;
                             then drop the batch and report the sink as
                             unavailable
    FatalDeliveryError       drop immediately; counted as a rejection and
                             surfaced through `healthy` until a write succeeds

Delivery is best-effort, not exactly-once.  The writer keeps no reference
to a batch once deliver() returns.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .backoff import BackoffPolicy
from .batch_buffer import Batch
from .errors import FatalDeliveryError, RetryableDeliveryError
from .sink import Sink

logger = logging.getLogger("mqtt2influxdb.writer")

SLOW_WRITE_MS = 500


class DeliveryOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    DROPPED = "DROPPED"      # retries exhausted
    REJECTED = "REJECTED"    # non-retryable failure


@dataclass
class WriterStats:
    batches_delivered: int = 0
    points_written: int = 0
    batches_dropped: int = 0
    batches_rejected: int = 0
    points_lost: int = 0
    write_attempts: int = 0
    consecutive_rejections: int = 0
    last_write_ms: float = 0
    last_write_points: int = 0


class SinkWriter:
    def __init__(
        self,
        sink: Sink,
        max_attempts: int = 5,
        backoff: BackoffPolicy = BackoffPolicy(initial=0.5, maximum=30.0),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_unavailable: Optional[Callable[[], None]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sink = sink
        self.max_attempts = max_attempts
        self._backoff = backoff
        self._sleep = sleep
        self._on_unavailable = on_unavailable
        self.stats = WriterStats()

    @property
    def healthy(self) -> bool:
        """False while the sink keeps rejecting batches outright."""
        return self.stats.consecutive_rejections == 0

    async def deliver(self, batch: Batch) -> DeliveryOutcome:
        size = len(batch)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            self.stats.write_attempts += 1
            t0 = time.monotonic()
            try:
                await self._sink.write(batch.points)
            except FatalDeliveryError as e:
                self.stats.batches_rejected += 1
                self.stats.points_lost += size
                self.stats.consecutive_rejections += 1
                logger.error(
                    "Sink rejected batch of %d points — dropped, not retrying: %s",
                    size, e,
                )
                return DeliveryOutcome.REJECTED
            except RetryableDeliveryError as e:
                last_error = e
                if attempt < self.max_attempts:
                    delay = self._backoff.delay(attempt)
                    logger.warning(
                        "Write attempt %d/%d failed (%s) — retrying in %.1fs",
                        attempt, self.max_attempts, e, delay,
                    )
                    await self._sleep(delay)
                continue

            elapsed_ms = (time.monotonic() - t0) * 1000
            self.stats.batches_delivered += 1
            self.stats.points_written += size
            self.stats.consecutive_rejections = 0
            self.stats.last_write_ms = round(elapsed_ms, 2)
            self.stats.last_write_points = size
            if elapsed_ms > SLOW_WRITE_MS:
                logger.warning("Slow write: %d points in %.0fms", size, elapsed_ms)
            else:
                logger.debug("Wrote %d points in %.1fms", size, elapsed_ms)
            return DeliveryOutcome.DELIVERED

        self.stats.batches_dropped += 1
        self.stats.points_lost += size
        logger.error(
            "Dropping batch of %d points after %d attempts: %s",
            size, self.max_attempts, last_error,
        )
        if self._on_unavailable is not None:
            self._on_unavailable()
        return DeliveryOutcome.DROPPED
