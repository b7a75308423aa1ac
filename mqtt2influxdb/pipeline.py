"""
mqtt2influxdb — Pipeline

Two tasks share one BatchBuffer:

  intake   queue → TopicMatcher → PayloadDecoder → PointBuilder → buffer
           (synchronous per message, never waits on the sink)

  flusher  buffer → wait for sink connection → SinkWriter → InfluxDB

Messages are consumed by a single intake task, so points from one topic
reach the buffer in arrival order.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from .batch_buffer import BatchBuffer
from .decoder import PayloadDecoder
from .errors import PointConstructionError
from .points import Point, PointBuilder
from .rules import RuleSet
from .sink_writer import SinkWriter
from .source import IncomingMessage
from .supervisor import ConnectionState, ConnectionSupervisor
from .topics import TopicMatcher

logger = logging.getLogger("mqtt2influxdb.pipeline")


@dataclass
class PipelineStats:
    received: int = 0
    matched: int = 0
    match_misses: int = 0
    decode_failures: int = 0
    dropped_messages: int = 0
    points_enqueued: int = 0


class Pipeline:
    def __init__(
        self,
        rules: RuleSet,
        buffer: BatchBuffer,
        writer: SinkWriter,
        sink_supervisor: Optional[ConnectionSupervisor] = None,
    ) -> None:
        self.rules = rules
        self.matcher = TopicMatcher(rules)
        self.builder = PointBuilder()
        self.buffer = buffer
        self.writer = writer
        self._sink_supervisor = sink_supervisor
        self._queue: Optional["asyncio.Queue[IncomingMessage]"] = None
        self._intake_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self.stats = PipelineStats()

    # ── Intake ───────────────────────────────────────────────────────────

    def handle(self, message: IncomingMessage) -> Optional[Point]:
        """Map one message to a point and buffer it.  Returns None if dropped."""
        self.stats.received += 1

        match = self.matcher.match(message.topic)
        if match is None:
            self.stats.match_misses += 1
            return None
        self.stats.matched += 1

        payload = PayloadDecoder(message.payload)
        decoded = payload.decode(match.rule)
        self.stats.decode_failures += len(decoded.failures)

        try:
            point = self.builder.build(match, decoded, message.received_ns, payload)
        except PointConstructionError as e:
            self.stats.dropped_messages += 1
            logger.debug("Dropped message: %s", e)
            return None

        self.buffer.add(point)
        self.stats.points_enqueued += 1
        return point

    async def run_intake(self, queue: "asyncio.Queue[IncomingMessage]") -> None:
        while True:
            message = await queue.get()
            try:
                self.handle(message)
            except Exception:
                logger.exception("Unexpected error mapping message on %s", message.topic)
            finally:
                queue.task_done()

    # ── Delivery ─────────────────────────────────────────────────────────

    async def run_flusher(self) -> None:
        while True:
            batch = await self.buffer.next_batch()
            if batch is None:
                return
            if self._sink_supervisor is not None and not self._sink_supervisor.is_connected:
                logger.info("Waiting for InfluxDB before delivering %d points", len(batch))
                await self._sink_supervisor.wait_connected()
            try:
                await self.writer.deliver(batch)
            except Exception:
                logger.exception("Unexpected error delivering batch of %d points", len(batch))

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self, queue: "asyncio.Queue[IncomingMessage]") -> None:
        self._queue = queue
        self._intake_task = asyncio.create_task(self.run_intake(queue), name="pipeline-intake")
        self._flush_task = asyncio.create_task(self.run_flusher(), name="pipeline-flusher")
        logger.info(
            "Pipeline started — %d rules, batch_size=%d, flush_interval=%.1fs",
            len(self.rules), self.buffer.batch_size, self.buffer.flush_interval,
        )

    async def stop(self, timeout: float) -> None:
        """
        Stop intake, map whatever is already queued, then give the flusher
        `timeout` seconds to deliver the rest.  Anything still undelivered
        after that is abandoned, and so is everything buffered when the
        sink connection has gone FATAL.
        """
        if self._intake_task is not None:
            self._intake_task.cancel()
            try:
                await self._intake_task
            except asyncio.CancelledError:
                pass

        if self._queue is not None:
            while not self._queue.empty():
                self.handle(self._queue.get_nowait())

        self.buffer.close()
        if self._flush_task is None:
            return
        if self._sink_supervisor is not None and self._sink_supervisor.state is ConnectionState.FATAL:
            # Nothing can be delivered; the flusher may be parked in wait_connected().
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            abandoned = sum(len(b) for b in self.buffer.drain())
            logger.warning("InfluxDB connection is FATAL — abandoned %d buffered points", abandoned)
        else:
            try:
                await asyncio.wait_for(self._flush_task, timeout=timeout)
            except asyncio.TimeoutError:
                abandoned = sum(len(b) for b in self.buffer.drain())
                logger.warning(
                    "Shutdown deadline (%.1fs) reached — abandoned in-flight batch and %d buffered points",
                    timeout, abandoned,
                )
        logger.info(
            "Pipeline stopped — received: %d, written: %d, lost: %d",
            self.stats.received,
            self.writer.stats.points_written,
            self.writer.stats.points_lost,
        )

    def snapshot(self) -> dict:
        """Flat counter snapshot for /metrics and /health."""
        data = asdict(self.stats)
        data.update({f"builder_{k}": v for k, v in asdict(self.builder.stats).items()})
        data.update({f"buffer_{k}": v for k, v in asdict(self.buffer.stats).items()})
        data.update({f"writer_{k}": v for k, v in asdict(self.writer.stats).items()})
        data["buffer_pending"] = self.buffer.pending
        data["buffer_queued_batches"] = self.buffer.queued_batches
        return data
