"""
mqtt2influxdb — Bridge service (main entry)

Subscribes to every topic filter in the mapping file, maps each message
to an InfluxDB point and batch-writes the points to an InfluxDB2 bucket.

Architecture:
  MQTT broker
      │   (MqttSource, supervised: reconnect + re-subscribe)
      ▼
  intake queue ── full? ──→ dropped (counted)
      │
      ▼
  TopicMatcher ── no rule? ──→ dropped (counted)
      │
      ▼
  PayloadDecoder → PointBuilder ── no fields? ──→ dropped (counted)
      │
      ▼
  BatchBuffer ── over max_pending? ──→ oldest dropped (counted)
      │
      ▼
  SinkWriter ── retries/backoff ──→ InfluxDB2 (supervised: ping + reconnect)

Exit codes: 0 clean shutdown, 1 connection rejected, 2 bad configuration.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from .backoff import BackoffPolicy
from .batch_buffer import BatchBuffer
from .config import Settings
from .errors import ConfigurationError, ConnectionRejected
from .metrics import build_app, start_metrics_server
from .pipeline import Pipeline
from .rules import RuleSet, load_rules
from .sink import InfluxSink, SinkConnection
from .sink_writer import SinkWriter
from .source import MqttSource
from .supervisor import ConnectionSupervisor

logger = logging.getLogger("mqtt2influxdb.ingestor")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level: str, fmt: str = "text") -> None:
    if fmt == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logging.basicConfig(level=level.upper(), handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=level.upper(),
            format=LOG_FORMAT,
            datefmt="%Y-%m-%dT%H:%M:%S",
            force=True,
        )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Bridge:
    """Main service — wires all components and owns their lifecycle."""

    def __init__(self, settings: Settings, rules: RuleSet) -> None:
        self.settings = settings
        self.rules = rules
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=settings.INTAKE_QUEUE_SIZE)
        reconnect = BackoffPolicy(initial=settings.RECONNECT_INITIAL, maximum=settings.RECONNECT_MAX)

        self.sink = InfluxSink(
            url=settings.INFLUXDB_URL,
            org=settings.INFLUXDB_ORG,
            bucket=settings.INFLUXDB_BUCKET,
            token=settings.INFLUXDB_TOKEN,
            timeout=settings.INFLUXDB_TIMEOUT,
        )
        sink_connection = SinkConnection(self.sink)
        self.sink_supervisor = ConnectionSupervisor("influxdb", sink_connection, reconnect)

        self.writer = SinkWriter(
            self.sink,
            max_attempts=settings.WRITE_MAX_ATTEMPTS,
            backoff=BackoffPolicy(initial=settings.WRITE_RETRY_INITIAL, maximum=settings.WRITE_RETRY_MAX),
            on_unavailable=sink_connection.mark_unavailable,
        )
        self.buffer = BatchBuffer(
            batch_size=settings.BATCH_SIZE,
            flush_interval=settings.BATCH_FLUSH_INTERVAL,
            max_pending=settings.BATCH_MAX_PENDING,
        )
        self.pipeline = Pipeline(rules, self.buffer, self.writer, self.sink_supervisor)

        self.source = MqttSource(
            endpoint=settings.mqtt_endpoint,
            client_id=settings.MQTT_CLIENT_ID,
            topic_patterns=rules.topic_patterns,
            queue=self.queue,
            qos=settings.MQTT_QOS,
            keepalive=settings.MQTT_KEEPALIVE,
        )
        self.source_supervisor = ConnectionSupervisor("mqtt", self.source, reconnect)

        self._stop: Optional[asyncio.Event] = None

    # ── Observability hooks ──────────────────────────────────────────────

    def snapshot(self) -> dict:
        data = self.pipeline.snapshot()
        data["intake_overflow"] = self.source.overflow
        data["intake_queue_size"] = self.queue.qsize()
        return data

    def connections(self) -> dict[str, str]:
        return {
            "mqtt": self.source_supervisor.state.value,
            "influxdb": self.sink_supervisor.state.value,
        }

    def healthy(self) -> bool:
        return (
            self.writer.healthy
            and self.source_supervisor.is_connected
            and self.sink_supervisor.is_connected
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def run(self) -> None:
        """Run until stopped or a connection is rejected for good."""
        logger.info("=" * 60)
        logger.info("mqtt2influxdb starting")
        logger.info("=" * 60)
        logger.info("MQTT broker %r as '%s'", self.settings.mqtt_endpoint, self.settings.MQTT_CLIENT_ID)
        logger.info(
            "InfluxDB %s — org '%s', bucket '%s'",
            self.settings.INFLUXDB_URL, self.settings.INFLUXDB_ORG, self.settings.INFLUXDB_BUCKET,
        )

        self._stop = asyncio.Event()
        metrics_runner = None
        if self.settings.METRICS_PORT:
            app = build_app(self.snapshot, self.connections, self.healthy)
            metrics_runner = await start_metrics_server(self.settings.METRICS_PORT, app)

        self.pipeline.start(self.queue)
        sink_task = asyncio.create_task(self.sink_supervisor.run(), name="influxdb-supervisor")
        source_task = asyncio.create_task(self.source_supervisor.run(), name="mqtt-supervisor")
        stop_task = asyncio.create_task(self._stop.wait(), name="stop-signal")

        done, _ = await asyncio.wait(
            {sink_task, source_task, stop_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        failure: Optional[BaseException] = None
        for task in done:
            if task is not stop_task and not task.cancelled():
                failure = task.exception()

        logger.info("Shutting down...")
        stop_task.cancel()
        await _cancel(source_task)
        await self.pipeline.stop(self.settings.SHUTDOWN_TIMEOUT)
        await _cancel(sink_task)
        await self.sink.close()
        if metrics_runner is not None:
            await metrics_runner.cleanup()
        logger.info("Shutdown complete")

        if failure is not None:
            raise failure


async def _cancel(task: asyncio.Task) -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mqtt2influxdb",
        description="Bridge MQTT messages into InfluxDB2 points using a mapping file.",
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to the mapping configuration file (overrides $CONFIG)")
    parser.add_argument("--log-level", type=str, default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    overrides = {}
    if args.config:
        overrides["CONFIG"] = args.config
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level

    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        configure_logging("INFO")
        logger.critical("Invalid settings:\n%s", e)
        return 2

    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    try:
        rules = load_rules(settings.CONFIG)
        bridge = Bridge(settings, rules)
    except (ConfigurationError, ValueError) as e:
        logger.critical("Configuration error: %s", e)
        return 2

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, bridge.request_stop)
        except (NotImplementedError, AttributeError):
            pass

    try:
        await bridge.run()
    except ConnectionRejected:
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
