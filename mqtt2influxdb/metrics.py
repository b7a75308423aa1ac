"""
mqtt2influxdb — Metrics

Exposes a Prometheus-compatible /metrics endpoint and a JSON /health
check.  Runs on a separate port so it doesn't interfere with ingestion.
Values are read from a snapshot callable on every scrape.
"""

import logging
from typing import Callable

from aiohttp import web

logger = logging.getLogger("mqtt2influxdb.metrics")

# (exposed name, snapshot key)
COUNTERS = [
    ("mqtt2influxdb_messages_received_total", "received"),
    ("mqtt2influxdb_messages_matched_total", "matched"),
    ("mqtt2influxdb_match_misses_total", "match_misses"),
    ("mqtt2influxdb_decode_failures_total", "decode_failures"),
    ("mqtt2influxdb_messages_dropped_total", "dropped_messages"),
    ("mqtt2influxdb_empty_points_total", "builder_empty_points"),
    ("mqtt2influxdb_empty_measurements_total", "builder_empty_measurements"),
    ("mqtt2influxdb_timestamp_rejections_total", "builder_timestamp_rejections"),
    ("mqtt2influxdb_intake_overflow_total", "intake_overflow"),
    ("mqtt2influxdb_points_buffered_total", "buffer_points_added"),
    ("mqtt2influxdb_points_dropped_total", "buffer_points_dropped"),
    ("mqtt2influxdb_batches_delivered_total", "writer_batches_delivered"),
    ("mqtt2influxdb_batches_dropped_total", "writer_batches_dropped"),
    ("mqtt2influxdb_batches_rejected_total", "writer_batches_rejected"),
    ("mqtt2influxdb_points_written_total", "writer_points_written"),
    ("mqtt2influxdb_write_attempts_total", "writer_write_attempts"),
]

GAUGES = [
    ("mqtt2influxdb_buffer_pending", "buffer_pending"),
    ("mqtt2influxdb_buffer_queued_batches", "buffer_queued_batches"),
    ("mqtt2influxdb_last_write_ms", "writer_last_write_ms"),
    ("mqtt2influxdb_last_write_points", "writer_last_write_points"),
]


def render_metrics(snapshot: dict, connections: dict[str, str]) -> str:
    """Prometheus text exposition format."""
    lines = []
    for name, key in COUNTERS:
        lines.append(f"# TYPE {name} counter")
        lines.append(f"{name} {snapshot.get(key, 0)}")
    for name, key in GAUGES:
        lines.append(f"# TYPE {name} gauge")
        lines.append(f"{name} {snapshot.get(key, 0)}")

    lines.append("# TYPE mqtt2influxdb_connection_up gauge")
    for conn, state in connections.items():
        up = 1 if state == "CONNECTED" else 0
        lines.append(f'mqtt2influxdb_connection_up{{connection="{conn}",state="{state}"}} {up}')
    return "\n".join(lines) + "\n"


def build_app(
    snapshot: Callable[[], dict],
    connections: Callable[[], dict[str, str]],
    healthy: Callable[[], bool],
) -> web.Application:
    async def _handle_metrics(request: web.Request) -> web.Response:
        body = render_metrics(snapshot(), connections())
        return web.Response(text=body, content_type="text/plain")

    async def _handle_health(request: web.Request) -> web.Response:
        ok = healthy()
        return web.json_response(
            {
                "status": "ok" if ok else "degraded",
                "connections": connections(),
                "metrics": snapshot(),
            },
            status=200 if ok else 503,
        )

    app = web.Application()
    app.router.add_get("/metrics", _handle_metrics)
    app.router.add_get("/health", _handle_health)
    return app


async def start_metrics_server(port: int, app: web.Application) -> web.AppRunner:
    """Start the metrics HTTP server on a background port."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info("Metrics server listening on :%d", port)
    return runner
