"""
mqtt2influxdb — InfluxDB2 sink

Thin HTTP client for the InfluxDB2 write API:

    POST {url}/api/v2/write?org=..&bucket=..&precision=ns
    Authorization: Token <token>
    body: one line-protocol line per point

The connection handshake is an authenticated bucket lookup,
GET {url}/api/v2/buckets?name=..&org=.., so bad credentials or a missing
bucket surface as ConnectionRejected before any data is sent.

The only policy here is classifying failures.  Network errors, timeouts,
429 and 5xx are RetryableDeliveryError; any other non-2xx status means the
request itself is wrong (auth, permissions, malformed lines, unknown
bucket) and is a FatalDeliveryError.  Retrying is SinkWriter's job.
"""

import asyncio
import logging
from typing import Optional, Protocol, Sequence

import httpx

from .errors import (
    ConnectionLost,
    ConnectionRejected,
    FatalDeliveryError,
    RetryableDeliveryError,
)
from .points import Point

logger = logging.getLogger("mqtt2influxdb.sink")

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})
REJECTED_STATUS = frozenset({401, 403})


class Sink(Protocol):
    async def write(self, points: Sequence[Point]) -> None: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class InfluxSink:
    """InfluxDB2 write client over httpx."""

    def __init__(
        self,
        url: str,
        org: str,
        bucket: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.org = org
        self.bucket = bucket
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                headers={"Authorization": f"Token {self._token}"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def ping(self) -> None:
        """
        Connection handshake.  /ping is unauthenticated, so the probe looks
        the bucket up instead: a bad token or a missing org/bucket is
        refused here rather than on every write.
        """
        client = await self._get_client()
        try:
            resp = await client.get(
                "/api/v2/buckets", params={"name": self.bucket, "org": self.org},
            )
        except httpx.TransportError as e:
            raise ConnectionLost(f"InfluxDB unreachable at {self.url}: {e}") from e
        if resp.status_code in REJECTED_STATUS:
            raise ConnectionRejected(f"InfluxDB refused credentials ({resp.status_code})")
        if resp.status_code == 404:
            raise ConnectionRejected(f"InfluxDB org '{self.org}' not found: {_error_message(resp)}")
        if not resp.is_success:
            raise ConnectionLost(f"InfluxDB returned {resp.status_code}: {_error_message(resp)}")
        try:
            buckets = resp.json().get("buckets") or []
        except (ValueError, AttributeError) as e:
            raise ConnectionLost(f"InfluxDB returned an unreadable bucket list: {e}") from e
        if not buckets:
            raise ConnectionRejected(f"InfluxDB bucket '{self.bucket}' not found in org '{self.org}'")

    async def write(self, points: Sequence[Point]) -> None:
        if not points:
            return
        body = "\n".join(p.to_line_protocol() for p in points)
        client = await self._get_client()
        try:
            resp = await client.post(
                "/api/v2/write",
                params={"org": self.org, "bucket": self.bucket, "precision": "ns"},
                content=body.encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
            )
        except httpx.TransportError as e:
            raise RetryableDeliveryError(f"{type(e).__name__}: {e}") from e

        if resp.is_success:
            return
        detail = _error_message(resp)
        if resp.status_code in RETRYABLE_STATUS:
            raise RetryableDeliveryError(f"InfluxDB {resp.status_code}: {detail}")
        raise FatalDeliveryError(f"InfluxDB {resp.status_code}: {detail}", status=resp.status_code)


class SinkConnection:
    """
    The sink as a supervised Connection.  The handshake is `ping`; the
    connection counts as lost once SinkWriter reports the sink unavailable.
    """

    def __init__(self, sink: Sink) -> None:
        self._sink = sink
        self._lost = asyncio.Event()

    async def connect(self) -> None:
        await self._sink.ping()
        self._lost.clear()
        logger.info("InfluxDB reachable")

    async def serve(self) -> None:
        await self._lost.wait()
        raise ConnectionLost("sink stopped accepting writes")

    async def disconnect(self) -> None:
        pass

    def mark_unavailable(self) -> None:
        self._lost.set()


def _error_message(resp: httpx.Response) -> str:
    """InfluxDB errors are JSON {"code": .., "message": ..}; fall back to text."""
    try:
        return str(resp.json().get("message") or resp.text[:500])
    except (ValueError, AttributeError):
        return resp.text[:500]
