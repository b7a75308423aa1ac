"""
mqtt2influxdb — MQTT source

Wraps aiomqtt as a supervised Connection.  connect() does the handshake
and subscribes every rule's topic filter; serve() pumps messages into the
pipeline's bounded intake queue until the broker goes away.

The queue handoff is non-blocking: if the pipeline falls behind and the
queue is full, the message is dropped and counted rather than stalling
the MQTT client.
"""

import asyncio
import logging
import ssl
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import aiomqtt

from .config import MqttEndpoint
from .errors import ConnectionLost, ConnectionRejected

logger = logging.getLogger("mqtt2influxdb.source")

# CONNACK codes retries can't fix: MQTT 3.1.1 (4, 5) and MQTT 5 (134, 135).
REJECTED_CODES = frozenset({4, 5, 134, 135})


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    topic: str
    payload: bytes
    received_ns: int     # wall clock, ns since epoch


def _payload_bytes(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, (bytearray, memoryview)):
        return bytes(payload)
    if payload is None:
        return b""
    return str(payload).encode("utf-8")


class MqttSource:
    """Message source connection for the ConnectionSupervisor."""

    def __init__(
        self,
        endpoint: MqttEndpoint,
        client_id: str,
        topic_patterns: Sequence[str],
        queue: "asyncio.Queue[IncomingMessage]",
        qos: int = 0,
        keepalive: int = 5,
    ) -> None:
        self.endpoint = endpoint
        self.client_id = client_id
        self.topic_patterns = tuple(topic_patterns)
        self.qos = qos
        self.keepalive = keepalive
        self._queue = queue
        self._stack: Optional[AsyncExitStack] = None
        self._client: Optional[aiomqtt.Client] = None
        self.received = 0
        self.overflow = 0

    def _make_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.endpoint.hostname,
            port=self.endpoint.port,
            username=self.endpoint.username,
            password=self.endpoint.password,
            identifier=self.client_id,
            keepalive=self.keepalive,
            tls_context=ssl.create_default_context() if self.endpoint.tls else None,
        )

    async def connect(self) -> None:
        self._stack = AsyncExitStack()
        try:
            self._client = await self._stack.enter_async_context(self._make_client())
            for pattern in self.topic_patterns:
                await self._client.subscribe(pattern, qos=self.qos)
        except aiomqtt.MqttCodeError as e:
            if getattr(e.rc, "value", e.rc) in REJECTED_CODES:
                raise ConnectionRejected(f"MQTT broker {self.endpoint!r} refused client: {e}") from e
            raise ConnectionLost(f"MQTT connect to {self.endpoint!r} failed: {e}") from e
        except aiomqtt.MqttError as e:
            raise ConnectionLost(f"MQTT connect to {self.endpoint!r} failed: {e}") from e

        logger.info(
            "Connected to MQTT broker %r — subscribed to %d topic filters",
            self.endpoint, len(self.topic_patterns),
        )
        for pattern in self.topic_patterns:
            logger.debug("Subscribed to '%s' (qos %d)", pattern, self.qos)

    async def serve(self) -> None:
        try:
            async for message in self._client.messages:
                self.received += 1
                incoming = IncomingMessage(
                    topic=str(message.topic),
                    payload=_payload_bytes(message.payload),
                    received_ns=time.time_ns(),
                )
                try:
                    self._queue.put_nowait(incoming)
                except asyncio.QueueFull:
                    self.overflow += 1
                    if self.overflow % 1000 == 1:
                        logger.warning(
                            "Intake queue full — dropped %d messages so far", self.overflow
                        )
        except aiomqtt.MqttError as e:
            raise ConnectionLost(str(e)) from e

    async def disconnect(self) -> None:
        stack, self._stack, self._client = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except aiomqtt.MqttError as e:
            logger.debug("MQTT disconnect after failure: %s", e)
