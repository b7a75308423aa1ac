"""
mqtt2influxdb — Connection Supervisor

Owns the lifecycle of one connection (the MQTT source or the InfluxDB
sink).  Each gets its own supervisor, so one can be down while the
other keeps working.

State diagram:

    ┌────────────┐ start ┌────────────┐ handshake ok ┌───────────┐
    │DISCONNECTED│──────▶│ CONNECTING │─────────────▶│ CONNECTED │
    └────────────┘       └─────┬──────┘              └─────┬─────┘
                               │ fail       ▲               │ lost
                               ▼            │ backoff       ▼
                         ┌──────────────┐   │ elapsed
                         │ RECONNECTING │───┘◀──────────────┘
                         └──────────────┘

    any state ──(credentials rejected)──▶ FATAL   (terminal)

The transitions live in ConnectionStateMachine, which does no I/O and
can be driven directly from tests.  ConnectionSupervisor runs the loop
around a Connection and sleeps between attempts.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Protocol

from .backoff import BackoffPolicy
from .errors import ConnectionLost, ConnectionRejected

logger = logging.getLogger("mqtt2influxdb.supervisor")


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FATAL = "FATAL"


class TransitionResult(str, Enum):
    OK = "OK"
    INVALID = "INVALID"


_ALLOWED = {
    ("start", ConnectionState.DISCONNECTED): ConnectionState.CONNECTING,
    ("connected", ConnectionState.CONNECTING): ConnectionState.CONNECTED,
    ("failed", ConnectionState.CONNECTING): ConnectionState.RECONNECTING,
    ("failed", ConnectionState.CONNECTED): ConnectionState.RECONNECTING,
    ("retry", ConnectionState.RECONNECTING): ConnectionState.CONNECTING,
}


class ConnectionStateMachine:
    """Pure transition logic plus the consecutive-failure count for backoff."""

    def __init__(self, backoff: BackoffPolicy, name: str = "connection") -> None:
        self.name = name
        self.state = ConnectionState.DISCONNECTED
        self.failures = 0
        self._backoff = backoff
        self.history: list[ConnectionState] = [self.state]

    def _move(self, event: str) -> TransitionResult:
        target = _ALLOWED.get((event, self.state))
        if target is None:
            logger.warning("%s: invalid transition '%s' from %s", self.name, event, self.state.value)
            return TransitionResult.INVALID
        self.state = target
        self.history.append(target)
        return TransitionResult.OK

    def start(self) -> TransitionResult:
        return self._move("start")

    def connected(self) -> TransitionResult:
        result = self._move("connected")
        if result is TransitionResult.OK:
            self.failures = 0
        return result

    def failed(self) -> TransitionResult:
        """Handshake failure or unexpected disconnect."""
        result = self._move("failed")
        if result is TransitionResult.OK:
            self.failures += 1
        return result

    def retry(self) -> TransitionResult:
        """Backoff elapsed."""
        return self._move("retry")

    def reject(self) -> TransitionResult:
        if self.state is ConnectionState.FATAL:
            return TransitionResult.INVALID
        self.state = ConnectionState.FATAL
        self.history.append(self.state)
        return TransitionResult.OK

    def stop(self) -> TransitionResult:
        if self.state is ConnectionState.FATAL:
            return TransitionResult.INVALID
        self.state = ConnectionState.DISCONNECTED
        self.history.append(self.state)
        return TransitionResult.OK

    @property
    def next_delay(self) -> float:
        return self._backoff.delay(max(self.failures, 1))


class Connection(Protocol):
    async def connect(self) -> None:
        """Handshake.  Raises ConnectionLost (retry) or ConnectionRejected (fatal)."""

    async def serve(self) -> None:
        """Run until the connection drops; raises ConnectionLost when it does."""

    async def disconnect(self) -> None: ...


class ConnectionSupervisor:
    def __init__(
        self,
        name: str,
        connection: Connection,
        backoff: BackoffPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.machine = ConnectionStateMachine(backoff, name=name)
        self._connection = connection
        self._sleep = sleep
        self._connected = asyncio.Event()
        self.reconnects = 0

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    @property
    def is_connected(self) -> bool:
        return self.machine.state is ConnectionState.CONNECTED

    async def wait_connected(self) -> None:
        await self._connected.wait()

    async def run(self) -> None:
        """
        Connect and keep reconnecting until cancelled.  Raises
        ConnectionRejected once the peer refuses us for good.
        """
        self.machine.start()
        logger.info("%s: connecting", self.name)
        try:
            while True:
                reason = await self._session()
                was_connected = self.machine.state is ConnectionState.CONNECTED
                self.machine.failed()
                delay = self.machine.next_delay
                if was_connected:
                    logger.error("%s connection lost: %s — reconnecting in %.1fs", self.name, reason, delay)
                else:
                    logger.warning("%s connect failed: %s — retry in %.1fs", self.name, reason, delay)
                await self._sleep(delay)
                self.machine.retry()
                self.reconnects += 1
        except ConnectionRejected as e:
            self.machine.reject()
            logger.critical("%s: %s — giving up", self.name, e)
            raise
        finally:
            if self.machine.state is not ConnectionState.FATAL:
                self.machine.stop()

    async def _session(self) -> str:
        """One connect + serve cycle.  Returns why it ended."""
        try:
            await self._connection.connect()
            self.machine.connected()
            self._connected.set()
            logger.info("%s: connected", self.name)
            await self._connection.serve()
            return "closed by peer"
        except ConnectionLost as e:
            return str(e)
        finally:
            self._connected.clear()
            await self._connection.disconnect()
