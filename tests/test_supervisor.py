"""
Connection state machine, reconnect loop, and the MQTT source running
under a supervisor.  aiomqtt.Client is replaced by an in-memory fake so
no broker is needed.
"""

import asyncio
from types import SimpleNamespace

import aiomqtt
import pytest

from mqtt2influxdb.backoff import BackoffPolicy
from mqtt2influxdb.config import MqttEndpoint
from mqtt2influxdb.errors import ConnectionLost, ConnectionRejected
from mqtt2influxdb.source import MqttSource
from mqtt2influxdb.supervisor import (
    ConnectionState,
    ConnectionStateMachine,
    ConnectionSupervisor,
    TransitionResult,
)


class FakeMqttClient:
    """Stands in for aiomqtt.Client: records subscriptions, replays messages."""

    def __init__(self, messages=(), error=None, enter_error=None):
        self.subscriptions = []
        self.exited = False
        self._messages = list(messages)
        self._error = error
        self._enter_error = enter_error

    async def __aenter__(self):
        if self._enter_error is not None:
            raise self._enter_error
        return self

    async def __aexit__(self, *exc_info):
        self.exited = True
        return False

    async def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        for topic, payload in self._messages:
            yield SimpleNamespace(topic=topic, payload=payload)
        if self._error is not None:
            raise self._error
        await asyncio.Event().wait()


def make_source(clients, queue=None, patterns=("home/+/climate", "power/#")):
    source = MqttSource(
        endpoint=MqttEndpoint("broker", 1883),
        client_id="test",
        topic_patterns=patterns,
        queue=queue if queue is not None else asyncio.Queue(),
        qos=1,
    )
    pending = list(clients)
    source._make_client = lambda: pending.pop(0)
    return source


async def until(condition, timeout=1.0):
    async def _poll():
        while not condition():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


async def cancel(task):
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


# =============================================================================
# STATE MACHINE
# =============================================================================

class TestConnectionStateMachine:
    @pytest.fixture
    def machine(self):
        return ConnectionStateMachine(BackoffPolicy(initial=1.0, maximum=8.0), name="test")

    def test_happy_path(self, machine):
        assert machine.start() is TransitionResult.OK
        assert machine.connected() is TransitionResult.OK
        assert machine.state is ConnectionState.CONNECTED
        assert machine.history == [
            ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED,
        ]

    def test_failures_grow_backoff_and_reset_on_connect(self, machine):
        machine.start()
        delays = []
        for _ in range(5):
            machine.failed()
            delays.append(machine.next_delay)
            machine.retry()
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]

        machine.connected()
        assert machine.failures == 0
        machine.failed()
        assert machine.next_delay == 1.0
        assert machine.state is ConnectionState.RECONNECTING

    def test_invalid_transitions(self, machine):
        assert machine.connected() is TransitionResult.INVALID
        assert machine.retry() is TransitionResult.INVALID
        machine.start()
        assert machine.start() is TransitionResult.INVALID
        assert machine.state is ConnectionState.CONNECTING

    def test_fatal_is_terminal(self, machine):
        machine.start()
        assert machine.reject() is TransitionResult.OK
        assert machine.state is ConnectionState.FATAL
        assert machine.stop() is TransitionResult.INVALID
        assert machine.start() is TransitionResult.INVALID
        assert machine.reject() is TransitionResult.INVALID


# =============================================================================
# SUPERVISOR + MQTT SOURCE
# =============================================================================

class TestSupervisedSource:
    @pytest.mark.asyncio
    async def test_resubscribes_after_reconnect(self, sleeper):
        first = FakeMqttClient(messages=[("home/kitchen/climate", b"1")], error=aiomqtt.MqttError("lost"))
        second = FakeMqttClient(messages=[("power/meter", b"2")])
        queue = asyncio.Queue()
        source = make_source([first, second], queue)
        supervisor = ConnectionSupervisor("mqtt", source, BackoffPolicy(1.0, 60.0), sleep=sleeper)

        task = asyncio.create_task(supervisor.run())
        await until(lambda: queue.qsize() == 2)

        expected = [("home/+/climate", 1), ("power/#", 1)]
        assert first.subscriptions == expected
        assert second.subscriptions == expected
        assert first.exited
        assert supervisor.reconnects == 1
        assert sleeper.delays == [1.0]
        assert supervisor.is_connected
        assert [queue.get_nowait().topic for _ in range(2)] == ["home/kitchen/climate", "power/meter"]

        await cancel(task)
        assert supervisor.state is ConnectionState.DISCONNECTED
        assert second.exited

    @pytest.mark.asyncio
    async def test_connect_failures_back_off(self, sleeper):
        clients = [
            FakeMqttClient(enter_error=aiomqtt.MqttError("refused")),
            FakeMqttClient(enter_error=aiomqtt.MqttError("refused")),
            FakeMqttClient(),
        ]
        source = make_source(clients)
        supervisor = ConnectionSupervisor("mqtt", source, BackoffPolicy(1.0, 60.0), sleep=sleeper)

        task = asyncio.create_task(supervisor.run())
        await asyncio.wait_for(supervisor.wait_connected(), 1.0)

        assert sleeper.delays == [1.0, 2.0]
        assert clients[2].subscriptions == [("home/+/climate", 1), ("power/#", 1)]
        assert supervisor.machine.failures == 0

        await cancel(task)

    @pytest.mark.asyncio
    async def test_bad_credentials_are_fatal(self, sleeper):
        refused = FakeMqttClient(enter_error=aiomqtt.MqttCodeError(5, "Not authorized"))
        supervisor = ConnectionSupervisor(
            "mqtt", make_source([refused]), BackoffPolicy(1.0, 60.0), sleep=sleeper,
        )

        with pytest.raises(ConnectionRejected):
            await asyncio.wait_for(supervisor.run(), 1.0)

        assert supervisor.state is ConnectionState.FATAL
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_other_connack_codes_are_retried(self, sleeper):
        clients = [
            FakeMqttClient(enter_error=aiomqtt.MqttCodeError(3, "Server unavailable")),
            FakeMqttClient(),
        ]
        supervisor = ConnectionSupervisor(
            "mqtt", make_source(clients), BackoffPolicy(1.0, 60.0), sleep=sleeper,
        )

        task = asyncio.create_task(supervisor.run())
        await asyncio.wait_for(supervisor.wait_connected(), 1.0)
        assert sleeper.delays == [1.0]
        await cancel(task)


class TestMqttSource:
    @pytest.mark.asyncio
    async def test_full_queue_drops_and_counts(self):
        queue = asyncio.Queue(maxsize=1)
        client = FakeMqttClient(
            messages=[("a", b"1"), ("a", b"2"), ("a", b"3")],
            error=aiomqtt.MqttError("bye"),
        )
        source = make_source([client], queue, patterns=("a",))

        await source.connect()
        with pytest.raises(ConnectionLost):
            await source.serve()
        await source.disconnect()

        assert source.received == 3
        assert source.overflow == 2
        assert queue.get_nowait().payload == b"1"
        assert client.exited

    @pytest.mark.asyncio
    async def test_message_carries_receive_time(self):
        queue = asyncio.Queue()
        client = FakeMqttClient(messages=[("a", bytearray(b"x"))], error=aiomqtt.MqttError("bye"))
        source = make_source([client], queue, patterns=("a",))

        await source.connect()
        with pytest.raises(ConnectionLost):
            await source.serve()

        message = queue.get_nowait()
        assert message.payload == b"x"
        assert message.received_ns > 0
