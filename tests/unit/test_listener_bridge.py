import json

import pytest

from src.alerts.domain.listener_state import BridgeState, ReconnectPolicy
from src.alerts.infrastructure.listener import AlertListenerBridge
from tests.fakes import FakeConnector, RecordingPublisher, wait_until

CHANNEL = "new_security_alert"
ALERT = json.dumps({"deviceId": "D-1", "detectedSubject": "app.exe", "severity": "Critical"})


def make_bridge(connector, publisher=None):
    return AlertListenerBridge(
        connector,
        channel=CHANNEL,
        publisher=publisher or RecordingPublisher(),
        policy=ReconnectPolicy(base_delay=0.01, max_delay=0.02),
        poll_interval=0.01,
    )


@pytest.fixture
async def running():
    connector = FakeConnector()
    publisher = RecordingPublisher()
    bridge = make_bridge(connector, publisher)
    await bridge.start()
    assert await wait_until(lambda: bridge.state is BridgeState.LISTENING)
    yield bridge, connector, publisher
    await bridge.stop()


async def test_start_subscribes_to_channel(running):
    bridge, connector, _ = running
    assert connector.calls == 1
    assert CHANNEL in connector.latest.listeners
    assert bridge.status()["listening"] is True


async def test_notification_reaches_publisher(running):
    bridge, connector, publisher = running
    connector.latest.notify(CHANNEL, ALERT)
    assert await wait_until(lambda: len(publisher.events) == 1)
    event = publisher.events[0]
    assert event.device_id == "D-1"
    assert event.channel == CHANNEL
    assert bridge.events_received == 1


async def test_malformed_payload_is_dropped_and_listening_continues(running):
    bridge, connector, publisher = running
    connector.latest.notify(CHANNEL, "{not json")
    connector.latest.notify(CHANNEL, json.dumps({"severity": "high"}))
    connector.latest.notify(CHANNEL, ALERT)
    assert await wait_until(lambda: len(publisher.events) == 1)
    assert bridge.events_dropped == 2
    assert bridge.state is BridgeState.LISTENING


async def test_failing_publisher_does_not_stop_the_bridge():
    connector = FakeConnector()
    publisher = RecordingPublisher(fail=True)
    bridge = make_bridge(connector, publisher)
    await bridge.start()
    try:
        assert await wait_until(lambda: bridge.state is BridgeState.LISTENING)
        connector.latest.notify(CHANNEL, ALERT)
        connector.latest.notify(CHANNEL, ALERT)
        assert await wait_until(lambda: len(publisher.events) == 2)
        assert bridge.state is BridgeState.LISTENING
    finally:
        await bridge.stop()


@pytest.mark.parametrize("announce", [True, False], ids=["terminated", "closed-silently"])
async def test_reconnects_after_connection_loss(running, announce):
    bridge, connector, publisher = running
    first = connector.latest
    first.kill(announce=announce)

    assert await wait_until(lambda: len(connector.connections) == 2 and bridge.state is BridgeState.LISTENING)
    assert bridge.reconnects == 1
    second = connector.latest
    assert second is not first
    assert CHANNEL in second.listeners

    second.notify(CHANNEL, ALERT)
    assert await wait_until(lambda: len(publisher.events) == 1)


async def test_startup_failures_are_retried_until_connected():
    connector = FakeConnector(failures=2)
    bridge = make_bridge(connector)
    await bridge.start()
    try:
        assert await wait_until(lambda: bridge.state is BridgeState.LISTENING)
        assert connector.calls == 3
        assert bridge.reconnects == 2
        assert bridge.attempts == 0
        assert "refused" in bridge.status()["last_error"]
    finally:
        await bridge.stop()


async def test_stop_unlistens_and_closes(running):
    bridge, connector, _ = running
    conn = connector.latest
    await bridge.stop()
    assert conn.removed == [CHANNEL]
    assert conn.is_closed()
    assert bridge.state is BridgeState.DISCONNECTED
    status = bridge.status()
    assert status["connected"] is False and status["listening"] is False


async def test_stop_while_degraded_stops_retrying():
    connector = FakeConnector(failures=10_000)
    bridge = make_bridge(connector)
    await bridge.start()
    assert await wait_until(lambda: connector.calls >= 2)
    await bridge.stop()
    calls = connector.calls
    assert bridge.state is BridgeState.DISCONNECTED
    assert not await wait_until(lambda: connector.calls > calls, timeout=0.1)


async def test_second_start_does_not_open_a_second_connection(running):
    bridge, connector, _ = running
    await bridge.start()
    await bridge.start()
    assert connector.calls == 1


async def test_can_restart_after_stop():
    connector = FakeConnector()
    bridge = make_bridge(connector)
    await bridge.start()
    assert await wait_until(lambda: bridge.state is BridgeState.LISTENING)
    await bridge.stop()
    await bridge.start()
    try:
        assert await wait_until(lambda: bridge.state is BridgeState.LISTENING)
        assert connector.calls == 2
    finally:
        await bridge.stop()
