import json

from prometheus_client import REGISTRY
from sqlalchemy.pool import QueuePool

from src.alerts.domain.listener_state import BridgeState, ReconnectPolicy
from src.alerts.infrastructure.broadcast import BroadcastHub
from src.alerts.infrastructure.listener import AlertListenerBridge
from src.shared.metrics import DB_POOL_CONNECTIONS, record_pool
from tests.fakes import BrokenClient, FakeConnector, RecordingClient, RecordingPublisher, wait_until

CHANNEL = "new_security_alert"


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_http_auth_attempts_are_counted_by_token_state(client, auth_headers, standard_identity):
    rejected = sample("tenantguard_auth_attempts_total", channel="http", result="no_token")
    accepted = sample("tenantguard_auth_attempts_total", channel="http", result="valid")

    assert client.get("/api/session/context").status_code == 401
    assert client.get("/api/session/context", headers=auth_headers(standard_identity)).status_code == 200
    client.get("/health")

    assert sample("tenantguard_auth_attempts_total", channel="http", result="no_token") == rejected + 1
    assert sample("tenantguard_auth_attempts_total", channel="http", result="valid") == accepted + 1


def test_requests_are_counted_by_route_template(client):
    before = sample("tenantguard_http_requests_total", method="GET", route="/health", status_code="200")
    client.get("/health")
    assert sample("tenantguard_http_requests_total", method="GET", route="/health", status_code="200") == before + 1


def test_metrics_endpoint_is_public_and_touches_no_connection(client, engine):
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "tenantguard_http_requests_total" in r.text
    assert "tenantguard_websocket_connections" in r.text
    assert engine.checkouts == 0


async def test_bound_sessions_gauge_follows_the_binder(binder, standard_identity):
    before = sample("tenantguard_db_sessions_active")
    async with binder.request_session(standard_identity):
        assert sample("tenantguard_db_sessions_active") == before + 1
    assert sample("tenantguard_db_sessions_active") == before


def test_pool_state_is_copied_from_a_queue_pool():
    pool = QueuePool(creator=lambda: None, pool_size=3, max_overflow=2)

    class Engine:
        pass

    engine = Engine()
    engine.pool = pool
    record_pool(engine)
    assert sample("tenantguard_db_pool_connections", state="size") == 3
    assert sample("tenantguard_db_pool_connections", state="checked_out") == 0
    assert sample("tenantguard_db_pool_connections", state="overflow") == 0


def test_pool_sampling_ignores_engines_without_a_queue_pool(engine):
    DB_POOL_CONNECTIONS.labels(state="size").set(11)
    record_pool(engine)
    assert sample("tenantguard_db_pool_connections", state="size") == 11


async def test_websocket_gauge_tracks_registration_and_drops():
    hub = BroadcastHub(send_timeout=0.1)
    before = sample("tenantguard_websocket_connections")
    good, broken = RecordingClient(), BrokenClient()

    hub.register(good)
    hub.register(good)
    hub.register(broken)
    assert sample("tenantguard_websocket_connections") == before + 2

    await hub.broadcast("security-alert", {"deviceId": "D-1"})
    assert sample("tenantguard_websocket_connections") == before + 1

    hub.unregister(good)
    hub.unregister(good)
    assert sample("tenantguard_websocket_connections") == before


async def test_alert_notifications_are_counted_by_severity():
    connector = FakeConnector()
    publisher = RecordingPublisher()
    bridge = AlertListenerBridge(
        connector,
        channel=CHANNEL,
        publisher=publisher,
        policy=ReconnectPolicy(base_delay=0.01, max_delay=0.02),
        poll_interval=0.01,
    )
    received = sample("tenantguard_alerts_received_total", severity="high")
    dropped = sample("tenantguard_alert_payloads_dropped_total")

    await bridge.start()
    try:
        assert await wait_until(lambda: bridge.state is BridgeState.LISTENING)
        connector.latest.notify(CHANNEL, json.dumps({"deviceId": "D-2", "detectedSubject": "x.exe", "severity": "High"}))
        connector.latest.notify(CHANNEL, "{not json")
        assert await wait_until(lambda: len(publisher.events) == 1)
    finally:
        await bridge.stop()

    assert sample("tenantguard_alerts_received_total", severity="high") == received + 1
    assert sample("tenantguard_alert_payloads_dropped_total") == dropped + 1
