import asyncio
import json

import httpx
import pytest

from src.alerts.application.publisher import SECURITY_ALERT_EVENT, AlertPublisher
from src.alerts.domain.events import Severity, parse_alert_payload
from src.alerts.infrastructure.broadcast import BroadcastHub
from src.alerts.infrastructure.escalation import EmailEscalationNotifier, LoggingEscalationNotifier
from src.shared.config import Settings
from tests.fakes import BrokenClient, RecordingClient, RecordingNotifier

CHANNEL = "new_security_alert"


def event(severity="Critical", **extra):
    payload = {"deviceId": "D-1", "detectedSubject": "app.exe", "severity": severity}
    payload.update(extra)
    return parse_alert_payload(CHANNEL, json.dumps(payload))


class StalledClient:
    async def send_json(self, data):
        await asyncio.sleep(60)


# ----------------------------- hub -----------------------------

async def test_broadcast_without_clients_is_a_noop():
    assert await BroadcastHub().broadcast(SECURITY_ALERT_EVENT, {"x": 1}) == 0


async def test_broadcast_reaches_every_client_in_envelope():
    hub = BroadcastHub()
    clients = [RecordingClient(), RecordingClient()]
    for c in clients:
        hub.register(c)

    assert await hub.broadcast(SECURITY_ALERT_EVENT, {"deviceId": "D-1"}) == 2
    for c in clients:
        (message,) = c.messages
        assert message["type"] == "security-alert"
        assert message["payload"] == {"deviceId": "D-1"}
        assert "timestamp" in message


async def test_failing_and_stalled_clients_are_dropped():
    hub = BroadcastHub(send_timeout=0.05)
    good = RecordingClient()
    for c in (good, BrokenClient(), StalledClient()):
        hub.register(c)

    assert await hub.broadcast(SECURITY_ALERT_EVENT, {}) == 1
    assert hub.client_count == 1
    assert await hub.broadcast(SECURITY_ALERT_EVENT, {}) == 1
    assert len(good.messages) == 2


def test_unregister_is_idempotent():
    hub = BroadcastHub()
    client = RecordingClient()
    hub.register(client)
    hub.unregister(client)
    hub.unregister(client)
    assert hub.client_count == 0


# ----------------------------- publisher -----------------------------

async def test_critical_alert_broadcasts_then_escalates():
    hub = BroadcastHub()
    clients = [RecordingClient(), RecordingClient()]
    for c in clients:
        hub.register(c)
    notifier = RecordingNotifier(fail=True, observe=lambda: [len(c.messages) for c in clients])
    publisher = AlertPublisher(hub, notifier)

    delivered = await publisher.publish(event("Critical"))

    assert delivered == 2
    # publish returned without waiting on the notifier
    assert notifier.calls == []
    assert publisher.pending_escalations == 1

    await publisher.drain()
    assert notifier.calls == [("Security Alert", "app.exe detected on D-1", Severity.CRITICAL)]
    # every client already had the alert when the notifier ran
    assert notifier.observed == [[1, 1]]
    assert publisher.pending_escalations == 0
    for c in clients:
        assert c.messages[0]["payload"]["deviceId"] == "D-1"
        assert c.messages[0]["payload"]["severity"] == "critical"


@pytest.mark.parametrize("severity", ["low", "Medium", "warning"])
async def test_lower_severities_are_not_escalated(severity):
    hub = BroadcastHub()
    client = RecordingClient()
    hub.register(client)
    notifier = RecordingNotifier()
    publisher = AlertPublisher(hub, notifier)

    await publisher.publish(event(severity))
    await publisher.drain()

    assert len(client.messages) == 1
    assert notifier.calls == []


async def test_escalation_uses_alert_type_and_description():
    notifier = RecordingNotifier()
    publisher = AlertPublisher(BroadcastHub(), notifier)
    await publisher.publish(event("high", alert_type="forbidden_app", description="torrent.exe on D-1"))
    await publisher.drain()
    assert notifier.calls == [("forbidden_app", "torrent.exe on D-1", Severity.HIGH)]


# ----------------------------- email notifier -----------------------------

def _settings(**overrides):
    base = dict(database_url="postgresql+asyncpg://u:p@localhost/db", secret_key="s" * 40)
    base.update(overrides)
    return Settings(**base)


async def test_email_notifier_posts_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "email-1"})

    notifier = EmailEscalationNotifier(
        api_url="https://mail.example.test/emails",
        api_key="re_test_key",
        sender="alerts@example.com",
        recipient="admin@example.com",
        transport=httpx.MockTransport(handler),
    )
    await notifier.notify("forbidden_app", "torrent.exe detected on D-1", Severity.CRITICAL)

    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == "https://mail.example.test/emails"
    assert request.headers["authorization"] == "Bearer re_test_key"
    body = json.loads(request.content)
    assert body["from"] == "alerts@example.com"
    assert body["to"] == ["admin@example.com"]
    assert body["subject"] == "Security Alert: forbidden_app"
    assert "Severity: CRITICAL" in body["text"]
    assert "torrent.exe detected on D-1" in body["text"]


async def test_email_notifier_raises_on_provider_error():
    notifier = EmailEscalationNotifier(
        api_url="https://mail.example.test/emails",
        api_key="k",
        sender="a@example.com",
        recipient="b@example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await notifier.notify("x", "y", Severity.HIGH)


@pytest.mark.parametrize("overrides", [
    {},
    {"escalation_api_key": "k"},
    {"escalation_api_key": "k", "from_email": "noreply@itasset.local"},
    {"admin_email": "admin@example.com"},
])
def test_notifier_falls_back_to_logging_when_unconfigured(overrides):
    assert isinstance(EmailEscalationNotifier.from_settings(_settings(**overrides)), LoggingEscalationNotifier)


@pytest.mark.parametrize("overrides", [
    {"escalation_api_key": "k", "admin_email": "admin@example.com"},
    {"escalation_api_key": "k", "from_email": "alerts@example.com"},
])
def test_notifier_uses_email_when_configured(overrides):
    assert isinstance(EmailEscalationNotifier.from_settings(_settings(**overrides)), EmailEscalationNotifier)
