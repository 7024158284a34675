import json
from datetime import datetime, timezone

import pytest

from src.alerts.domain.events import Severity, parse_alert_payload
from src.shared.exceptions import ChannelParseError

CHANNEL = "new_security_alert"


def test_parses_current_field_names():
    event = parse_alert_payload(CHANNEL, json.dumps({
        "deviceId": "D-1",
        "detectedSubject": "app.exe",
        "severity": "Critical",
        "occurredAt": "2026-01-02T03:04:05Z",
    }))
    assert event.channel == CHANNEL
    assert event.device_id == "D-1"
    assert event.detected_subject == "app.exe"
    assert event.severity is Severity.CRITICAL
    assert event.occurred_at == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_parses_trigger_row_shape():
    row = {
        "id": 44,
        "device_id": "LAPTOP-7",
        "app_detected": "torrent.exe",
        "severity": "high",
        "alert_type": "forbidden_app",
        "description": "Forbidden application detected",
        "created_at": "2026-01-02T03:04:05.123456+00:00",
        "user_id": 7,
    }
    event = parse_alert_payload(CHANNEL, json.dumps(row))
    assert event.device_id == "LAPTOP-7"
    assert event.detected_subject == "torrent.exe"
    assert event.severity is Severity.HIGH
    assert event.kind == "forbidden_app"
    assert event.detail == "Forbidden application detected"
    assert event.raw["user_id"] == 7


def test_inventory_alert_without_device_uses_source():
    event = parse_alert_payload(CHANNEL, {
        "alert_type": "low_stock", "severity": "warning", "source": "inventory_system",
        "message": "Low stock: toner",
    })
    assert event.device_id == "inventory_system"
    assert event.detected_subject == "low_stock"
    assert event.severity is Severity.MEDIUM
    assert event.detail == "Low stock: toner"


def test_missing_timestamp_defaults_to_now():
    before = datetime.now(timezone.utc)
    event = parse_alert_payload(CHANNEL, {"deviceId": "D", "detectedSubject": "x", "severity": "low"})
    assert event.occurred_at >= before


def test_default_kind_and_detail():
    event = parse_alert_payload(CHANNEL, {"deviceId": "D-1", "detectedSubject": "app.exe", "severity": "low"})
    assert event.kind == "Security Alert"
    assert event.detail == "app.exe detected on D-1"


@pytest.mark.parametrize("payload", [
    None,
    "",
    "not json",
    "[1, 2]",
    '"just a string"',
    json.dumps({"detectedSubject": "x", "severity": "high"}),
    json.dumps({"deviceId": "D", "severity": "high"}),
    json.dumps({"deviceId": "D", "detectedSubject": "x"}),
    json.dumps({"deviceId": "D", "detectedSubject": "x", "severity": "apocalyptic"}),
    json.dumps({"deviceId": "D", "detectedSubject": "x", "severity": "high", "occurredAt": "yesterday"}),
    b"\x80abc",
])
def test_malformed_payloads_raise_parse_error(payload):
    with pytest.raises(ChannelParseError):
        parse_alert_payload(CHANNEL, payload)


def test_severity_ordering_and_escalation():
    assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
    assert max([Severity.HIGH, Severity.LOW, Severity.CRITICAL]) is Severity.CRITICAL
    assert [s.escalates for s in Severity] == [False, False, True, True]


def test_push_payload_shape():
    event = parse_alert_payload(CHANNEL, {"deviceId": "D-1", "detectedSubject": "app.exe", "severity": "CRITICAL",
                                          "occurredAt": "2026-01-02T03:04:05+00:00"})
    body = event.to_dict()
    assert body["deviceId"] == "D-1"
    assert body["severity"] == "critical"
    assert body["occurredAt"] == "2026-01-02T03:04:05+00:00"
    json.dumps(body)
