"""
Alert events as they arrive on the database notification channel.

The trigger on `security_alerts` sends the inserted row as JSON. Older rows
and hand-written inserts use snake_case column names (`device_id`,
`app_detected`, `created_at`); newer producers send `deviceId`,
`detectedSubject`, `occurredAt`. Both parse to the same AlertEvent.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from src.shared.exceptions import ChannelParseError

DEVICE_FIELDS = ("deviceId", "device_id", "source")
SUBJECT_FIELDS = ("detectedSubject", "app_detected", "appDetected", "alert_type")
OCCURRED_FIELDS = ("occurredAt", "created_at", "createdAt")
KIND_FIELDS = ("alertType", "alert_type")
DETAIL_FIELDS = ("description", "details", "message")


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def escalates(self) -> bool:
        return self.rank >= _RANK[Severity.HIGH]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"severity must be a string, got {type(value).__name__}")
        key = value.strip().lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"unknown severity {value!r}") from None

    def __lt__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_RANK = MappingProxyType({
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
})

# Inventory alerts are written with 'warning'
_ALIASES = {"warning": "medium", "info": "low"}


@dataclass(frozen=True)
class AlertEvent:
    channel: str
    device_id: str
    detected_subject: str
    severity: Severity
    occurred_at: datetime
    alert_type: Optional[str] = None
    description: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def kind(self) -> str:
        return self.alert_type or "Security Alert"

    @property
    def detail(self) -> str:
        return self.description or f"{self.detected_subject} detected on {self.device_id}"

    def to_dict(self) -> Dict[str, Any]:
        """Push payload for live clients."""
        return {
            "channel": self.channel,
            "deviceId": self.device_id,
            "detectedSubject": self.detected_subject,
            "severity": self.severity.value,
            "occurredAt": self.occurred_at.isoformat(),
            "alertType": self.alert_type,
            "description": self.description,
            "raw": dict(self.raw),
        }


def _first(payload: Mapping[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        # Postgres row_to_json gives "2024-05-01T10:00:00.123+00:00"; JS gives a trailing Z
        text = value.strip().replace("Z", "+00:00")
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp {value!r}")


def parse_alert_payload(channel: str, payload: Union[str, bytes, Mapping[str, Any], None]) -> AlertEvent:
    """
    Turn a raw notification payload into an AlertEvent.

    Raises:
        ChannelParseError: payload is not a JSON object, or lacks a device,
            a detected subject or a known severity.
    """
    if payload is None:
        raise ChannelParseError("empty notification payload", details={"channel": channel})

    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ChannelParseError(f"payload is not JSON: {e}", details={"channel": channel}) from e
    else:
        data = payload

    if not isinstance(data, Mapping):
        raise ChannelParseError("payload is not a JSON object", details={"channel": channel})

    device_id = _first(data, DEVICE_FIELDS)
    subject = _first(data, SUBJECT_FIELDS)
    if device_id is None or subject is None:
        raise ChannelParseError(
            "payload is missing device or detected subject",
            details={"channel": channel, "keys": sorted(data)},
        )

    try:
        severity = Severity.parse(data.get("severity"))
        occurred_at = _parse_timestamp(_first(data, OCCURRED_FIELDS))
    except (ValueError, OverflowError, OSError) as e:
        raise ChannelParseError(str(e), details={"channel": channel}) from e

    kind = _first(data, KIND_FIELDS)
    detail = _first(data, DETAIL_FIELDS)
    return AlertEvent(
        channel=channel,
        device_id=str(device_id),
        detected_subject=str(subject),
        severity=severity,
        occurred_at=occurred_at,
        alert_type=str(kind) if kind is not None else None,
        description=str(detail) if detail is not None else None,
        raw=MappingProxyType(dict(data)),
    )
