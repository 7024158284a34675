from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from src.alerts.domain.events import Severity
from src.shared.config import Settings

logger = structlog.get_logger(__name__)


class EscalationNotifier(Protocol):
    async def notify(self, kind: str, detail: str, severity: Severity) -> None: ...


class LoggingEscalationNotifier:
    """Used when no email API key is configured; the escalation still shows up in logs."""

    async def notify(self, kind: str, detail: str, severity: Severity) -> None:
        logger.warning("security_alert_escalation", kind=kind, detail=detail, severity=severity.value, delivered=False)


class EmailEscalationNotifier:
    """
    Emails the administrator through the Resend HTTP API.

    POST {api_url}
    {
      "from": "alerts@example.com",
      "to": ["admin@example.com"],
      "subject": "Security Alert: forbidden_app",
      "text": "..."
    }
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender: str,
        recipient: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = api_url
        self._api_key = api_key
        self._sender = sender
        self._recipient = recipient
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> EscalationNotifier:
        recipient = settings.escalation_recipient
        if not settings.escalation_api_key or not recipient:
            logger.info(
                "email_escalation_disabled",
                api_key_set=bool(settings.escalation_api_key),
                recipient_set=bool(recipient),
            )
            return LoggingEscalationNotifier()
        return cls(
            api_url=settings.escalation_api_url,
            api_key=settings.escalation_api_key,
            sender=settings.from_email,
            recipient=recipient,
        )

    def build_message(self, kind: str, detail: str, severity: Severity) -> Dict[str, Any]:
        return {
            "from": self._sender,
            "to": [self._recipient],
            "subject": f"Security Alert: {kind}",
            "text": (
                "A security issue has been detected.\n\n"
                f"Alert Type: {kind}\n"
                f"Severity: {severity.value.upper()}\n"
                f"Details: {detail}\n"
            ),
        }

    async def notify(self, kind: str, detail: str, severity: Severity) -> None:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.post(self._url, headers=headers, json=self.build_message(kind, detail, severity))
            r.raise_for_status()
        logger.info("security_alert_escalation", kind=kind, severity=severity.value, delivered=True)
