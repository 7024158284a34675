from __future__ import annotations

import asyncio
from typing import Set

import structlog

from src.alerts.domain.events import AlertEvent
from src.alerts.infrastructure.broadcast import BroadcastHub
from src.alerts.infrastructure.escalation import EscalationNotifier

logger = structlog.get_logger(__name__)

SECURITY_ALERT_EVENT = "security-alert"


class AlertPublisher:
    """
    publish(event): push to every live client, then escalate if severe.

    Escalation runs as its own task after the broadcast has completed, so a
    slow or failing notifier can neither delay delivery nor surface an error
    to the listener.
    """

    def __init__(self, hub: BroadcastHub, notifier: EscalationNotifier) -> None:
        self._hub = hub
        self._notifier = notifier
        self._escalations: Set[asyncio.Task] = set()

    @property
    def pending_escalations(self) -> int:
        return len(self._escalations)

    async def publish(self, event: AlertEvent) -> int:
        delivered = await self._hub.broadcast(SECURITY_ALERT_EVENT, event.to_dict())
        logger.info(
            "security_alert_broadcast",
            device_id=event.device_id,
            severity=event.severity.value,
            delivered=delivered,
        )
        if event.severity.escalates:
            self._escalate(event)
        return delivered

    def _escalate(self, event: AlertEvent) -> None:
        task = asyncio.get_running_loop().create_task(
            self._notifier.notify(event.kind, event.detail, event.severity)
        )
        self._escalations.add(task)
        task.add_done_callback(self._escalation_done)

    def _escalation_done(self, task: asyncio.Task) -> None:
        self._escalations.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("security_alert_escalation_failed", error=repr(exc))

    async def drain(self) -> None:
        """Wait for in-flight escalations (shutdown, tests)."""
        if self._escalations:
            await asyncio.gather(*list(self._escalations), return_exceptions=True)
