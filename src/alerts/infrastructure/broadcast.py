"""
Fan-out of live events to connected WebSocket clients.

Best effort: no ordering across clients, no replay for clients that were
not connected when the event went out. A client that fails to receive
(closed socket, send timeout) is dropped from the hub.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Protocol, Set

import structlog

from src.shared.metrics import WEBSOCKET_CONNECTIONS

logger = structlog.get_logger(__name__)


class BroadcastClient(Protocol):
    async def send_json(self, data: Any) -> None: ...


class BroadcastHub:
    def __init__(self, *, send_timeout: float = 5.0) -> None:
        self._clients: Set[BroadcastClient] = set()
        self._send_timeout = send_timeout

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def register(self, client: BroadcastClient) -> None:
        if client not in self._clients:
            WEBSOCKET_CONNECTIONS.inc()
        self._clients.add(client)
        logger.info("broadcast_client_registered", clients=len(self._clients))

    def unregister(self, client: BroadcastClient) -> None:
        if client in self._clients:
            self._clients.discard(client)
            WEBSOCKET_CONNECTIONS.dec()
            logger.info("broadcast_client_unregistered", clients=len(self._clients))

    @staticmethod
    def envelope(event_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": event_name,
            "payload": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def broadcast(self, event_name: str, data: Dict[str, Any]) -> int:
        """Send to every registered client; returns how many received it."""
        clients = list(self._clients)
        if not clients:
            return 0
        message = self.envelope(event_name, data)
        results = await asyncio.gather(
            *(asyncio.wait_for(c.send_json(message), timeout=self._send_timeout) for c in clients),
            return_exceptions=True,
        )
        delivered = 0
        for client, result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.warning("broadcast_client_dropped", event_name=event_name, error=repr(result))
                if client in self._clients:
                    self._clients.discard(client)
                    WEBSOCKET_CONNECTIONS.dec()
            else:
                delivered += 1
        logger.debug("broadcast_sent", event_name=event_name, delivered=delivered, dropped=len(clients) - delivered)
        return delivered
