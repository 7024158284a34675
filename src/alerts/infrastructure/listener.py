"""
Alert listener bridge: database NOTIFY → AlertPublisher.

Holds one dedicated asyncpg connection, opened outside the request pool so
alert traffic never competes with requests for pooled connections. The
connection is watched two ways, since neither alone is reliable: asyncpg's
termination callback, and an `is_closed()` poll. When it goes away the bridge
drops to DEGRADED, waits per its ReconnectPolicy, reconnects and subscribes
again. It never gives up while started.

Notifications are handled at most once. Whatever arrives while the bridge is
disconnected is lost; there is no replay.
"""
from __future__ import annotations

import asyncio
import functools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import asyncpg
import structlog

from src.alerts.application.publisher import AlertPublisher
from src.alerts.domain.events import parse_alert_payload
from src.alerts.domain.listener_state import (
    BridgeEffect,
    BridgeSignal,
    BridgeState,
    ReconnectPolicy,
    transition,
)
from src.shared.config import Settings
from src.shared.exceptions import ChannelDisconnectError, ChannelParseError
from src.shared.metrics import inc_alert_dropped, inc_alert_received

logger = structlog.get_logger(__name__)

ConnectFn = Callable[[], Awaitable[Any]]


class AlertListenerBridge:
    def __init__(
        self,
        connect: ConnectFn,
        *,
        channel: str,
        publisher: AlertPublisher,
        policy: Optional[ReconnectPolicy] = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.channel = channel
        self._connect = connect
        self._publisher = publisher
        self._policy = policy or ReconnectPolicy()
        self._poll_interval = poll_interval

        self._state = BridgeState.DISCONNECTED
        self._conn: Any = None
        self._task: Optional[asyncio.Task] = None
        self._lost = asyncio.Event()
        self._stopping = False
        self._publishing: Set[asyncio.Task] = set()

        self.attempts = 0
        self.reconnects = 0
        self.events_received = 0
        self.events_dropped = 0
        self.last_error: Optional[str] = None
        self.last_event_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Settings, publisher: AlertPublisher) -> "AlertListenerBridge":
        connect = functools.partial(
            asyncpg.connect,
            settings.listener_dsn,
            timeout=settings.database_pool_timeout,
            server_settings={"application_name": f"tenantguard-alerts-{settings.environment}"},
        )
        return cls(
            connect,
            channel=settings.alert_channel,
            publisher=publisher,
            policy=ReconnectPolicy(settings.alert_reconnect_delay, settings.alert_reconnect_max_delay),
        )

    @property
    def state(self) -> BridgeState:
        return self._state

    def _signal(self, signal: BridgeSignal) -> BridgeEffect:
        new_state, effect = transition(self._state, signal)
        if new_state is not self._state:
            logger.info(
                "alert_listener_state",
                channel=self.channel,
                signal=signal.value,
                from_state=self._state.value,
                to_state=new_state.value,
            )
        self._state = new_state
        return effect

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start listening in the background. A second call while running is a no-op."""
        if self._task is not None and not self._task.done():
            return
        if self._signal(BridgeSignal.START) is not BridgeEffect.OPEN_CONNECTION:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"alert-listener:{self.channel}")

    async def stop(self) -> None:
        """UNLISTEN, close the connection and stop reconnecting."""
        self._stopping = True
        self._signal(BridgeSignal.STOP)
        self._lost.set()

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._discard_connection(unlisten=True)

        if self._publishing:
            await asyncio.gather(*self._publishing, return_exceptions=True)
        logger.info("alert_listener_stopped", channel=self.channel)

    def status(self) -> Dict[str, Any]:
        listening = self._state is BridgeState.LISTENING
        return {
            "state": self._state.value,
            "channel": self.channel,
            "connected": listening,
            "listening": listening,
            "attempts": self.attempts,
            "reconnects": self.reconnects,
            "events_received": self.events_received,
            "events_dropped": self.events_dropped,
            "last_error": self.last_error,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self._open()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e) or e.__class__.__name__
                logger.warning("alert_listener_connect_failed", channel=self.channel, error=self.last_error)
                self._signal(BridgeSignal.CONNECT_FAILED)
            else:
                self._signal(BridgeSignal.CONNECTED)
                self.attempts = 0
                logger.info("alert_listener_listening", channel=self.channel)
                try:
                    await self._watch()
                except ChannelDisconnectError as e:
                    self.last_error = e.message
                if self._stopping:
                    break
                logger.warning("alert_listener_connection_lost", channel=self.channel)
                self._signal(BridgeSignal.CONNECTION_LOST)
                await self._discard_connection(unlisten=False)

            if self._stopping:
                break
            self.attempts += 1
            delay = self._policy.delay_for(self.attempts)
            logger.info("alert_listener_reconnect_scheduled", channel=self.channel, attempt=self.attempts, delay=delay)
            await asyncio.sleep(delay)
            if self._stopping:
                break
            self._signal(BridgeSignal.RETRY_DUE)
            self.reconnects += 1

    async def _open(self) -> None:
        conn = await self._connect()
        try:
            self._lost.clear()
            conn.add_termination_listener(self._on_terminated)
            await conn.add_listener(self.channel, self._on_notification)
        except BaseException:
            await _close_quietly(conn)
            raise
        self._conn = conn

    async def _watch(self) -> None:
        """Return only once the connection is gone."""
        while not self._stopping:
            conn = self._conn
            if conn is None or conn.is_closed():
                raise ChannelDisconnectError("listener connection closed")
            try:
                await asyncio.wait_for(self._lost.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue
            if not self._stopping:
                raise ChannelDisconnectError("listener connection terminated")

    async def _discard_connection(self, *, unlisten: bool) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        if unlisten and not conn.is_closed():
            try:
                await conn.remove_listener(self.channel, self._on_notification)
            except Exception:
                logger.warning("alert_listener_unlisten_failed", channel=self.channel, exc_info=True)
        await _close_quietly(conn)

    # ------------------------------------------------------------------
    # asyncpg callbacks
    # ------------------------------------------------------------------

    def _on_terminated(self, conn: Any) -> None:
        logger.warning("alert_listener_terminated", channel=self.channel)
        self._lost.set()

    def _on_notification(self, conn: Any, pid: int, channel: str, payload: Any) -> None:
        try:
            event = parse_alert_payload(channel, payload)
        except ChannelParseError as e:
            self.events_dropped += 1
            inc_alert_dropped()
            logger.warning("alert_payload_dropped", channel=channel, reason=e.message, pid=pid)
            return

        self.events_received += 1
        inc_alert_received(event.severity.value)
        self.last_event_at = datetime.now(timezone.utc)
        logger.info(
            "security_alert_received",
            channel=channel,
            device_id=event.device_id,
            detected_subject=event.detected_subject,
            severity=event.severity.value,
        )
        task = asyncio.get_running_loop().create_task(self._publish(event))
        self._publishing.add(task)
        task.add_done_callback(self._publishing.discard)

    async def _publish(self, event) -> None:
        try:
            await self._publisher.publish(event)
        except Exception:
            # A failing publish must not take the listener down with it
            logger.exception("alert_publish_failed", channel=event.channel, device_id=event.device_id)


async def _close_quietly(conn: Any) -> None:
    try:
        await conn.close()
    except Exception:
        logger.debug("alert_listener_close_failed", exc_info=True)
