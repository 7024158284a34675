"""
Listener bridge state machine.

    DISCONNECTED --START--> CONNECTING --CONNECTED--> LISTENING
                             |   ^                       |
               CONNECT_FAILED|   |RETRY_DUE   CONNECTION_LOST
                             v   |                       |
                            DEGRADED <-------------------+

STOP from any state returns to DISCONNECTED. Signals that make no sense in a
state (a second START while LISTENING, say) leave it unchanged, which is
what keeps the bridge from ever running twice.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Tuple


class BridgeState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    DEGRADED = "degraded"


class BridgeSignal(StrEnum):
    START = "start"
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    CONNECTION_LOST = "connection_lost"
    RETRY_DUE = "retry_due"
    STOP = "stop"


class BridgeEffect(StrEnum):
    OPEN_CONNECTION = "open_connection"
    SCHEDULE_RECONNECT = "schedule_reconnect"
    CLOSE_CONNECTION = "close_connection"
    NONE = "none"


_TRANSITIONS = MappingProxyType({
    (BridgeState.DISCONNECTED, BridgeSignal.START): (BridgeState.CONNECTING, BridgeEffect.OPEN_CONNECTION),
    (BridgeState.CONNECTING, BridgeSignal.CONNECTED): (BridgeState.LISTENING, BridgeEffect.NONE),
    (BridgeState.CONNECTING, BridgeSignal.CONNECT_FAILED): (BridgeState.DEGRADED, BridgeEffect.SCHEDULE_RECONNECT),
    (BridgeState.LISTENING, BridgeSignal.CONNECTION_LOST): (BridgeState.DEGRADED, BridgeEffect.SCHEDULE_RECONNECT),
    (BridgeState.DEGRADED, BridgeSignal.RETRY_DUE): (BridgeState.CONNECTING, BridgeEffect.OPEN_CONNECTION),
})


def transition(state: BridgeState, signal: BridgeSignal) -> Tuple[BridgeState, BridgeEffect]:
    if signal is BridgeSignal.STOP:
        if state is BridgeState.DISCONNECTED:
            return state, BridgeEffect.NONE
        return BridgeState.DISCONNECTED, BridgeEffect.CLOSE_CONNECTION
    return _TRANSITIONS.get((state, signal), (state, BridgeEffect.NONE))


@dataclass(frozen=True)
class ReconnectPolicy:
    """Doubling delay from `base_delay`, capped at `max_delay`; never gives up."""

    base_delay: float = 5.0
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        if attempt < 1:
            attempt = 1
        # Cap the exponent; the delay saturates long before this anyway
        return min(self.base_delay * (2 ** min(attempt - 1, 32)), self.max_delay)
