"""
Alerts Domain Layer
Event model and the listener's state machine; no I/O
"""
from src.alerts.domain.events import AlertEvent, Severity, parse_alert_payload
from src.alerts.domain.listener_state import (
    BridgeEffect,
    BridgeSignal,
    BridgeState,
    ReconnectPolicy,
    transition,
)

__all__ = [
    "AlertEvent",
    "Severity",
    "parse_alert_payload",
    "BridgeEffect",
    "BridgeSignal",
    "BridgeState",
    "ReconnectPolicy",
    "transition",
]
