# /src/shared/metrics.py
"""
Prometheus metrics (prometheus_client, default registry).

- HTTP: requests_total / request_duration_seconds by method, route template, status
- database: request sessions currently bound, pool state sampled at scrape time
- auth: token resolutions by channel (http | websocket) and token state
- alerts: notifications received by severity, payloads dropped
- websocket: connected alert clients

Exposed as text on GET /metrics (see src.shared.health).
"""

from __future__ import annotations

from typing import Any, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from sqlalchemy.pool import QueuePool

PREFIX = "tenantguard"

HTTP_REQUESTS_TOTAL = Counter(
    f"{PREFIX}_http_requests_total",
    "HTTP requests",
    ["method", "route", "status_code"],
)
HTTP_REQUEST_DURATION = Histogram(
    f"{PREFIX}_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "route"],
    buckets=(0.001, 0.005, 0.015, 0.05, 0.1, 0.2, 0.5, 1, 2, 5),
)

DB_SESSIONS_ACTIVE = Gauge(
    f"{PREFIX}_db_sessions_active",
    "Pooled connections currently bound to a request",
)
DB_POOL_CONNECTIONS = Gauge(
    f"{PREFIX}_db_pool_connections",
    "Connection pool state",
    ["state"],  # size | checked_out | idle | overflow
)

AUTH_ATTEMPTS_TOTAL = Counter(
    f"{PREFIX}_auth_attempts_total",
    "Bearer token resolutions",
    ["channel", "result"],
)

ALERTS_RECEIVED_TOTAL = Counter(
    f"{PREFIX}_alerts_received_total",
    "Security alert notifications received",
    ["severity"],
)
ALERT_PAYLOADS_DROPPED_TOTAL = Counter(
    f"{PREFIX}_alert_payloads_dropped_total",
    "Alert notifications discarded as unparseable",
)

WEBSOCKET_CONNECTIONS = Gauge(
    f"{PREFIX}_websocket_connections",
    "Connected alert socket clients",
)

UNMATCHED_ROUTE = "unmatched"


def observe_request(method: str, route: Optional[str], status_code: int, seconds: float) -> None:
    # Raw paths would give every id its own series
    route = route or UNMATCHED_ROUTE
    HTTP_REQUESTS_TOTAL.labels(method=method, route=route, status_code=str(status_code)).inc()
    HTTP_REQUEST_DURATION.labels(method=method, route=route).observe(seconds)


def inc_auth_attempt(channel: str, result: str) -> None:
    AUTH_ATTEMPTS_TOTAL.labels(channel=channel, result=result).inc()


def inc_alert_received(severity: str) -> None:
    ALERTS_RECEIVED_TOTAL.labels(severity=severity).inc()


def inc_alert_dropped() -> None:
    ALERT_PAYLOADS_DROPPED_TOTAL.inc()


def record_pool(engine: Any) -> None:
    """Copy the engine's queue pool counters into DB_POOL_CONNECTIONS."""
    pool = getattr(engine, "pool", None)
    if not isinstance(pool, QueuePool):
        return
    DB_POOL_CONNECTIONS.labels(state="size").set(pool.size())
    DB_POOL_CONNECTIONS.labels(state="checked_out").set(pool.checkedout())
    DB_POOL_CONNECTIONS.labels(state="idle").set(pool.checkedin())
    DB_POOL_CONNECTIONS.labels(state="overflow").set(max(pool.overflow(), 0))


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
