"""
rls.py: Writes request identity into the connection's session variables.

This module owns the session-variable contract row policies depend on:
- Every checkout writes all of `app.current_user_id`, `app.current_role` and
  `app.current_tenant_id`; missing values are written as ''. Nothing is left
  to whatever the previous borrower of the connection set.
- Values are written with set_config(..., false) (session scope) and
  committed, so they survive the request's own transactions being rolled back.
- The written values are read back and compared; a mismatch fails the
  request closed with TenantContextError.
- Before the connection goes back to the pool, the variables are cleared.

References:
- policy.py → the rule that reads these variables
"""
from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import text

from src.shared.database.policy import (
    CURRENT_ROLE_VAR,
    CURRENT_TENANT_VAR,
    CURRENT_USER_VAR,
    SessionVariables,
)
from src.shared.database.types import SessionContext
from src.shared.exceptions import PolicyViolationError, TenantContextError

logger = structlog.get_logger(__name__)

SET_CONFIG_SQL = text("SELECT set_config(:name, :value, false)")

READ_CONFIG_SQL = text(
    f"""
    SELECT
        current_setting('{CURRENT_USER_VAR}', true)   AS subject_id,
        current_setting('{CURRENT_ROLE_VAR}', true)   AS role,
        current_setting('{CURRENT_TENANT_VAR}', true) AS tenant_id
    """
)


async def _write_session_variables(connection: Any, values: SessionVariables) -> None:
    for name, value in values.as_settings().items():
        await connection.execute(SET_CONFIG_SQL, {"name": name, "value": value})
    await connection.commit()


async def read_session_identity(connection: Any) -> SessionVariables:
    """What the database currently sees on this connection."""
    res = await connection.execute(READ_CONFIG_SQL)
    row = res.mappings().first() or {}
    return SessionVariables.from_settings({
        CURRENT_USER_VAR: row.get("subject_id"),
        CURRENT_ROLE_VAR: row.get("role"),
        CURRENT_TENANT_VAR: row.get("tenant_id"),
    })


async def apply_identity(ctx: SessionContext) -> None:
    """
    Bind the request's identity to its connection.

    Must complete before any tenant-scoped query runs. On failure the context
    stays un-applied, so `ctx.connection` keeps refusing queries.

    Raises:
        TenantContextError: the variables could not be written or verified.
        PolicyViolationError: the context was already released.
    """
    if ctx.released:
        raise PolicyViolationError("cannot apply identity to a released session", details={"request_id": ctx.request_id})

    expected = SessionVariables.from_identity(ctx.identity)
    try:
        await _write_session_variables(ctx.handle, expected)
        actual = await read_session_identity(ctx.handle)
    except Exception as e:
        logger.error("Failed to set tenant context", request_id=ctx.request_id, exc_info=True)
        raise TenantContextError(f"Failed to set session identity: {e}") from e

    if actual != expected:
        logger.error(
            "Session identity verification failed",
            request_id=ctx.request_id,
            expected_subject=expected.subject_id,
            actual_subject=actual.subject_id,
        )
        raise TenantContextError("Session identity did not take effect")

    ctx.identity_applied = True
    logger.debug(
        "Session identity applied",
        request_id=ctx.request_id,
        subject_id=expected.subject_id,
        role=expected.role,
        tenant_id=expected.tenant_id,
    )


async def clear_identity(connection: Any) -> None:
    """Blank every identity variable; used before a connection returns to the pool."""
    await _write_session_variables(connection, SessionVariables.cleared())
