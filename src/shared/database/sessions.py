"""
sessions.py: One pooled connection per request, carried implicitly.

- Usage:
    async with binder.request_session(identity, request_id) as ctx:
        ...  # anything below can call current_session() / tenant_db_session()

The bound SessionContext lives in a ContextVar, so each asyncio task sees
only its own request's connection; nothing is threaded through call
signatures and nothing is shared across concurrent requests.
"""
from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, AsyncGenerator, Dict, Optional, Set

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from src.shared.database.rls import apply_identity, clear_identity, read_session_identity
from src.shared.database.types import SessionContext
from src.shared.exceptions import PolicyViolationError, PoolExhaustedError, TenantContextError
from src.shared.metrics import DB_SESSIONS_ACTIVE

if TYPE_CHECKING:
    from src.identity.domain.identity import Identity

logger = structlog.get_logger(__name__)

_CURRENT_SESSION: ContextVar[Optional[SessionContext]] = ContextVar("request_session", default=None)


def _physical_key(handle: Any) -> int:
    """Identify the DBAPI connection behind a checkout (AsyncConnection → pool fairy → driver conn)."""
    sync = getattr(handle, "sync_connection", None)
    fairy = getattr(sync, "connection", None) if sync is not None else None
    dbapi = getattr(fairy, "dbapi_connection", None) if fairy is not None else None
    return id(dbapi if dbapi is not None else handle)


class RequestSessionBinder:
    """Checks connections out of the pool for requests and guarantees their return."""

    def __init__(self, engine: Any, *, checkout_timeout: float = 10.0) -> None:
        self._engine = engine
        self._checkout_timeout = checkout_timeout
        self._active: Dict[int, SessionContext] = {}
        self._releasing: Set[asyncio.Task] = set()

    @property
    def engine(self) -> Any:
        return self._engine

    @property
    def active_sessions(self) -> int:
        return len(self._active)

    async def begin_request_session(self, identity: "Identity", request_id: Optional[str] = None) -> SessionContext:
        """
        Check out one connection for this request.

        Raises:
            PoolExhaustedError: no connection within the checkout timeout, or
                the database is unreachable. Never degrades to an unfiltered query.
        """
        request_id = request_id or str(uuid.uuid4())
        handle = self._engine.connect()
        try:
            await asyncio.wait_for(handle.start(), timeout=self._checkout_timeout)
        except (asyncio.TimeoutError, sa_exc.TimeoutError) as e:
            logger.warning("pool_exhausted", request_id=request_id, timeout=self._checkout_timeout)
            raise PoolExhaustedError("No pooled connection available", details={"request_id": request_id}) from e
        except (sa_exc.DBAPIError, OSError) as e:
            logger.error("connection_checkout_failed", request_id=request_id, error=str(e))
            raise PoolExhaustedError("Database unavailable", details={"request_id": request_id}) from e

        key = _physical_key(handle)
        if key in self._active:
            # The pool handed out a connection that is still bound elsewhere.
            other = self._active[key]
            await handle.invalidate()
            await handle.close()
            raise PolicyViolationError(
                "connection already bound to another request",
                details={"request_id": request_id, "bound_to": other.request_id},
            )

        ctx = SessionContext(handle=handle, identity=identity, request_id=request_id)
        self._active[key] = ctx
        DB_SESSIONS_ACTIVE.inc()
        logger.debug("request_session_begun", request_id=request_id, active=len(self._active))
        return ctx

    async def end_request_session(self, ctx: SessionContext) -> None:
        """
        Return the connection to the pool. Safe to call any number of times.

        The release itself is shielded: a cancelled caller (client went away)
        still gets its connection cleaned and returned.
        """
        if ctx.released:
            return
        ctx.released = True
        task = asyncio.ensure_future(self._release(ctx))
        self._releasing.add(task)
        task.add_done_callback(self._releasing.discard)
        await asyncio.shield(task)

    async def _release(self, ctx: SessionContext) -> None:
        handle = ctx.handle
        try:
            try:
                await handle.rollback()
                await clear_identity(handle)
                if (await read_session_identity(handle)).present:
                    raise TenantContextError("identity survived reset")
            except Exception:
                # Stale identity must never reach the next borrower.
                logger.error("identity_reset_failed_discarding_connection", request_id=ctx.request_id, exc_info=True)
                await handle.invalidate()
            finally:
                await handle.close()
        finally:
            self._forget(ctx)
            logger.debug(
                "request_session_ended",
                request_id=ctx.request_id,
                elapsed_ms=ctx.elapsed_ms,
                active=len(self._active),
            )

    def _forget(self, ctx: SessionContext) -> None:
        # Keyed at checkout; the handle may be unusable by now
        for key, bound in list(self._active.items()):
            if bound is ctx:
                del self._active[key]
                DB_SESSIONS_ACTIVE.dec()

    @asynccontextmanager
    async def request_session(
        self, identity: "Identity", request_id: Optional[str] = None
    ) -> AsyncGenerator[SessionContext, None]:
        """begin → apply identity → bind → yield → unbind → end, on every exit path."""
        ctx = await self.begin_request_session(identity, request_id)
        token = None
        try:
            await apply_identity(ctx)
            token = _CURRENT_SESSION.set(ctx)
            yield ctx
        finally:
            if token is not None:
                _CURRENT_SESSION.reset(token)
            await self.end_request_session(ctx)


def current_session() -> SessionContext:
    """
    The SessionContext bound to the running task.

    Raises:
        PolicyViolationError: called outside a request session.
    """
    ctx = _CURRENT_SESSION.get()
    if ctx is None or ctx.released:
        raise PolicyViolationError("no request session bound to this task")
    return ctx


@asynccontextmanager
async def tenant_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    ORM session joined to the request's bound connection.

    Every statement runs on the same physical connection that carries the
    request's identity.
    """
    connection = current_session().connection
    session = AsyncSession(bind=connection, expire_on_commit=False)
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
