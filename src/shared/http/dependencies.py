# /src/shared/http/dependencies.py
"""
FastAPI dependencies for accessing request-scoped context.

- current_identity(): the Identity resolved by JwtAuthMiddleware
- require_capability(cap): 403 unless the identity holds `cap`
- get_tenant_db(): ORM session on the request's bound connection

Capability checks are advisory; row policies in the database are what
actually decide visibility.
"""

from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.identity.domain.identity import Identity
from src.identity.domain.value_objects.capability import Capability
from src.shared.database.sessions import tenant_db_session
from src.shared.exceptions import AuthenticationError, AuthorizationError
from src.shared.logging import log_security_event


def current_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthenticationError("Route requires an authenticated identity")
    return identity


def require_capability(capability: Capability) -> Callable[..., Identity]:
    """
    Usage:
        @router.get("/x", dependencies=[Depends(require_capability(Capability.READ_ALL))])
    """
    def _enforce(identity: Identity = Depends(current_identity)) -> Identity:
        if not identity.has_capability(capability):
            log_security_event("capability_denied", capability=capability.value, role=identity.role.value)
            raise AuthorizationError(
                f"Capability '{capability.value}' required",
                details={"capability": capability.value, "role": identity.role.value},
            )
        return identity

    return _enforce


async def get_tenant_db() -> AsyncGenerator[AsyncSession, None]:
    async with tenant_db_session() as session:
        yield session
