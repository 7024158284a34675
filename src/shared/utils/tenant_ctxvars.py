# src/shared/utils/tenant_ctxvars.py
from __future__ import annotations

import contextvars
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from src.identity.domain.identity import Identity

# Context variables, set once per request by middleware.
# Every asyncio task gets its own copy, so concurrent requests never see each other's values.

REQUEST_ID_VAR = contextvars.ContextVar[Optional[str]]("request_id", default=None)
SUBJECT_ID_VAR = contextvars.ContextVar[Optional[int]]("subject_id", default=None)
TENANT_ID_VAR = contextvars.ContextVar[Optional[int]]("tenant_id", default=None)
ROLE_VAR = contextvars.ContextVar[Optional[str]]("role", default=None)


def set_request_id(request_id: Optional[str]) -> None:
    REQUEST_ID_VAR.set(request_id)


def set_identity(identity: Optional["Identity"]) -> None:
    SUBJECT_ID_VAR.set(identity.subject_id if identity else None)
    TENANT_ID_VAR.set(identity.tenant_id if identity else None)
    ROLE_VAR.set(identity.role.value if identity else None)


def clear_all() -> None:
    REQUEST_ID_VAR.set(None)
    SUBJECT_ID_VAR.set(None)
    TENANT_ID_VAR.set(None)
    ROLE_VAR.set(None)


# Typed accessors
def get_request_id() -> Optional[str]:
    return REQUEST_ID_VAR.get()

def get_subject_id() -> Optional[int]:
    return SUBJECT_ID_VAR.get()

def get_tenant_id() -> Optional[int]:
    return TENANT_ID_VAR.get()

def get_role() -> Optional[str]:
    return ROLE_VAR.get()


def get_request_context() -> Dict[str, object]:
    """Convenience: ready-to-log context dict."""
    return {
        "request_id": get_request_id() or "",
        "subject_id": get_subject_id(),
        "tenant_id": get_tenant_id(),
        "role": get_role() or "",
    }

