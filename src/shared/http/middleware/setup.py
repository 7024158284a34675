from __future__ import annotations

from typing import Iterable, Optional

from fastapi import FastAPI

from .request_id_middleware import RequestIdMiddleware
from .exception_middleware import ExceptionMiddleware
from .jwt_auth_middleware import DEFAULT_PUBLIC_PATHS, JwtAuthMiddleware
from .tenant_session_middleware import TenantSessionMiddleware


def setup_http_middlewares(app: FastAPI, *, public_paths: Optional[Iterable[str]] = None) -> None:
    """
    Install middlewares. Starlette runs the last one added outermost, so they
    are added inner → outer; requests pass through:

        RequestId → Exception → JwtAuth → TenantSession → route

    The resolver and binder are read from app.state at request time.
    """
    paths = tuple(public_paths or DEFAULT_PUBLIC_PATHS)

    # 4) One pooled connection per request with the identity applied
    app.add_middleware(TenantSessionMiddleware, public_paths=paths)

    # 3) Bearer token → request.state.identity (401 on anything but a valid token)
    app.add_middleware(JwtAuthMiddleware, public_paths=paths)

    # 2) Centralized exception translator (wraps below)
    app.add_middleware(ExceptionMiddleware)

    # 1) Correlation id (used by everything else)
    app.add_middleware(RequestIdMiddleware)
