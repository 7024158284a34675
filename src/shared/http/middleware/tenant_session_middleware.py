from __future__ import annotations

from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.shared.database.sessions import RequestSessionBinder
from src.shared.exceptions import AuthenticationError
from src.shared.http.middleware.jwt_auth_middleware import DEFAULT_PUBLIC_PATHS, is_public_path


class TenantSessionMiddleware(BaseHTTPMiddleware):
    """
    Binds one pooled connection, carrying the request's identity, to the request.

    - For public paths, skip binding entirely.
    - Otherwise the identity placed by JwtAuthMiddleware is applied before
      the route runs and the connection is returned when it finishes,
      whatever the outcome. Pool exhaustion surfaces as 503.
    """

    def __init__(
        self,
        app,
        *,
        binder: Optional[RequestSessionBinder] = None,
        public_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.binder = binder
        self.public_paths = tuple(public_paths or DEFAULT_PUBLIC_PATHS)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if is_public_path(request.url.path, self.public_paths):
            return await call_next(request)

        identity = getattr(request.state, "identity", None)
        if identity is None:
            raise AuthenticationError("No identity resolved for a tenant-scoped path")

        binder = self.binder or request.app.state.session_binder
        async with binder.request_session(identity, getattr(request.state, "request_id", None)):
            return await call_next(request)
