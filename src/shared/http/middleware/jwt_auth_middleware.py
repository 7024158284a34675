from __future__ import annotations

from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.identity.application.services.token_resolver import TokenResolver
from src.shared.exceptions import AuthenticationError
from src.shared.logging import bind_request_context, log_security_event
from src.shared.metrics import inc_auth_attempt
from src.shared.utils import tenant_ctxvars as ctxvars

DEFAULT_PUBLIC_PATHS = ("/", "/health", "/metrics", "/docs", "/redoc", "/openapi.json", "/ws/alerts")


def is_public_path(path: str, public_paths: Iterable[str]) -> bool:
    for p in public_paths:
        if path == p:
            return True
        # "/" is public on its own, never as a prefix
        if p != "/" and path.startswith(p.rstrip("/") + "/"):
            return True
    return False


class JwtAuthMiddleware(BaseHTTPMiddleware):
    """
    Resolves the bearer token into an Identity and places it on request.state.

    Every non-public request must carry a valid token; anything else is a 401
    before any database work happens. Capabilities are not enforced here;
    routes declare them with `require_capability`.
    """

    def __init__(
        self,
        app,
        *,
        resolver: Optional[TokenResolver] = None,
        auth_header: str = "Authorization",
        public_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.resolver = resolver
        self.auth_header = auth_header
        self.public_paths = tuple(public_paths or DEFAULT_PUBLIC_PATHS)

    def _resolver(self, request: Request) -> TokenResolver:
        # Fall back to the app's resolver so tests can swap it after setup
        return self.resolver or request.app.state.token_resolver

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.identity = None
        if is_public_path(request.url.path, self.public_paths):
            return await call_next(request)

        resolution = self._resolver(request).resolve(request.headers.get(self.auth_header))
        inc_auth_attempt("http", resolution.state.value)
        if not resolution.ok:
            log_security_event("token_rejected", reason=resolution.reason, token_state=resolution.state.value)
            # ExceptionMiddleware renders the 401
            raise AuthenticationError(
                resolution.reason or "Authentication failed",
                details={"token_state": resolution.state.value},
            )

        identity = resolution.identity
        request.state.identity = identity
        ctxvars.set_identity(identity)
        bind_request_context(
            subject_id=identity.subject_id,
            tenant_id=identity.tenant_id,
            role=identity.role.value,
        )
        return await call_next(request)
