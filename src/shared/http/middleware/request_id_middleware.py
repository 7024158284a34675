from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.shared.logging import bind_request_context, clear_request_context
from src.shared.metrics import observe_request
from src.shared.utils import tenant_ctxvars as ctxvars

REQUEST_ID_HEADER = "X-Request-ID"

# Client-supplied ids end up in logs and error bodies
_ACCEPTABLE_ID = re.compile(r"[A-Za-z0-9._:\-]{1,128}")


def resolve_request_id(supplied: str | None) -> str:
    if supplied and _ACCEPTABLE_ID.fullmatch(supplied):
        return supplied
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Tags the request with a correlation id, echoed back in X-Request-ID.

    Outermost of the app's middlewares, so it also owns context cleanup: no
    request or identity context outlives the request it was bound for.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        ctxvars.set_request_id(request_id)
        bind_request_context(request_id=request_id, path=request.url.path, method=request.method)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
            ctxvars.clear_all()
        route = request.scope.get("route")
        observe_request(request.method, getattr(route, "path", None), response.status_code, time.perf_counter() - started)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
