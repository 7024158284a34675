from __future__ import annotations
import uuid

import structlog
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.shared.exceptions import DomainError, domain_error_response, log_domain_error
from src.shared.utils import tenant_ctxvars as ctxvars

logger = structlog.get_logger("http")


class ExceptionMiddleware(BaseHTTPMiddleware):
    """
    Centralized error translation to the platform's error contract.
    Never leaks stack traces or causes; always returns {code, message, correlation_id}.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = (
            getattr(request.state, "request_id", None)
            or request.headers.get("X-Request-Id")
            or str(uuid.uuid4())
        )

        if not hasattr(request.state, "request_id"):
            request.state.request_id = request_id

        try:
            return await call_next(request)
        except DomainError as ae:
            # Identity was bound in an inner middleware's context; rebind for the log line
            identity = getattr(request.state, "identity", None)
            if identity is not None:
                ctxvars.set_identity(identity)
            log_domain_error(ae, request_id)
            return domain_error_response(ae, correlation_id=request_id)
        except Exception:
            logger.exception("unhandled_exception", request_id=request_id)
            return JSONResponse(
                status_code=500,
                content={"code": "internal_error", "message": "Internal error", "correlation_id": request_id},
            )
