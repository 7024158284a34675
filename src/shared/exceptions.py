from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.shared.utils import tenant_ctxvars as ctxvars

logger = structlog.get_logger(__name__)

# Client-facing messages are generic; the real cause only goes to the logs.
_PUBLIC_MESSAGES: Dict[str, str] = {
    "unauthorized": "Authentication required",
    "forbidden": "Access denied",
    "service_unavailable": "Service temporarily unavailable",
    "internal_error": "Internal error",
    "validation_error": "Validation failed",
}


# ───────────────────────── Base & Domain Exceptions ─────────────────────────
class DomainError(Exception):
    """Base class for domain-level errors. Services should raise these, never HTTPException."""
    code: str = "domain_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    message: str
    details: Optional[Dict[str, Any]]

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.__class__.__name__
        self.details = details

    @property
    def public_message(self) -> str:
        return _PUBLIC_MESSAGES.get(self.code, self.code)


class AuthenticationError(DomainError):
    """No, malformed, expired or badly signed token."""
    code, status_code = "unauthorized", status.HTTP_401_UNAUTHORIZED


class AuthorizationError(DomainError):
    """Valid identity without the required capability."""
    code, status_code = "forbidden", status.HTTP_403_FORBIDDEN


class PoolExhaustedError(DomainError):
    """No pooled connection became available within the checkout timeout."""
    code, status_code = "service_unavailable", status.HTTP_503_SERVICE_UNAVAILABLE


class TenantContextError(DomainError):
    """Identity could not be written to the bound connection; the request fails closed."""
    code, status_code = "service_unavailable", status.HTTP_503_SERVICE_UNAVAILABLE


class PolicyViolationError(DomainError):
    """
    A query was attempted without an applied identity.

    This is a wiring bug, never a recoverable condition.
    """
    code, status_code = "internal_error", status.HTTP_500_INTERNAL_SERVER_ERROR


class ChannelParseError(DomainError):
    """Malformed event channel payload. Local to the listener bridge."""
    code = "channel_parse_error"


class ChannelDisconnectError(DomainError):
    """The listener connection dropped. Local to the listener bridge."""
    code = "channel_disconnect"


# ───────────────────────────── Helpers ──────────────────────────────────────

def _problem(code: str, message: str, correlation_id: Optional[str]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message}
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def _extract_correlation_id(req: Request) -> Optional[str]:
    return getattr(getattr(req, "state", None), "request_id", None)


def log_domain_error(exc: DomainError, correlation_id: Optional[str]) -> None:
    context = ctxvars.get_request_context()
    fields = {
        "kind": exc.__class__.__name__,
        "code": exc.code,
        "reason": exc.message,
        "status": exc.status_code,
        "request_id": correlation_id or context.get("request_id"),
        "subject_id": context.get("subject_id"),
        "tenant_id": context.get("tenant_id"),
    }
    if isinstance(exc, PolicyViolationError):
        logger.critical("policy_violation", **fields)
    elif exc.status_code >= 500:
        logger.error("request_failed", **fields)
    else:
        logger.warning("request_rejected", **fields)


def domain_error_response(exc: DomainError, correlation_id: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_problem(exc.code, exc.public_message, correlation_id),
    )


# ─────────────────────────── Registration ───────────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def handle_app_error(req: Request, exc: DomainError):
        correlation_id = _extract_correlation_id(req)
        log_domain_error(exc, correlation_id)
        return domain_error_response(exc, correlation_id)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(req: Request, exc: RequestValidationError):
        code = "validation_error"
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_problem(code, _PUBLIC_MESSAGES[code], _extract_correlation_id(req)),
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(req: Request, exc: Exception):
        code = "internal_error"
        logger.exception("unhandled_exception", request_id=_extract_correlation_id(req))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_problem(code, _PUBLIC_MESSAGES[code], _extract_correlation_id(req)),
        )
