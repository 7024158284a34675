"""
Identity & capability resolution from bearer tokens.

Every request's token lands in exactly one TokenState; only VALID yields an
Identity. Nothing here touches the database, so rejected requests never
reach the session binder.

Claim names changed over the life of the product (`id` → `userId` →
`subjectId`, `organization_id` → `tenantId`, `role` → `tenantRole`). Tokens
issued under any of them still resolve to the same Identity.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping, Optional

import jwt
import structlog

from src.identity.domain.identity import Identity
from src.identity.domain.value_objects.capability import Capability
from src.identity.domain.value_objects.role import Role, UnknownRoleError
from src.identity.infrastructure.adapters.jwt_service import JWTService, TokenSettings
from src.shared.config import Settings
from src.shared.exceptions import AuthenticationError

logger = structlog.get_logger(__name__)

# Newest name first
SUBJECT_CLAIMS = ("subjectId", "userId", "user_id", "id", "sub")
TENANT_CLAIMS = ("tenantId", "tenant_id", "organizationId", "organization_id", "orgId", "org_id")
ROLE_CLAIMS = ("tenantRole", "role")
EXPIRY_CLAIMS = ("exp", "expiresAt")
ISSUED_CLAIMS = ("iat", "issuedAt")

BEARER_SCHEME = "bearer"


class TokenState(StrEnum):
    NO_TOKEN = "no_token"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    VALID = "valid"


@dataclass(frozen=True)
class TokenResolution:
    state: TokenState
    identity: Optional[Identity] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.state is TokenState.VALID and self.identity is not None


class MalformedClaims(ValueError):
    pass


def _first_claim(payload: Mapping[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any, claim: str) -> int:
    if isinstance(value, bool):
        raise MalformedClaims(f"{claim} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isascii() and value.strip().isdecimal():
        try:
            return int(value.strip())
        except ValueError:
            raise MalformedClaims(f"{claim} must be an integer") from None
    raise MalformedClaims(f"{claim} must be an integer")


def _as_datetime(value: Any, claim: str) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # 1e20, nan and friends are signed just as happily as real timestamps
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            raise MalformedClaims(f"{claim} is out of range") from None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedClaims(f"{claim} is not a timestamp")
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedClaims(f"{claim} is not a timestamp")


def normalize_claims(payload: Mapping[str, Any]) -> Identity:
    """Map a verified payload (any historical shape) onto an Identity."""
    raw_subject = _first_claim(payload, SUBJECT_CLAIMS)
    if raw_subject is None:
        raise MalformedClaims("missing subject")
    subject_id = _as_int(raw_subject, "subject")

    raw_tenant = _first_claim(payload, TENANT_CLAIMS)
    tenant_id = _as_int(raw_tenant, "tenant") if raw_tenant is not None else None

    raw_role = _first_claim(payload, ROLE_CLAIMS)
    if not isinstance(raw_role, str):
        raise MalformedClaims("missing role")
    try:
        role = Role.from_string(raw_role)
    except UnknownRoleError as e:
        raise MalformedClaims(str(e)) from e

    granted = None
    raw_caps = payload.get("capabilities")
    if raw_caps is not None:
        if not isinstance(raw_caps, list):
            raise MalformedClaims("capabilities must be a list")
        granted = Capability.parse_many(raw_caps)

    try:
        return Identity.for_role(subject_id, role, tenant_id=tenant_id, granted=granted)
    except ValueError as e:
        raise MalformedClaims(str(e)) from e


def extract_bearer(authorization: Optional[str]) -> tuple[Optional[str], bool]:
    """Return (token, well_formed). A missing header or empty bearer means no token."""
    if authorization is None or not authorization.strip():
        return None, True
    parts = authorization.strip().split(None, 1)
    if parts[0].lower() != BEARER_SCHEME:
        return None, False
    token = parts[1].strip() if len(parts) > 1 else ""
    if not token:
        return None, True
    if any(ch.isspace() for ch in token):
        return None, False
    return token, True


class TokenResolver:
    """Issues and validates identity tokens."""

    def __init__(
        self,
        jwt_service: JWTService,
        *,
        access_token_ttl: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._jwt = jwt_service
        self._ttl = access_token_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenResolver":
        return cls(
            JWTService(TokenSettings.from_settings(settings)),
            access_token_ttl=timedelta(minutes=settings.access_token_exp_minutes),
        )

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def issue(self, identity: Identity, expires: Optional[timedelta] = None) -> str:
        now = self._now()
        exp = now + (expires if expires is not None else self._ttl)
        iat_ts = int(now.timestamp())
        exp_ts = int(exp.timestamp())
        payload = {
            "sub": str(identity.subject_id),
            "subjectId": identity.subject_id,
            "tenantId": identity.tenant_id,
            "tenantRole": identity.role.value,
            "capabilities": sorted(c.value for c in identity.capabilities),
            "iat": iat_ts,
            "issuedAt": iat_ts,
            "exp": exp_ts,
            "expiresAt": exp_ts,
        }
        return self._jwt.encode(payload)

    def resolve_token(self, token: Optional[str]) -> TokenResolution:
        if not token:
            return TokenResolution(TokenState.NO_TOKEN, reason="no bearer token")

        try:
            payload = self._jwt.decode(token)
        except jwt.ExpiredSignatureError:
            return TokenResolution(TokenState.EXPIRED, reason="token expired")
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            return TokenResolution(TokenState.INVALID_SIGNATURE, reason=str(e) or "bad signature")
        except jwt.InvalidTokenError as e:
            return TokenResolution(TokenState.MALFORMED, reason=str(e) or "undecodable token")

        try:
            raw_exp = _first_claim(payload, EXPIRY_CLAIMS)
            if raw_exp is None:
                raise MalformedClaims("missing expiry")
            if _as_datetime(raw_exp, "expiry") <= self._now():
                return TokenResolution(TokenState.EXPIRED, reason="token expired")
            raw_iat = _first_claim(payload, ISSUED_CLAIMS)
            if raw_iat is not None:
                _as_datetime(raw_iat, "issuedAt")
            identity = normalize_claims(payload)
        except MalformedClaims as e:
            return TokenResolution(TokenState.MALFORMED, reason=str(e))

        return TokenResolution(TokenState.VALID, identity=identity)

    def resolve(self, authorization: Optional[str]) -> TokenResolution:
        token, well_formed = extract_bearer(authorization)
        if not well_formed:
            return TokenResolution(TokenState.MALFORMED, reason="not a bearer credential")
        return self.resolve_token(token)

    def authenticate(self, authorization: Optional[str]) -> Identity:
        """Return the Identity for a VALID token, else raise AuthenticationError."""
        resolution = self.resolve(authorization)
        if not resolution.ok:
            logger.info("token_rejected", token_state=resolution.state.value, reason=resolution.reason)
            raise AuthenticationError(
                f"token {resolution.state.value}: {resolution.reason}",
                details={"token_state": resolution.state.value},
            )
        return resolution.identity  # type: ignore[return-value]
