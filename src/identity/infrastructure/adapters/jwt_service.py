"""
JWT Service - Token signing and verification
External adapter around PyJWT
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
import structlog

from src.shared.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenSettings:
    algorithm: str = "HS256"
    secret: Optional[str] = None
    private_key: Optional[str] = None
    public_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSettings":
        return cls(
            algorithm=settings.jwt_algorithm,
            secret=settings.secret_key,
            private_key=settings.jwt_private_key,
            public_key=settings.jwt_public_key,
        )

    def signing_key(self) -> Any:
        return self.private_key if self.algorithm == "RS256" else self.secret

    def verify_key(self) -> Any:
        return self.public_key if self.algorithm == "RS256" else self.secret


class JWTService:
    """
    Thin wrapper over PyJWT.

    Only the configured algorithm is accepted on decode, so `alg: none` and
    algorithm-confusion tokens fail signature verification. PyJWT errors are
    propagated unchanged; callers classify them.
    """

    def __init__(self, settings: TokenSettings) -> None:
        if settings.algorithm not in {"HS256", "RS256"}:
            raise ValueError("Unsupported JWT algorithm")
        if not settings.signing_key() or not settings.verify_key():
            raise ValueError(f"{settings.algorithm} requires signing and verification keys")
        self._s = settings

    def encode(self, payload: Dict[str, Any]) -> str:
        return jwt.encode(payload, self._s.signing_key(), algorithm=self._s.algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Verify signature and registered time claims, return the payload.

        `sub` type checking is disabled: older tokens carry a numeric subject
        and are normalized by the resolver instead.
        """
        return jwt.decode(
            token,
            self._s.verify_key(),
            algorithms=[self._s.algorithm],
            options={"verify_exp": True, "verify_sub": False},
        )
