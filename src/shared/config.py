"""
Centralized configuration for the tenant-isolated data service.

- Pure Python (dataclasses + stdlib), no Pydantic.
- Loads from OS env; optionally parses a .env file if python-dotenv is installed.
- Strong typing & validation in __post_init__.
- Immutable singleton via functools.lru_cache.
- Secrets never logged (masked).
"""

from __future__ import annotations

import functools
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, cast
from urllib.parse import urlparse


# ------------------------------------------------------------------------------
# Optional .env loader
# ------------------------------------------------------------------------------
def _maybe_load_dotenv(env_path: Path) -> None:
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=str(env_path), override=False)


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
def _mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "***"
    return value[:2] + "…" + value[-2:]


def _get_env_str(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    v = os.getenv(key, default)
    if required and (v is None or str(v).strip() == ""):
        raise ValueError(f"Missing required env var: {key}")
    return v


def _get_env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip().lower()
    return v in {"1", "true", "t", "yes", "y", "on"}


def _get_env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be an integer")


def _get_env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be a number")


def _validate_choice(value: str, *, choices: tuple[str, ...], key: str) -> str:
    if value not in choices:
        raise ValueError(f"{key} must be one of {choices}, got {value!r}")
    return value


def _validate_url(value: Optional[str], *, key: str, allowed_schemes: tuple[str, ...]) -> Optional[str]:
    if value in (None, ""):
        return None
    parsed = urlparse(value)
    if parsed.scheme not in allowed_schemes or not parsed.netloc:
        raise ValueError(f"{key} must be a valid URL with scheme in {allowed_schemes}")
    return value


def _validate_postgres_dsn(value: str, *, key: str) -> str:
    if not value.startswith("postgresql://") and not value.startswith("postgresql+asyncpg://"):
        raise ValueError(f"{key} must start with postgresql:// or postgresql+asyncpg://")
    return value


# ------------------------------------------------------------------------------
# Settings dataclass (immutable)
# ------------------------------------------------------------------------------
EnvName = Literal["local", "dev", "staging", "prod"]
JwtAlg = Literal["HS256", "RS256"]

PLACEHOLDER_EMAIL = "noreply@itasset.local"


@dataclass(frozen=True)
class Settings:
    # Environment
    environment: EnvName = "local"
    debug: bool = False
    is_testing: bool = False

    # Database pooling
    database_url: str = field(default="")
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: float = 10.0
    database_pool_recycle: int = 1800

    # Listener connection (dedicated, never pooled)
    listener_database_url: Optional[str] = None
    alert_channel: str = "new_security_alert"
    alert_reconnect_delay: float = 5.0
    alert_reconnect_max_delay: float = 10.0

    # Security / JWT
    secret_key: str = field(default="")
    jwt_algorithm: JwtAlg = "HS256"
    access_token_exp_minutes: int = 60 * 24 * 7  # 7 days
    jwt_public_key: Optional[str] = None
    jwt_private_key: Optional[str] = None

    # Escalation (email)
    escalation_api_url: str = "https://api.resend.com/emails"
    escalation_api_key: Optional[str] = None
    admin_email: Optional[str] = None
    from_email: str = PLACEHOLDER_EMAIL

    # HTTP
    cors_origin: str = "*"

    # Observability
    log_level: str = "INFO"

    # Derived/computed flags (filled in __post_init__)
    is_prod: bool = field(init=False)
    is_staging: bool = field(init=False)
    is_dev: bool = field(init=False)
    is_local: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "environment",
            _validate_choice(self.environment, choices=("local", "dev", "staging", "prod"), key="ENVIRONMENT"),
        )
        object.__setattr__(
            self, "jwt_algorithm",
            _validate_choice(self.jwt_algorithm, choices=("HS256", "RS256"), key="JWT_ALGORITHM"),
        )

        object.__setattr__(self, "database_url", _validate_postgres_dsn(self.database_url, key="DATABASE_URL"))
        if self.listener_database_url:
            _validate_postgres_dsn(self.listener_database_url, key="LISTENER_DATABASE_URL")
        _validate_url(self.escalation_api_url, key="ESCALATION_API_URL", allowed_schemes=("http", "https"))

        if not self.secret_key or not self.secret_key.strip():
            raise ValueError("SECRET_KEY must be set and non-empty")
        if self.access_token_exp_minutes <= 0:
            raise ValueError("ACCESS_TOKEN_EXP_MINUTES must be > 0")

        if self.database_pool_size <= 0:
            raise ValueError("DATABASE_POOL_SIZE must be > 0")
        if self.database_max_overflow < 0:
            raise ValueError("DATABASE_MAX_OVERFLOW must be >= 0")
        if self.database_pool_timeout <= 0:
            raise ValueError("DATABASE_POOL_TIMEOUT must be > 0")

        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", self.alert_channel):
            raise ValueError("ALERT_CHANNEL must be a plain identifier")
        if self.alert_reconnect_delay <= 0:
            raise ValueError("ALERT_RECONNECT_DELAY must be > 0")
        if self.alert_reconnect_max_delay < self.alert_reconnect_delay:
            raise ValueError("ALERT_RECONNECT_MAX_DELAY must be >= ALERT_RECONNECT_DELAY")

        # RS256 needs a key pair; the service both issues and verifies tokens
        if self.jwt_algorithm == "RS256":
            if not (self.jwt_public_key and self.jwt_private_key):
                raise ValueError("For RS256, set both JWT_PUBLIC_KEY and JWT_PRIVATE_KEY")

        if not re.fullmatch(r"(?i)DEBUG|INFO|WARNING|ERROR|CRITICAL", self.log_level.strip()):
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")

        env = self.environment
        object.__setattr__(self, "is_prod", env == "prod")
        object.__setattr__(self, "is_staging", env == "staging")
        object.__setattr__(self, "is_dev", env == "dev")
        object.__setattr__(self, "is_local", env == "local")

    @property
    def listener_dsn(self) -> str:
        """Plain libpq DSN for the dedicated LISTEN connection (asyncpg)."""
        dsn = self.listener_database_url or self.database_url
        return dsn.replace("postgresql+asyncpg://", "postgresql://", 1)

    @property
    def engine_url(self) -> str:
        """SQLAlchemy URL for the pooled engine, always on the asyncpg driver."""
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def escalation_recipient(self) -> Optional[str]:
        recipient = self.admin_email or self.from_email
        if not recipient or recipient == PLACEHOLDER_EMAIL:
            return None
        return recipient

    # Safe dict (for debug prints without secrets)
    def safe_dict(self) -> dict:
        return {
            "environment": self.environment,
            "debug": self.debug,
            "is_testing": self.is_testing,
            "database_url": "<masked>" if self.database_url else "<unset>",
            "listener_database_url": "<masked>" if self.listener_database_url else "<unset>",
            "database_pool_size": self.database_pool_size,
            "database_max_overflow": self.database_max_overflow,
            "database_pool_timeout": self.database_pool_timeout,
            "alert_channel": self.alert_channel,
            "alert_reconnect_delay": self.alert_reconnect_delay,
            "alert_reconnect_max_delay": self.alert_reconnect_max_delay,
            "secret_key": _mask_secret(self.secret_key),
            "jwt_algorithm": self.jwt_algorithm,
            "access_token_exp_minutes": self.access_token_exp_minutes,
            "jwt_public_key": "<masked>" if self.jwt_public_key else "<unset>",
            "jwt_private_key": "<masked>" if self.jwt_private_key else "<unset>",
            "escalation_api_key": _mask_secret(self.escalation_api_key),
            "admin_email": "<set>" if self.admin_email else "<unset>",
            "log_level": self.log_level,
        }


# ------------------------------------------------------------------------------
# Loader (singleton)
# ------------------------------------------------------------------------------
_logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Attempt to load .env from repo root (../.env relative to src/)
    env_file = Path(__file__).resolve().parent.parent.parent / ".env"
    _maybe_load_dotenv(env_file)

    settings = Settings(
        environment=cast(EnvName, _get_env_str("ENVIRONMENT", "local") or "local"),
        debug=_get_env_bool("DEBUG", False),
        is_testing=_get_env_bool("IS_TESTING", False),
        database_url=_get_env_str("DATABASE_URL", required=True) or "",
        database_pool_size=_get_env_int("DATABASE_POOL_SIZE", 10),
        database_max_overflow=_get_env_int("DATABASE_MAX_OVERFLOW", 10),
        database_pool_timeout=_get_env_float("DATABASE_POOL_TIMEOUT", 10.0),
        database_pool_recycle=_get_env_int("DATABASE_POOL_RECYCLE", 1800),
        listener_database_url=_get_env_str("LISTENER_DATABASE_URL", None),
        alert_channel=_get_env_str("ALERT_CHANNEL", "new_security_alert") or "new_security_alert",
        alert_reconnect_delay=_get_env_float("ALERT_RECONNECT_DELAY", 5.0),
        alert_reconnect_max_delay=_get_env_float("ALERT_RECONNECT_MAX_DELAY", 10.0),
        secret_key=_get_env_str("SECRET_KEY", required=True) or "",
        jwt_algorithm=cast(JwtAlg, _get_env_str("JWT_ALGORITHM", "HS256") or "HS256"),
        access_token_exp_minutes=_get_env_int("ACCESS_TOKEN_EXP_MINUTES", 60 * 24 * 7),
        jwt_public_key=_get_env_str("JWT_PUBLIC_KEY", None),
        jwt_private_key=_get_env_str("JWT_PRIVATE_KEY", None),
        escalation_api_url=_get_env_str("ESCALATION_API_URL", "https://api.resend.com/emails") or "https://api.resend.com/emails",
        escalation_api_key=_get_env_str("ESCALATION_API_KEY", None),
        admin_email=_get_env_str("ADMIN_EMAIL", None),
        from_email=_get_env_str("FROM_EMAIL", PLACEHOLDER_EMAIL) or PLACEHOLDER_EMAIL,
        cors_origin=_get_env_str("CORS_ORIGIN", "*") or "*",
        log_level=_get_env_str("LOG_LEVEL", "INFO") or "INFO",
    )

    _logger.info("Settings loaded", extra={"settings": settings.safe_dict()})
    return settings
