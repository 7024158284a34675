"""
Identity Application Services
Token issue/resolution
"""
from src.identity.application.services.token_resolver import (
    TokenResolution,
    TokenResolver,
    TokenState,
)

__all__ = [
    "TokenResolution",
    "TokenResolver",
    "TokenState",
]
