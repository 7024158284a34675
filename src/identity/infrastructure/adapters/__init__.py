"""Identity Infrastructure - External Adapters"""
from src.identity.infrastructure.adapters.jwt_service import JWTService, TokenSettings

__all__ = [
    "JWTService",
    "TokenSettings",
]
