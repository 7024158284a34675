"""
Identity API Routes
"""
from fastapi import APIRouter

from src.identity.api.routes import session

# Create main identity router
identity_router = APIRouter()

# Include sub-routers
identity_router.include_router(session.router)

__all__ = ["identity_router"]
