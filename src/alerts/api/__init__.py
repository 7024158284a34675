"""
Alerts API Routes
"""
from src.alerts.api.routes import router as alerts_router

__all__ = ["alerts_router"]
