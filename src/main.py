from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

from src.alerts.api import alerts_router
from src.alerts.application.publisher import AlertPublisher
from src.alerts.infrastructure.broadcast import BroadcastHub
from src.alerts.infrastructure.escalation import EmailEscalationNotifier, EscalationNotifier
from src.alerts.infrastructure.listener import AlertListenerBridge
from src.identity.api.routes import identity_router
from src.identity.application.services.token_resolver import TokenResolver
from src.shared.config import Settings, get_settings
from src.shared.database.engine import close_database_engine, create_database_engine, verify_database
from src.shared.database.sessions import RequestSessionBinder
from src.shared.exceptions import register_exception_handlers  # central mapping
from src.shared.health import router as health_router
from src.shared.http.middleware.setup import setup_http_middlewares
from src.shared.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    binder: Optional[RequestSessionBinder] = None,
    resolver: Optional[TokenResolver] = None,
    hub: Optional[BroadcastHub] = None,
    notifier: Optional[EscalationNotifier] = None,
    bridge: Optional[AlertListenerBridge] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Build the API.

    Collaborators can be passed in (tests use in-memory fakes); anything left
    out is built from settings. With `start_background=False` the lifespan
    neither checks the database nor starts the alert listener.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    engine = None
    if binder is None:
        engine = create_database_engine(settings)
        binder = RequestSessionBinder(engine, checkout_timeout=settings.database_pool_timeout)
    resolver = resolver or TokenResolver.from_settings(settings)
    hub = hub or BroadcastHub()
    publisher = AlertPublisher(hub, notifier or EmailEscalationNotifier.from_settings(settings))
    if bridge is None and start_background:
        bridge = AlertListenerBridge.from_settings(settings, publisher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_background:
            # Start even when the database is down; requests get 503 until it is back
            if engine is not None:
                app.state.database_ready = await verify_database(engine)
            if bridge is not None:
                await bridge.start()
        logger.info("application_started", **settings.safe_dict())
        try:
            yield
        finally:
            if bridge is not None:
                await bridge.stop()
            await publisher.drain()
            if engine is not None:
                await close_database_engine()
            logger.info("application_stopped")

    app = FastAPI(
        title="TenantGuard API",
        version="1.0.0",
        swagger_ui_parameters={"persistAuthorization": True},
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_binder = binder
    app.state.token_resolver = resolver
    app.state.broadcast_hub = hub
    app.state.alert_publisher = publisher
    app.state.alert_bridge = bridge
    app.state.database_ready = engine is None

    # RequestId → Exception → JwtAuth → TenantSession
    setup_http_middlewares(app)

    # CORS (outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origin.split(",") if o.strip()],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=settings.cors_origin.strip() != "*",
    )

    # Routers
    app.include_router(health_router)
    app.include_router(identity_router)
    app.include_router(alerts_router)

    # Centralized error handling → {code, message, correlation_id}
    register_exception_handlers(app)

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "message": "TenantGuard API",
            "docs": "/docs",
            "health": "/health",
        }

    # ---- Custom OpenAPI to add Bearer auth ----
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=app.version,
            routes=app.routes,
        )
        schema.setdefault("components", {}).setdefault("securitySchemes", {})["bearerAuth"] = {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
        schema["security"] = [{"bearerAuth": []}]
        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi

    return app


app = create_app()
