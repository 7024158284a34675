from datetime import datetime, timezone

from fastapi import APIRouter, Request
from starlette.responses import Response

from src.shared.metrics import record_pool, render_latest

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health(request: Request):
    """Process liveness plus the state of the database and the alert listener."""
    state = request.app.state
    bridge = getattr(state, "alert_bridge", None)
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "ok" if getattr(state, "database_ready", False) else "unavailable",
        "alerts": bridge.status() if bridge is not None else None,
    }


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request):
    binder = getattr(request.app.state, "session_binder", None)
    if binder is not None:
        record_pool(binder.engine)
    body, content_type = render_latest()
    return Response(content=body, media_type=content_type)
