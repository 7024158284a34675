# src/alerts/api/routes.py
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status

from src.identity.domain.value_objects.capability import Capability
from src.shared.http.dependencies import require_capability
from src.shared.http.responses import ok
from src.shared.logging import log_security_event
from src.shared.metrics import inc_auth_attempt

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Alerts"])


@router.get("/api/alerts/status", dependencies=[Depends(require_capability(Capability.READ_ALL))])
async def alerts_status(request: Request):
    bridge = getattr(request.app.state, "alert_bridge", None)
    hub = request.app.state.broadcast_hub
    return ok({
        "bridge": bridge.status() if bridge is not None else None,
        "clients": hub.client_count,
    })


@router.websocket("/ws/alerts")
async def alerts_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    """
    Live `security-alert` pushes.

    Browsers cannot set headers on a WebSocket handshake, so the bearer token
    comes in the `token` query parameter; an Authorization header also works.
    """
    resolver = websocket.app.state.token_resolver
    if token is not None:
        resolution = resolver.resolve_token(token)
    else:
        resolution = resolver.resolve(websocket.headers.get("authorization"))
    inc_auth_attempt("websocket", resolution.state.value)

    if not resolution.ok:
        log_security_event("socket_rejected", reason=resolution.reason, token_state=resolution.state.value)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub = websocket.app.state.broadcast_hub
    await websocket.accept()
    hub.register(websocket)
    logger.info("alerts_socket_connected", subject_id=resolution.identity.subject_id)
    try:
        # Clients only listen; frames of any kind are read and discarded
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(websocket)
        logger.info("alerts_socket_disconnected", subject_id=resolution.identity.subject_id)
