"""Websocket endpoint pushing entitlement changes to signed-in users."""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from artshare.auth import verify_token

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: str | None = None) -> None:
    """Authenticate with ``?token=<jwt>``, then receive pushed messages."""
    supabase = getattr(websocket.app.state, "supabase", None)
    registry = getattr(websocket.app.state, "connection_registry", None)
    if supabase is None or registry is None or not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user = await verify_token(supabase, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    await registry.register(user.id, websocket)
    try:
        while True:
            # Client messages are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("notifications_socket_closed", user_id=user.id)
    finally:
        await registry.unregister(user.id, websocket)
