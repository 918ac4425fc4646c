"""WebSocket endpoint for real-time messaging.

    - WebSocket /ws?token=<jwt>: conversation events for one user connection

The credential is read from the ``token`` query parameter, falling back to an
``Authorization: Bearer`` header. A connection that fails authentication is
accepted and immediately closed with code 1008 and the failure message as the
close reason.

Protocol:
    Client -> server: {"event": "conversation:join", "data": {"conversationId": "..."}}
    Server -> client: {"event": "message:new", "data": {"message": {...}, ...}}
    Failures:         {"event": "error", "data": {"event": "...", "code": "...", "message": "..."}}
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ..errors import ChatError
from .session import get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (header fallback)"),
) -> None:
    """Authenticate, then pump inbound frames through the session manager."""
    manager = get_session_manager()
    if manager is None:
        logger.error("[WS] Session manager is not running; rejecting connection")
        await websocket.accept()
        await websocket.close(code=INTERNAL_ERROR)
        return

    try:
        user = await manager.authenticate(token, websocket.headers.get("authorization"))
    except ChatError as e:
        logger.info(f"[WS] Rejected connection: {e.code} {e.message}")
        # The close reason only reaches the client on an accepted socket.
        await websocket.accept()
        await websocket.close(code=POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    try:
        conn = await manager.open(websocket, user)
    except Exception:
        logger.exception(f"[WS] Could not open session for {user.id}")
        await websocket.close(code=INTERNAL_ERROR)
        return

    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except ValueError:
                raw = text
            await manager.dispatch(conn, raw)
    except WebSocketDisconnect as e:
        logger.debug(f"[WS] {conn.handle} disconnected (code={e.code})")
    finally:
        await manager.close(conn)
