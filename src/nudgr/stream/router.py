"""Unified event stream endpoint."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Query, WebSocket

from nudgr.config import get_settings
from nudgr.database import get_session_factory
from nudgr.errors import AuthorizationError
from nudgr.nudges.generator import get_message_generator
from nudgr.stream.reconciler import EventReconciler, StreamSettings, TokenAuthorizer
from nudgr.stream.registry import registry
from nudgr.stream.supervisor import CLOSE_TOO_MANY_CONNECTIONS, CLOSE_UNAUTHORIZED, ConnectionSupervisor

logger = structlog.get_logger()

router = APIRouter()


def _bearer_token(websocket: WebSocket) -> str:
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer":
        return value.strip()
    return ""


@router.websocket("/ws/events")
async def event_stream(
    websocket: WebSocket,
    token: str | None = Query(None),
) -> None:
    """Push nudges and bet outcomes to the client as they happen.

    Protocol:
        Client -> Server:
            {"action": "ping"}

        Server -> Client:
            {"type": "connected", "message": "..."}
            {"type": "nudge", "nudge": {...}}
            {"type": "bet_resolved", "bet": {...}}
            {"type": "bet_expired", "bet": {...}}
            {"type": "heartbeat", "timestamp": "..."}
            {"type": "error", "message": "..."}
            {"type": "pong"}

    The access token comes from the ``token`` query parameter or a bearer
    Authorization header. Close code 4001 means the token or session is no
    longer valid; 4008 means the user has too many open streams.
    """
    settings = get_settings()
    session_factory = get_session_factory()
    reconciler = EventReconciler(
        token=token or _bearer_token(websocket),
        send=websocket.send_json,
        authorizer=TokenAuthorizer(session_factory),
        session_factory=session_factory,
        generator=get_message_generator(),
        settings=StreamSettings.from_settings(settings),
    )

    try:
        user_id = await reconciler.connect()
    except AuthorizationError as e:
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason=f"Authentication failed: {e.message}")
        return

    if registry.user_connection_count(user_id) >= settings.ws_max_connections_per_user:
        logger.warning("stream_connection_limit", user_id=user_id, limit=settings.ws_max_connections_per_user)
        reconciler.close("connection_limit")
        await websocket.close(code=CLOSE_TOO_MANY_CONNECTIONS, reason="Too many open streams")
        return

    await websocket.accept()
    supervisor = ConnectionSupervisor(
        websocket,
        reconciler,
        registry,
        heartbeat_interval=reconciler.settings.heartbeat_interval,
        poll_interval=reconciler.settings.poll_interval,
    )
    await supervisor.run()
