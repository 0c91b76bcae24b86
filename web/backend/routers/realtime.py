#!/usr/bin/env python3
"""
Realtime endpoints - broadcast events and the notification websocket.
"""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from notification.broadcaster import RealtimeBroadcaster
from notification.presence import PresenceManager

from ..dependencies import get_broadcaster, get_presence
from ..models.requests import BroadcastRequest
from ..models.responses import BroadcastResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.post("/api/realtime/broadcast", response_model=BroadcastResponse)
def broadcast_event(
    request: BroadcastRequest,
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
    presence: PresenceManager = Depends(get_presence)
):
    """
    Push an event to the live connections of the given users.

    Recently active users get a high-priority variant first. Unless the
    caller names them, they are taken from the presence index. Resending an
    event id inside the dedup window is a no-op.
    """
    active = request.active_user_ids
    if active is None:
        active = presence.active_users(request.user_ids)
    report = broadcaster.broadcast_prioritized(
        request.event_id,
        request.user_ids,
        active,
        request.payload,
        request.event_name
    )
    return BroadcastResponse(
        event_id=report.event_id,
        duplicate=report.duplicate,
        delivered=report.delivered,
        offline=report.offline,
        failed=report.failed
    )


@router.websocket("/ws/notifications/{user_id}")
async def notifications_websocket(websocket: WebSocket, user_id: str) -> None:
    """Websocket endpoint that streams notifications and presence to ``user_id``."""
    manager = websocket.app.state.connections
    context = websocket.app.state.context

    handle = await manager.connect(user_id, websocket)
    await run_in_threadpool(context.presence.set_online, user_id, handle)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except WebSocketDisconnect:
                raise
            except ValueError:
                continue

            if not isinstance(message, dict):
                continue

            if message.get("type") == "ping":
                await run_in_threadpool(context.presence.heartbeat, user_id)
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug(f"User {user_id} disconnected")
    finally:
        manager.disconnect(user_id, websocket)
        await run_in_threadpool(context.presence.set_offline, user_id, handle)
