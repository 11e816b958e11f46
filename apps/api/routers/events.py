"""
Live progress delivery over WebSocket.

Clients connect to `/events?token=<session token>`, are subscribed to their
own user scope, and may send:

    {"action": "subscribe", "video_id": "..."}
    {"action": "unsubscribe", "video_id": "..."}
    {"action": "ping"}
"""

import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from routers.auth_scope import auth_context_from_token
from services.notifier import Subscription, asset_scope, get_notifier, user_scope

router = APIRouter()
logger = logging.getLogger(__name__)


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for message in subscription.messages():
        await websocket.send_json({"event": message["event"], "data": message["data"]})


async def _handle_commands(websocket: WebSocket, subscription: Subscription, user_id: str) -> None:
    while True:
        command = await websocket.receive_json()
        action = str(command.get("action", "")).strip().lower()
        video_id = str(command.get("video_id", "")).strip()

        if action == "subscribe" and video_id:
            await subscription.subscribe(asset_scope(video_id))
            logger.info("User %s subscribed to video %s", user_id, video_id)
        elif action == "unsubscribe" and video_id:
            await subscription.unsubscribe(asset_scope(video_id))
            logger.info("User %s unsubscribed from video %s", user_id, video_id)
        elif action == "ping":
            await websocket.send_json({"event": "pong", "data": {"timestamp": int(time.time() * 1000)}})
        else:
            await websocket.send_json({"event": "error", "data": {"message": f"Unknown action: {action or '?'}"}})


@router.websocket("/events")
async def progress_events(websocket: WebSocket, token: Optional[str] = Query(None)):
    try:
        auth = auth_context_from_token(token or "")
    except ValueError:
        await websocket.close(code=4401, reason="Authentication required")
        return

    await websocket.accept()
    subscription = get_notifier().subscription()
    await subscription.subscribe(user_scope(auth.user_id))
    await websocket.send_json(
        {"event": "connected", "data": {"message": "Connected to real-time updates", "user_id": auth.user_id}}
    )

    forwarder = asyncio.create_task(_forward_events(websocket, subscription))
    try:
        await _handle_commands(websocket, subscription, auth.user_id)
    except WebSocketDisconnect as exc:
        logger.info("User %s disconnected (%s)", auth.user_id, exc.code)
    finally:
        forwarder.cancel()
        try:
            await forwarder
        except (asyncio.CancelledError, Exception):
            pass
        await subscription.close()
