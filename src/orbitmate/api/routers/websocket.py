"""Live session channel over WebSocket plus the hub's admin endpoints.

Client frames are JSON objects ``{"event": <name>, "data": {...}}``. Server
frames are ``{"event", "data", "target", "timestamp"}`` as produced by the
broadcast hub.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ...domain.chat_models import BroadcastRequest, BroadcastResult
from ...services.broadcast_hub import BroadcastHub, QueueChannel, session_target, user_target
from ..deps import get_hub

LOG = logging.getLogger("orbitmate.ws")

router = APIRouter(tags=["websocket"])


def _error(hub: BroadcastHub, channel_id: str, message: str) -> None:
    hub.send(channel_id, "error", {"code": "INVALID_INPUT", "message": message})


def _handle(hub: BroadcastHub, channel_id: str, event: str, data: Dict[str, Any]) -> None:
    channel = hub.channel(channel_id)
    user_id = channel.user_id if channel else None
    session_id = str(data.get("sessionId") or "").strip()

    if event == "join_session":
        joining_user = str(data.get("userId") or "").strip()
        if not session_id or not joining_user:
            _error(hub, channel_id, "userId and sessionId are required")
            return
        hub.identify(channel_id, joining_user)
        hub.join(channel_id, session_target(session_id))
        hub.send(channel_id, "join_session_success", {"sessionId": session_id, "userId": joining_user})
        hub.publish(
            session_target(session_id),
            "user_joined",
            {"sessionId": session_id, "userId": joining_user},
            exclude=channel_id,
        )
        return

    if not session_id:
        _error(hub, channel_id, "sessionId is required")
        return

    if event == "leave_session":
        hub.leave(channel_id, session_target(session_id))
        hub.publish(session_target(session_id), "user_left", {"sessionId": session_id, "userId": user_id})
    elif event in ("typing_start", "typing_stop"):
        hub.publish(
            session_target(session_id),
            "user_typing",
            {"sessionId": session_id, "userId": user_id, "isTyping": event == "typing_start"},
            exclude=channel_id,
        )
    elif event == "get_online_users":
        hub.send(channel_id, "online_users", {"sessionId": session_id, "users": hub.online_users(session_id)})
    else:
        _error(hub, channel_id, f"Unknown event '{event}'")


async def _pump(channel: QueueChannel, websocket: WebSocket) -> None:
    try:
        await channel.drain(websocket.send_json)
    except (WebSocketDisconnect, RuntimeError) as exc:
        LOG.debug("ws_writer_stopped", extra={"channel": channel.channel_id, "err": str(exc)})


@router.websocket("/ws")
async def session_socket(websocket: WebSocket) -> None:
    hub: BroadcastHub = websocket.app.state.hub
    await websocket.accept()
    channel = hub.register()
    writer = asyncio.create_task(_pump(channel, websocket))
    LOG.info("ws_connected", extra={"channel": channel.channel_id})
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                _error(hub, channel.channel_id, "Frames must be JSON objects")
                continue
            if not isinstance(message, dict) or not isinstance(message.get("event"), str):
                _error(hub, channel.channel_id, "Frames need an 'event' name")
                continue
            data = message.get("data")
            _handle(hub, channel.channel_id, message["event"], data if isinstance(data, dict) else {})
    except WebSocketDisconnect:
        pass
    finally:
        user_id = channel.user_id
        targets = hub.disconnect(channel.channel_id)
        for target in targets:
            if target.startswith("session:") and user_id:
                hub.publish(target, "user_left", {"sessionId": target.split(":", 1)[1], "userId": user_id})
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
        LOG.info("ws_disconnected", extra={"channel": channel.channel_id, "user_id": user_id})


@router.get("/ws/status")
async def ws_status(hub: BroadcastHub = Depends(get_hub)) -> Dict[str, Any]:
    return {"status": "success", "data": hub.stats()}


@router.post("/ws/broadcast/session/{session_id}", response_model=BroadcastResult)
async def broadcast_to_session(session_id: str, req: BroadcastRequest, hub: BroadcastHub = Depends(get_hub)) -> BroadcastResult:
    target = session_target(session_id)
    delivered = hub.publish(target, req.event, req.data)
    return BroadcastResult(target=target, event=req.event, delivered=delivered)


@router.post("/ws/send/user/{user_id}", response_model=BroadcastResult)
async def send_to_user(user_id: str, req: BroadcastRequest, hub: BroadcastHub = Depends(get_hub)) -> BroadcastResult:
    target = user_target(user_id)
    delivered = hub.publish(target, req.event, req.data)
    return BroadcastResult(target=target, event=req.event, delivered=delivered)
