"""Fan-out of named events to live WebSocket channels.

A channel is one connected socket. Channels join targets (``session:<id>``
and ``user:<id>``); a target may hold many channels and a channel may sit in
many targets. Publishing only enqueues frames onto bounded per-channel queues
so a slow socket can never stall the caller. Each socket's writer task
drains its queue; a channel whose queue overflows is closed and pruned.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from ..observability.metrics import BROADCAST_DELIVERIES

LOG = logging.getLogger("orbitmate.broadcast")

Frame = Dict[str, Any]


def session_target(session_id: str) -> str:
    return f"session:{session_id}"


def user_target(user_id: str) -> str:
    return f"user:{user_id}"


class EventMirror(Protocol):
    def publish(self, target: str, event: str, payload: Dict[str, Any]) -> bool: ...


def _timestamp() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class QueueChannel:
    def __init__(self, channel_id: str, maxsize: int = 100) -> None:
        self.channel_id = channel_id
        self.user_id: Optional[str] = None
        self.targets: Set[str] = set()
        self.closed = False
        self._queue: "asyncio.Queue[Optional[Frame]]" = asyncio.Queue(maxsize=maxsize)

    def offer(self, frame: Frame) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            LOG.warning("broadcast_channel_overflow", extra={"channel": self.channel_id})
            self.close()
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # The drain loop checks ``closed`` after every get.
            pass

    async def drain(self, send: Callable[[Frame], Awaitable[None]]) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None or self.closed:
                return
            target = frame.get("target")
            if target is not None and target not in self.targets:
                continue
            await send(frame)


class BroadcastHub:
    def __init__(self, mirror: Optional[EventMirror] = None, queue_size: int = 100) -> None:
        self._mirror = mirror
        self._queue_size = queue_size
        self._channels: Dict[str, QueueChannel] = {}
        self._members: Dict[str, Set[str]] = {}

    def register(self, channel_id: Optional[str] = None) -> QueueChannel:
        cid = channel_id or uuid.uuid4().hex
        channel = QueueChannel(cid, maxsize=self._queue_size)
        self._channels[cid] = channel
        LOG.debug("broadcast_channel_registered", extra={"channel": cid})
        return channel

    def channel(self, channel_id: str) -> Optional[QueueChannel]:
        return self._channels.get(channel_id)

    def join(self, channel_id: str, target: str) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None or channel.closed:
            return False
        channel.targets.add(target)
        self._members.setdefault(target, set()).add(channel_id)
        return True

    def identify(self, channel_id: str, user_id: str) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        if channel.user_id and channel.user_id != user_id:
            self.leave(channel_id, user_target(channel.user_id))
        channel.user_id = user_id
        return self.join(channel_id, user_target(user_id))

    def leave(self, channel_id: str, target: Optional[str] = None) -> None:
        channel = self._channels.get(channel_id)
        targets = [target] if target is not None else list(channel.targets if channel else [])
        for tgt in targets:
            if channel is not None:
                channel.targets.discard(tgt)
            members = self._members.get(tgt)
            if members is None:
                continue
            members.discard(channel_id)
            if not members:
                del self._members[tgt]

    def disconnect(self, channel_id: str) -> Set[str]:
        """Drop a channel entirely; returns the targets it was part of."""
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return set()
        targets = set(channel.targets)
        for tgt in targets:
            members = self._members.get(tgt)
            if members is None:
                continue
            members.discard(channel_id)
            if not members:
                del self._members[tgt]
        channel.targets.clear()
        channel.close()
        LOG.debug("broadcast_channel_disconnected", extra={"channel": channel_id})
        return targets

    def publish(self, target: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> int:
        """Queue ``event`` for every channel in ``target``; returns how many accepted it."""
        frame: Frame = {"event": event, "data": payload, "target": target, "timestamp": _timestamp()}
        delivered = 0
        dead: List[str] = []
        for cid in list(self._members.get(target, ())):
            if cid == exclude:
                continue
            channel = self._channels.get(cid)
            if channel is None or not channel.offer(frame):
                dead.append(cid)
                continue
            delivered += 1
        for cid in dead:
            self.disconnect(cid)
            self.leave(cid, target)
        if self._mirror is not None:
            self._mirror.publish(target, event, payload)
        if delivered:
            BROADCAST_DELIVERIES.labels(event=event).inc(delivered)
        LOG.debug("broadcast_published", extra={"target": target, "event": event, "delivered": delivered})
        return delivered

    def send(self, channel_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """Queue a frame for one channel regardless of its targets."""
        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        frame: Frame = {"event": event, "data": payload, "target": None, "timestamp": _timestamp()}
        if not channel.offer(frame):
            self.disconnect(channel_id)
            return False
        return True

    def online_users(self, session_id: str) -> List[str]:
        users: Set[str] = set()
        for cid in self._members.get(session_target(session_id), ()):
            channel = self._channels.get(cid)
            if channel is not None and channel.user_id:
                users.add(channel.user_id)
        return sorted(users)

    def member_count(self, target: str) -> int:
        return len(self._members.get(target, ()))

    def stats(self) -> Dict[str, Any]:
        sessions = {t: len(m) for t, m in self._members.items() if t.startswith("session:")}
        users = {t: len(m) for t, m in self._members.items() if t.startswith("user:")}
        return {
            "total_connections": len(self._channels),
            "identified_users": len({c.user_id for c in self._channels.values() if c.user_id}),
            "active_sessions": len(sessions),
            "sessions": sessions,
            "users": users,
        }
