from __future__ import annotations

import json
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional

import redis

LOG = logging.getLogger("orbitmate.events")

CHANNEL_PREFIX = "orbitmate.broadcast"

_STOP = object()


class RedisEventMirror:
    """Copies every hub publish onto a Redis pub/sub channel.

    Other processes (workers, a second API replica) subscribe to
    ``orbitmate.broadcast.<target>``. ``publish`` only enqueues; a daemon
    thread owns the connection and does all network I/O, so a hung or
    unreachable Redis never stalls the event loop. The mirror is best-effort:
    frames are dropped when the queue is full or Redis is down, and a failed
    connection is retried no sooner than ``retry_after_s`` later.
    """

    def __init__(
        self,
        url: str,
        client: Any = None,
        maxsize: int = 1000,
        retry_after_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._client = client
        self._retry_after_s = retry_after_s
        self._clock = clock
        self._next_attempt = 0.0
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._run, name="orbitmate-redis-mirror", daemon=True)
        self._thread.start()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def publish(self, target: str, event: str, payload: Dict[str, Any]) -> bool:
        """Queue one frame for Redis; returns False when it had to be dropped."""
        try:
            body = json.dumps({"event": event, "target": target, "data": payload}, default=str)
        except (TypeError, ValueError) as exc:
            LOG.warning("redis_encode_failed", extra={"target": target, "err": str(exc)})
            return False
        try:
            self._queue.put_nowait((f"{CHANNEL_PREFIX}.{target}", body))
        except queue.Full:
            LOG.warning("redis_mirror_queue_full", extra={"target": target})
            return False
        return True

    def flush(self) -> None:
        """Block until every queued frame has been sent or dropped."""
        self._queue.join()

    def close(self) -> None:
        if not self._thread.is_alive():
            return
        self._queue.put(_STOP)
        self._thread.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._send(*item)
            except Exception as exc:  # noqa: BLE001 - the mirror thread must survive one bad frame
                LOG.warning("redis_mirror_error", extra={"err": repr(exc)})
            finally:
                self._queue.task_done()

    def _connect(self) -> None:
        now = self._clock()
        if now < self._next_attempt:
            return
        try:
            client = redis.Redis.from_url(self._url, socket_timeout=0.5, socket_connect_timeout=0.5)
            client.ping()
        except redis.RedisError as exc:
            LOG.warning("redis_connect_failed", extra={"err": str(exc)})
            self._next_attempt = now + self._retry_after_s
            return
        self._client = client

    def _send(self, channel: str, body: str) -> None:
        if self._client is None:
            self._connect()
        if self._client is None:
            return
        try:
            self._client.publish(channel, body)
        except redis.RedisError as exc:
            LOG.warning("redis_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None
            self._next_attempt = self._clock() + self._retry_after_s


def build_event_mirror(redis_url: Optional[str]) -> Optional[RedisEventMirror]:
    if not redis_url:
        return None
    return RedisEventMirror(redis_url)
