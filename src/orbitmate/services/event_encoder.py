"""Server-sent event framing for turn events.

Every frame is ``event: <name>\\n`` (omitted for deltas) followed by
``data: <json>\\n\\n``. An ``end`` event expands to two frames so clients that
only watch for ``ai_message_id`` still learn the persisted id before ``end``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from ..domain.turns import EventKind, ProtocolEvent
from ..errors import EncodingError

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _frame(name: Optional[str], payload: Dict[str, Any]) -> str:
    if not isinstance(payload, dict):
        raise EncodingError(f"Event payload must be an object, got {type(payload).__name__}")
    try:
        data = json.dumps(payload, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Event payload is not JSON serializable: {exc}") from exc
    head = f"event: {name}\n" if name else ""
    return f"{head}data: {data}\n\n"


class SSEEncoder:
    def encode(self, event: ProtocolEvent) -> str:
        if event.kind is EventKind.IDS:
            return _frame("ids", event.payload)
        if event.kind is EventKind.DELTA:
            return _frame(None, event.payload)
        if event.kind is EventKind.END:
            if not isinstance(event.payload, dict):
                raise EncodingError("End payload must be an object")
            frames: List[str] = [
                _frame("ai_message_id", {"aiMessageId": event.payload.get("aiMessageId")}),
                _frame("end", event.payload),
            ]
            return "".join(frames)
        if event.kind is EventKind.ERROR:
            return _frame("error", event.payload)
        raise EncodingError(f"Unknown event kind {event.kind!r}")
