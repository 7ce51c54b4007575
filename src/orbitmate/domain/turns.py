from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class TurnState(str, Enum):
    RECEIVED = "received"
    USER_PERSISTED = "user_persisted"
    GENERATING = "generating"
    STREAMING = "streaming"
    AI_PERSISTED = "ai_persisted"
    COMPLETED = "completed"
    FAILED = "failed"


# Single-shot turns skip STREAMING; FAILED is reachable from every live state.
TURN_TRANSITIONS: Dict[TurnState, FrozenSet[TurnState]] = {
    TurnState.RECEIVED: frozenset({TurnState.USER_PERSISTED, TurnState.FAILED}),
    TurnState.USER_PERSISTED: frozenset({TurnState.GENERATING, TurnState.FAILED}),
    TurnState.GENERATING: frozenset({TurnState.STREAMING, TurnState.AI_PERSISTED, TurnState.FAILED}),
    TurnState.STREAMING: frozenset({TurnState.AI_PERSISTED, TurnState.FAILED}),
    TurnState.AI_PERSISTED: frozenset({TurnState.COMPLETED, TurnState.FAILED}),
    TurnState.COMPLETED: frozenset(),
    TurnState.FAILED: frozenset(),
}


def is_valid_transition(current: TurnState, target: TurnState) -> bool:
    return target in TURN_TRANSITIONS.get(current, frozenset())


@dataclass
class StreamTurn:
    """One in-flight request/response cycle. Never persisted."""

    session_id: str
    user_id: str
    provider: str
    model: str
    mode: str = "json"
    user_message_id: Optional[str] = None
    ai_message_id: Optional[str] = None
    buffer: List[str] = field(default_factory=list)
    state: TurnState = TurnState.RECEIVED
    cancelled: bool = False
    tool_calls_used: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def text(self) -> str:
        return "".join(self.buffer)

    @property
    def chunk_count(self) -> int:
        return len(self.buffer)

    @property
    def is_terminal(self) -> bool:
        return self.state in (TurnState.COMPLETED, TurnState.FAILED)

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)

    def advance(self, target: TurnState) -> None:
        if not is_valid_transition(self.state, target):
            raise RuntimeError(f"Illegal turn transition {self.state.value} -> {target.value}")
        self.state = target


class EventKind(str, Enum):
    IDS = "ids"
    DELTA = "delta"
    END = "end"
    ERROR = "error"


@dataclass(frozen=True)
class ProtocolEvent:
    kind: EventKind
    payload: Dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.kind in (EventKind.END, EventKind.ERROR)

    @classmethod
    def ids(cls, user_message_id: str) -> "ProtocolEvent":
        return cls(EventKind.IDS, {"userMessageId": user_message_id})

    @classmethod
    def delta(cls, text: str) -> "ProtocolEvent":
        return cls(EventKind.DELTA, {"delta": text})

    @classmethod
    def end(cls, ai_message_id: str) -> "ProtocolEvent":
        return cls(EventKind.END, {"done": True, "aiMessageId": ai_message_id})

    @classmethod
    def error(cls, code: str, message: str) -> "ProtocolEvent":
        return cls(EventKind.ERROR, {"code": code, "message": message})
