from __future__ import annotations

from typing import List, Optional, Sequence

from ..domain.chat_models import ChatMessage
from .providers.base import Prompt

CANVAS_INSTRUCTIONS = (
    "When the user asks for a web page, component or visual, answer with complete "
    "code in separate fenced blocks labelled ```html, ```css and ```javascript, "
    "followed by a short explanation."
)

_ROLE_MAP = {"user": "user", "ai": "assistant"}


class PromptBuilder:
    """Assembles the system prompt and recent history for one turn."""

    def __init__(self, default_system_prompt: str, context_message_limit: int = 20) -> None:
        self.default_system_prompt = default_system_prompt
        self.context_message_limit = context_message_limit

    def build(
        self,
        history: Sequence[ChatMessage],
        system_prompt: Optional[str] = None,
        special_mode: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Prompt:
        personalized = bool(system_prompt and system_prompt.strip())
        base = system_prompt.strip() if personalized and system_prompt else self.default_system_prompt
        if special_mode == "canvas":
            base = f"{base}\n\n{CANVAS_INSTRUCTIONS}"

        window = self.context_message_limit if limit is None else limit
        recent: List[ChatMessage] = list(history)[-window:] if window > 0 else []
        # The triggering user message always goes in, even with a zero window.
        if history and (not recent or recent[-1].message_id != history[-1].message_id):
            recent.append(history[-1])
        messages = [
            {"role": _ROLE_MAP.get(msg.role, "user"), "content": msg.content}
            for msg in recent
            if msg.content
        ]
        return Prompt(system_prompt=base, messages=messages, personalized=personalized)
