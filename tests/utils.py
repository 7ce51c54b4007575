from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from src.orbitmate.services.providers.base import (
    Capabilities,
    Completion,
    GenerationOptions,
    Prompt,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolCallEvent,
)
from src.orbitmate.services.providers.registry import ProviderRegistry

Item = Union[str, ToolCall]


class FakeAdapter:
    """Scripted provider: each round is a list of text chunks and tool calls.

    ``generate`` joins a round's chunks into one completion, so both modes see
    the same output for the same script.
    """

    default_model = "fake-model"

    def __init__(
        self,
        name: str = "fake",
        rounds: Optional[Sequence[Sequence[Item]]] = None,
        *,
        streaming: bool = True,
        tools: bool = False,
        usage: Optional[TokenUsage] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.name = name
        self.capabilities = Capabilities(streaming=streaming, tools=tools)
        self.rounds: List[List[Item]] = [list(r) for r in (rounds or [["hi ", "there"]])]
        self.usage = usage or TokenUsage()
        self.delay = delay
        self.error = error
        self.prompts: List[Prompt] = []
        self.options: List[GenerationOptions] = []
        self.closed_streams = 0

    def _round(self) -> List[Item]:
        idx = min(len(self.prompts) - 1, len(self.rounds) - 1)
        return self.rounds[idx]

    async def generate(self, prompt: Prompt, options: GenerationOptions) -> Completion:
        self.prompts.append(prompt)
        self.options.append(options)
        if self.error is not None:
            raise self.error
        if self.delay:
            await asyncio.sleep(self.delay)
        items = self._round()
        return Completion(
            text="".join(i for i in items if isinstance(i, str)),
            token_usage=self.usage,
            tool_calls=[i for i in items if isinstance(i, ToolCall)],
        )

    async def generate_stream(self, prompt: Prompt, options: GenerationOptions):
        self.prompts.append(prompt)
        self.options.append(options)
        try:
            if self.error is not None:
                raise self.error
            for item in self._round():
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield TextDelta(item) if isinstance(item, str) else ToolCallEvent(item)
        finally:
            self.closed_streams += 1


class LookupTool:
    name = "lookup"
    description = "Look up a fact"
    input_schema = {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}

    def __init__(self, result: Any = None, error: Optional[Exception] = None) -> None:
        self.result = {"answer": 42} if result is None else result
        self.error = error
        self.inputs: List[Dict[str, Any]] = []

    async def execute(self, tool_input: Dict[str, Any]) -> Any:
        self.inputs.append(tool_input)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingMirror:
    def __init__(self) -> None:
        self.published: List[Tuple[str, str, Dict[str, Any]]] = []

    def publish(self, target: str, event: str, payload: Dict[str, Any]) -> bool:
        self.published.append((target, event, payload))
        return True

    def events(self, event: str) -> List[Dict[str, Any]]:
        return [payload for _, name, payload in self.published if name == event]


def make_registry(*adapters: FakeAdapter, default: Optional[str] = None) -> ProviderRegistry:
    return ProviderRegistry(
        env={},
        default_provider=default or adapters[0].name,
        adapters={a.name: a for a in adapters},
    )


def parse_sse(body: str) -> List[Tuple[Optional[str], Dict[str, Any]]]:
    """Split an SSE body into ``(event name, data)`` pairs."""
    import json

    frames: List[Tuple[Optional[str], Dict[str, Any]]] = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        name: Optional[str] = None
        data: Dict[str, Any] = {}
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        frames.append((name, data))
    return frames
