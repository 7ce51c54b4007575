"""Canonical shapes shared by every AI provider adapter.

Adapters translate provider-native payloads (Ollama NDJSON, OpenAI chat
chunks, Gemini ``generateContent`` parts) into :class:`Completion` for
single-shot calls and a finite stream of :class:`TextDelta` /
:class:`ToolCallEvent` items for incremental calls. Adapters never execute
tools and never retry.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import requests
from requests.adapters import HTTPAdapter

from ...errors import ProviderError, ProviderTimeoutError

LOG = logging.getLogger("orbitmate.llm")


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"input": self.input, "output": self.output, "total": self.total}


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass
class Completion:
    text: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    call: ToolCall


StreamItem = Union[TextDelta, ToolCallEvent]


@dataclass
class Prompt:
    """System prompt plus chat history in ``{"role", "content"}`` form.

    Roles are ``user``, ``assistant`` and ``tool``. Assistant entries may
    carry ``tool_calls`` (a list of :class:`ToolCall`); tool entries carry
    ``name`` and ``tool_call_id``.
    """

    system_prompt: str
    messages: List[Dict[str, Any]]
    personalized: bool = False

    @property
    def length(self) -> int:
        return len(self.system_prompt) + sum(len(str(m.get("content") or "")) for m in self.messages)

    def extended(self, extra: List[Dict[str, Any]]) -> "Prompt":
        return Prompt(self.system_prompt, list(self.messages) + list(extra), self.personalized)


@dataclass(frozen=True)
class GenerationOptions:
    model: str
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout_s: float = 60.0
    tools: List[ToolSpec] = field(default_factory=list)


@dataclass(frozen=True)
class Capabilities:
    streaming: bool
    tools: bool


class ProviderAdapter(Protocol):
    name: str
    default_model: str
    capabilities: Capabilities

    async def generate(self, prompt: Prompt, options: GenerationOptions) -> Completion: ...

    def generate_stream(self, prompt: Prompt, options: GenerationOptions) -> AsyncIterator[StreamItem]: ...


def build_session() -> requests.Session:
    # No urllib3 Retry: a replayed POST could repeat a tool side effect.
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    return {}


def map_request_error(provider: str, exc: requests.exceptions.RequestException) -> ProviderError:
    """Translate a ``requests`` failure into the provider error taxonomy."""
    if isinstance(exc, requests.exceptions.Timeout):
        return ProviderTimeoutError(f"{provider} request timed out", provider=provider)
    if isinstance(exc, requests.exceptions.ConnectionError):
        return ProviderError(
            f"{provider} is unreachable: {exc}",
            provider=provider,
            provider_code="connection_error",
            retryable=True,
        )
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        return http_status_error(provider, exc.response.status_code, exc.response.text)
    return ProviderError(f"{provider} request failed: {exc}", provider=provider, provider_code="request_error")


def http_status_error(provider: str, status: int, body: str = "") -> ProviderError:
    retryable = status == 429 or status >= 500
    snippet = (body or "")[:200]
    return ProviderError(
        f"{provider} returned HTTP {status}: {snippet}",
        provider=provider,
        provider_code=f"http_{status}",
        retryable=retryable,
    )


def empty_response_error(provider: str) -> ProviderError:
    return ProviderError(
        f"{provider} returned an empty response",
        provider=provider,
        provider_code="empty_response",
        code="AI_RESPONSE_ERROR",
    )
