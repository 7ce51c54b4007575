from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import openai
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from ...errors import ProviderError, ProviderTimeoutError
from .base import (
    Capabilities,
    Completion,
    GenerationOptions,
    Prompt,
    StreamItem,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolCallEvent,
    empty_response_error,
    parse_arguments,
)

LOG = logging.getLogger("orbitmate.llm")


def _map_openai_error(exc: openai.OpenAIError) -> ProviderError:
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError("openai request timed out", provider="openai")
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(f"openai is unreachable: {exc}", provider="openai", provider_code="connection_error", retryable=True)
    if isinstance(exc, openai.RateLimitError):
        return ProviderError("openai rate limit exceeded", provider="openai", provider_code="rate_limited", retryable=True)
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        return ProviderError(
            f"openai returned HTTP {status}: {exc.message}",
            provider="openai",
            provider_code=f"http_{status}",
            retryable=status >= 500,
        )
    return ProviderError(f"openai request failed: {exc}", provider="openai", provider_code="request_error")


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts)
    return ""


def _usage(message: AIMessage) -> TokenUsage:
    meta = getattr(message, "usage_metadata", None) or {}
    return TokenUsage(
        int(meta.get("input_tokens") or 0),
        int(meta.get("output_tokens") or 0),
        int(meta.get("total_tokens") or 0),
    )


def _tool_calls(message: AIMessage) -> List[ToolCall]:
    return [
        ToolCall(name=call["name"], arguments=parse_arguments(call.get("args")), call_id=call.get("id"))
        for call in (getattr(message, "tool_calls", None) or [])
        if call.get("name")
    ]


class OpenAIAdapter:
    """Any OpenAI-compatible endpoint through ``langchain_openai.ChatOpenAI``."""

    name = "openai"
    capabilities = Capabilities(streaming=True, tools=True)

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url
        self.default_model = default_model

    @staticmethod
    def _to_messages(prompt: Prompt) -> List[BaseMessage]:
        out: List[BaseMessage] = []
        if prompt.system_prompt:
            out.append(SystemMessage(content=prompt.system_prompt))
        for msg in prompt.messages:
            role = msg.get("role") or "user"
            content = msg.get("content") or ""
            if role == "assistant":
                calls = [
                    {"name": c.name, "args": c.arguments, "id": c.call_id or f"call_{idx}"}
                    for idx, c in enumerate(msg.get("tool_calls") or [])
                ]
                out.append(AIMessage(content=content, tool_calls=calls))
            elif role == "tool":
                out.append(ToolMessage(content=content, tool_call_id=msg.get("tool_call_id") or ""))
            else:
                out.append(HumanMessage(content=content))
        return out

    def _client(self, options: GenerationOptions) -> Any:
        if not self._api_key:
            raise ProviderError("OPENAI_API_KEY is not configured", provider=self.name, provider_code="not_configured")
        kwargs: Dict[str, Any] = {
            "api_key": self._api_key,
            "base_url": self.base_url,
            "model": options.model or self.default_model,
            "temperature": 0.2 if options.temperature is None else options.temperature,
            "timeout": options.timeout_s,
            "max_retries": 0,
        }
        if options.max_output_tokens:
            kwargs["max_tokens"] = options.max_output_tokens
        llm = ChatOpenAI(**kwargs)
        if options.tools:
            llm = llm.bind_tools(
                [
                    {
                        "type": "function",
                        "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                    }
                    for t in options.tools
                ]
            )
        return llm

    async def generate(self, prompt: Prompt, options: GenerationOptions) -> Completion:
        llm = self._client(options)
        LOG.debug("openai_generate", extra={"model": options.model or self.default_model, "base_url": self.base_url})
        try:
            message = await llm.ainvoke(self._to_messages(prompt))
        except openai.OpenAIError as exc:
            raise _map_openai_error(exc) from exc
        text = _content_text(message.content)
        calls = _tool_calls(message)
        if not text and not calls:
            raise empty_response_error(self.name)
        return Completion(text=text, token_usage=_usage(message), tool_calls=calls)

    async def generate_stream(self, prompt: Prompt, options: GenerationOptions) -> AsyncIterator[StreamItem]:
        llm = self._client(options)
        LOG.debug("openai_stream", extra={"model": options.model or self.default_model, "base_url": self.base_url})
        gathered = None
        try:
            async for chunk in llm.astream(self._to_messages(prompt)):
                token = _content_text(chunk.content)
                if token:
                    yield TextDelta(token)
                if getattr(chunk, "tool_call_chunks", None):
                    # Tool call arguments arrive in fragments; merge before emitting.
                    gathered = chunk if gathered is None else gathered + chunk
        except openai.OpenAIError as exc:
            raise _map_openai_error(exc) from exc
        if gathered is not None:
            for call in _tool_calls(gathered):
                yield ToolCallEvent(call)
