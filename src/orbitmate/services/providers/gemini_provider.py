from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import requests
from starlette.concurrency import run_in_threadpool

from ...errors import ProviderError
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
    build_session,
    empty_response_error,
    http_status_error,
    map_request_error,
)

LOG = logging.getLogger("orbitmate.llm")


class GeminiAdapter:
    """Gemini REST ``generateContent``. Single-shot only."""

    name = "geminiapi"
    capabilities = Capabilities(streaming=False, tools=True)

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        default_model: str = "gemini-2.5-flash",
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self._session = session or build_session()

    @staticmethod
    def _to_contents(prompt: Prompt) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for msg in prompt.messages:
            role = msg.get("role") or "user"
            if role == "assistant":
                parts: List[Dict[str, Any]] = []
                if msg.get("content"):
                    parts.append({"text": msg["content"]})
                for call in msg.get("tool_calls") or []:
                    parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
                contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            elif role == "tool":
                contents.append(
                    {
                        "role": "user",
                        "parts": [
                            {
                                "functionResponse": {
                                    "name": msg.get("name"),
                                    "response": {"content": msg.get("content") or ""},
                                }
                            }
                        ],
                    }
                )
            else:
                contents.append({"role": "user", "parts": [{"text": msg.get("content") or ""}]})
        return contents

    def _payload(self, prompt: Prompt, options: GenerationOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": self._to_contents(prompt)}
        if prompt.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": prompt.system_prompt}]}
        config: Dict[str, Any] = {}
        if options.max_output_tokens:
            config["maxOutputTokens"] = options.max_output_tokens
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if config:
            payload["generationConfig"] = config
        if options.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in options.tools
                    ]
                }
            ]
        return payload

    def _post(self, model: str, payload: Dict[str, Any], timeout_s: float) -> Dict[str, Any]:
        try:
            resp = self._session.post(
                f"{self.base_url}/models/{model}:generateContent",
                json=payload,
                headers={"x-goog-api-key": self._api_key or ""},
                timeout=(3, timeout_s),
            )
        except requests.exceptions.RequestException as exc:
            raise map_request_error(self.name, exc) from exc
        if resp.status_code >= 400:
            raise http_status_error(self.name, resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError("gemini returned malformed JSON", provider=self.name, provider_code="bad_json") from exc

    async def generate(self, prompt: Prompt, options: GenerationOptions) -> Completion:
        if not self._api_key:
            raise ProviderError("GEMINI_API_KEY is not configured", provider=self.name, provider_code="not_configured")
        model = options.model or self.default_model
        LOG.debug("gemini_generate", extra={"model": model})
        data = await run_in_threadpool(self._post, model, self._payload(prompt, options), options.timeout_s)
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            if reason:
                raise ProviderError(
                    f"gemini blocked the prompt: {reason}",
                    provider=self.name,
                    provider_code=f"blocked_{str(reason).lower()}",
                    code="AI_RESPONSE_ERROR",
                )
            raise empty_response_error(self.name)
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts: List[str] = []
        calls: List[ToolCall] = []
        for idx, part in enumerate(parts):
            if part.get("text"):
                texts.append(part["text"])
            fn = part.get("functionCall")
            if fn and fn.get("name"):
                calls.append(ToolCall(name=fn["name"], arguments=dict(fn.get("args") or {}), call_id=f"gemini-{idx}"))
        text = "".join(texts)
        if not text and not calls:
            raise empty_response_error(self.name)
        usage = data.get("usageMetadata") or {}
        token_usage = TokenUsage(
            int(usage.get("promptTokenCount") or 0),
            int(usage.get("candidatesTokenCount") or 0),
            int(usage.get("totalTokenCount") or 0),
        )
        return Completion(text=text, token_usage=token_usage, tool_calls=calls)

    async def generate_stream(self, prompt: Prompt, options: GenerationOptions) -> AsyncIterator[StreamItem]:
        completion = await self.generate(prompt, options)
        if completion.text:
            yield TextDelta(completion.text)
        for call in completion.tool_calls:
            yield ToolCallEvent(call)
