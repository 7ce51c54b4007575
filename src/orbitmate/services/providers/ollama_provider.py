from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import requests
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

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
    map_request_error,
    parse_arguments,
)

LOG = logging.getLogger("orbitmate.llm")


class OllamaAdapter:
    """Local Ollama server through ``/api/chat``.

    Streaming responses are newline-delimited JSON objects, each carrying a
    ``message`` fragment; the final object has ``done: true`` and the token
    counters.
    """

    name = "ollama"
    capabilities = Capabilities(streaming=True, tools=True)

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        default_model: str = "gemma3:4b",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self._session = session or build_session()

    @staticmethod
    def _to_messages(prompt: Prompt) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        if prompt.system_prompt:
            out.append({"role": "system", "content": prompt.system_prompt})
        for msg in prompt.messages:
            role = msg.get("role") or "user"
            entry: Dict[str, Any] = {"role": role, "content": msg.get("content") or ""}
            if role == "assistant" and msg.get("tool_calls"):
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.arguments}} for call in msg["tool_calls"]
                ]
            if role == "tool":
                entry["tool_name"] = msg.get("name")
            out.append(entry)
        return out

    def _payload(self, prompt: Prompt, options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": self._to_messages(prompt),
            "stream": stream,
        }
        model_options: Dict[str, Any] = {}
        if options.max_output_tokens:
            model_options["num_predict"] = options.max_output_tokens
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if model_options:
            payload["options"] = model_options
        if options.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in options.tools
            ]
        return payload

    @staticmethod
    def _tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for idx, raw in enumerate(message.get("tool_calls") or []):
            fn = raw.get("function") or {}
            name = fn.get("name")
            if not name:
                continue
            calls.append(ToolCall(name=name, arguments=parse_arguments(fn.get("arguments")), call_id=f"ollama-{idx}"))
        return calls

    @staticmethod
    def _usage(data: Dict[str, Any]) -> TokenUsage:
        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        output_tokens = int(data.get("eval_count") or 0)
        return TokenUsage(prompt_tokens, output_tokens, prompt_tokens + output_tokens)

    def _post(self, payload: Dict[str, Any], stream: bool, timeout_s: float) -> requests.Response:
        try:
            resp = self._session.post(
                f"{self.base_url}/api/chat",
                json=payload,
                timeout=(3, timeout_s),
                stream=stream,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise map_request_error(self.name, exc) from exc
        return resp

    async def generate(self, prompt: Prompt, options: GenerationOptions) -> Completion:
        payload = self._payload(prompt, options, stream=False)
        LOG.debug("ollama_generate", extra={"model": payload["model"], "base_url": self.base_url})
        resp = await run_in_threadpool(self._post, payload, False, options.timeout_s)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("ollama returned malformed JSON", provider=self.name, provider_code="bad_json") from exc
        if data.get("error"):
            raise ProviderError(str(data["error"]), provider=self.name, provider_code="ollama_error")
        message = data.get("message") or {}
        text = message.get("content") or ""
        calls = self._tool_calls(message)
        if not text and not calls:
            raise empty_response_error(self.name)
        return Completion(text=text, token_usage=self._usage(data), tool_calls=calls)

    async def generate_stream(self, prompt: Prompt, options: GenerationOptions) -> AsyncIterator[StreamItem]:
        payload = self._payload(prompt, options, stream=True)
        LOG.debug("ollama_stream", extra={"model": payload["model"], "base_url": self.base_url})
        resp = await run_in_threadpool(self._post, payload, True, options.timeout_s)
        try:
            async for raw_line in iterate_in_threadpool(resp.iter_lines()):
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line)
                except json.JSONDecodeError:
                    LOG.debug("ollama_stream_bad_line")
                    continue
                if data.get("error"):
                    raise ProviderError(str(data["error"]), provider=self.name, provider_code="ollama_error")
                message = data.get("message") or {}
                token = message.get("content") or ""
                if token:
                    yield TextDelta(token)
                for call in self._tool_calls(message):
                    yield ToolCallEvent(call)
                if data.get("done"):
                    break
        except requests.exceptions.RequestException as exc:
            raise map_request_error(self.name, exc) from exc
        finally:
            resp.close()
