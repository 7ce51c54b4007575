import pytest
import requests

from src.orbitmate.errors import ProviderError, ProviderTimeoutError
from src.orbitmate.services.providers.base import GenerationOptions, Prompt, TextDelta, ToolCall, ToolSpec
from src.orbitmate.services.providers.gemini_provider import GeminiAdapter


class _FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _ok(parts, usage=None):
    return _FakeResponse(
        body={
            "candidates": [{"content": {"role": "model", "parts": parts}}],
            "usageMetadata": usage or {"promptTokenCount": 3, "candidatesTokenCount": 5, "totalTokenCount": 8},
        }
    )


def _prompt():
    return Prompt(
        system_prompt="Be brief.",
        messages=[
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi"},
            {"role": "user", "content": "again"},
        ],
    )


OPTIONS = GenerationOptions(model="gemini-2.5-flash", timeout_s=7)


@pytest.mark.asyncio
async def test_generate_sends_key_and_contents():
    session = _FakeSession(_ok([{"text": "Hello "}, {"text": "world"}]))
    adapter = GeminiAdapter(api_key="k-123", session=session)

    completion = await adapter.generate(_prompt(), OPTIONS)

    call = session.calls[0]
    assert call["url"].endswith("/models/gemini-2.5-flash:generateContent")
    assert call["headers"] == {"x-goog-api-key": "k-123"}
    assert call["timeout"] == (3, 7)
    body = call["json"]
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert completion.text == "Hello world"
    assert completion.token_usage.to_dict() == {"input": 3, "output": 5, "total": 8}


@pytest.mark.asyncio
async def test_function_calls_and_declarations():
    session = _FakeSession(_ok([{"functionCall": {"name": "lookup", "args": {"q": "x"}}}]))
    adapter = GeminiAdapter(api_key="k", session=session)
    options = GenerationOptions(model="m", tools=[ToolSpec(name="lookup", description="d")])

    completion = await adapter.generate(_prompt(), options)

    declarations = session.calls[0]["json"]["tools"][0]["functionDeclarations"]
    assert declarations[0]["name"] == "lookup"
    assert completion.tool_calls == [ToolCall(name="lookup", arguments={"q": "x"}, call_id="gemini-0")]


@pytest.mark.asyncio
async def test_tool_results_become_function_responses():
    call = ToolCall(name="lookup", arguments={"q": "x"}, call_id="c1")
    prompt = _prompt().extended(
        [
            {"role": "assistant", "content": "", "tool_calls": [call]},
            {"role": "tool", "name": "lookup", "tool_call_id": "c1", "content": "42"},
        ]
    )
    session = _FakeSession(_ok([{"text": "It is 42"}]))

    await GeminiAdapter(api_key="k", session=session).generate(prompt, OPTIONS)

    contents = session.calls[0]["json"]["contents"]
    assert contents[-2] == {"role": "model", "parts": [{"functionCall": {"name": "lookup", "args": {"q": "x"}}}]}
    assert contents[-1]["parts"][0]["functionResponse"] == {"name": "lookup", "response": {"content": "42"}}


@pytest.mark.asyncio
async def test_missing_key_is_not_configured():
    adapter = GeminiAdapter(api_key=None, session=_FakeSession())
    with pytest.raises(ProviderError) as exc:
        await adapter.generate(_prompt(), OPTIONS)
    assert exc.value.provider_code == "not_configured"


@pytest.mark.asyncio
async def test_error_mapping():
    adapter = GeminiAdapter(api_key="k", session=_FakeSession(_FakeResponse(status_code=429, text="quota")))
    with pytest.raises(ProviderError) as exc:
        await adapter.generate(_prompt(), OPTIONS)
    assert exc.value.provider_code == "http_429" and exc.value.retryable

    adapter = GeminiAdapter(api_key="k", session=_FakeSession(error=requests.exceptions.ConnectTimeout("slow")))
    with pytest.raises(ProviderTimeoutError):
        await adapter.generate(_prompt(), OPTIONS)

    blocked = _FakeResponse(body={"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})
    adapter = GeminiAdapter(api_key="k", session=_FakeSession(blocked))
    with pytest.raises(ProviderError) as exc:
        await adapter.generate(_prompt(), OPTIONS)
    assert exc.value.code == "AI_RESPONSE_ERROR"
    assert exc.value.provider_code == "blocked_safety"

    adapter = GeminiAdapter(api_key="k", session=_FakeSession(_FakeResponse(body={"candidates": []})))
    with pytest.raises(ProviderError) as exc:
        await adapter.generate(_prompt(), OPTIONS)
    assert exc.value.provider_code == "empty_response"


@pytest.mark.asyncio
async def test_stream_yields_single_completion():
    adapter = GeminiAdapter(api_key="k", session=_FakeSession(_ok([{"text": "whole"}])))
    assert not adapter.capabilities.streaming
    items = [item async for item in adapter.generate_stream(_prompt(), OPTIONS)]
    assert items == [TextDelta("whole")]
