"""Orchestrates one chat turn from user message to persisted AI reply.

A turn validates its input, persists the user message, builds the prompt,
drives the provider adapter (running any reported tool calls between adapter
rounds) and persists the AI message. In streaming mode the caller receives a
:class:`TurnStream` whose events are produced lazily; otherwise it receives a
:class:`TurnResult`.

Every turn that got as far as persisting the user message ends in either a
persisted AI message or a logged failure. A stream whose consumer goes away
still persists whatever text was relayed, flagged ``cancelled``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

from starlette.concurrency import run_in_threadpool

from ..config import Settings
from ..domain.chat_models import ChatMessage, SendMessageRequest
from ..domain.turns import ProtocolEvent, StreamTurn, TurnState
from ..errors import OrbitmateError, ProviderTimeoutError, ValidationError
from ..infrastructure.message_store import MessageStore, session_not_found
from ..observability.metrics import CHAT_TURNS
from .broadcast_hub import BroadcastHub, session_target
from .event_encoder import SSEEncoder
from .prompt_builder import PromptBuilder
from .providers.base import Completion, GenerationOptions, Prompt, TokenUsage, ToolCall, ToolCallEvent, empty_response_error
from .providers.registry import ProviderRegistry, ProviderSelection
from .telemetry_logger import TelemetryLogger
from .tools import ToolRegistry

LOG = logging.getLogger("orbitmate.chat")

DisconnectProbe = Callable[[], Awaitable[bool]]

_CANVAS_BLOCK = re.compile(r"```(html|css|javascript|js)[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_canvas(text: str) -> Dict[str, str]:
    """Pull the first html/css/javascript fenced blocks out of a reply."""
    found: Dict[str, str] = {}
    for lang, body in _CANVAS_BLOCK.findall(text or ""):
        key = {"html": "canvas_html", "css": "canvas_css"}.get(lang.lower(), "canvas_js")
        found.setdefault(key, body.strip())
    return {key: found.get(key, "") for key in ("canvas_html", "canvas_css", "canvas_js")}


def _history_until(history: List[ChatMessage], message_id: Optional[str]) -> List[ChatMessage]:
    """Cut the session log right after the message that triggered the turn.

    Messages written later by a concurrent turn on the same session must not
    leak into this turn's prompt.
    """
    for idx in range(len(history) - 1, -1, -1):
        if history[idx].message_id == message_id:
            return history[: idx + 1]
    return history


@dataclass(frozen=True)
class TurnOptions:
    provider: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    stream: bool = False
    special_mode: Optional[str] = None
    timeout_s: Optional[float] = None
    max_output_tokens: Optional[int] = None
    context_message_limit: Optional[int] = None

    @classmethod
    def from_request(cls, body: SendMessageRequest) -> "TurnOptions":
        return cls(
            provider=body.ai_provider_override,
            model=body.model_id_override,
            system_prompt=body.systemPrompt,
            stream=body.specialModeType == "stream",
            special_mode=body.specialModeType,
            max_output_tokens=body.max_output_tokens_override,
            context_message_limit=body.context_message_limit,
        )


@dataclass
class TurnResult:
    message: str
    user_message_id: str
    ai_message_id: str
    ai_provider: str
    model_id: str
    created_at: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    canvas: Optional[Dict[str, str]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "message": self.message,
            "user_message_id": self.user_message_id,
            "ai_message_id": self.ai_message_id,
            "ai_provider": self.ai_provider,
            "model_id": self.model_id,
            "created_at": self.created_at,
        }
        if self.canvas is not None:
            payload.update(self.canvas)
        return payload


class TurnStream:
    """Lazy event sequence for one streaming turn.

    ``events()`` yields :class:`ProtocolEvent` objects, ``frames()`` yields
    encoded SSE text. Either may be consumed once. A transport that gives up
    before pulling the first event calls :meth:`abandon` so the turn still
    ends with a persisted (empty, cancelled) AI message.
    """

    def __init__(
        self,
        turn: StreamTurn,
        run: Callable[[Callable[[ProtocolEvent], Any]], AsyncIterator[Any]],
        encoder: SSEEncoder,
        abandon: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.turn = turn
        self._run = run
        self._encoder = encoder
        self._abandon = abandon

    def events(self) -> AsyncIterator[ProtocolEvent]:
        return self._run(lambda event: event)

    def frames(self) -> AsyncIterator[str]:
        return self._run(self._encoder.encode)

    async def abandon(self) -> None:
        """Close out a turn whose events were never consumed; no-op otherwise."""
        if self._abandon is not None:
            await self._abandon()


@dataclass
class _TurnContext:
    text: str
    options: TurnOptions
    selection: ProviderSelection
    timeout_s: float
    is_disconnected: Optional[DisconnectProbe] = None
    deadline: float = 0.0
    started: bool = False


class StreamCoordinator:
    def __init__(
        self,
        store: MessageStore,
        providers: ProviderRegistry,
        telemetry: TelemetryLogger,
        hub: BroadcastHub,
        prompt_builder: Optional[PromptBuilder] = None,
        encoder: Optional[SSEEncoder] = None,
        tools: Optional[ToolRegistry] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._store = store
        self._providers = providers
        self._telemetry = telemetry
        self._hub = hub
        self._prompts = prompt_builder or PromptBuilder(
            self._settings.default_system_prompt, self._settings.context_message_limit
        )
        self._encoder = encoder or SSEEncoder()
        self._tools = tools or ToolRegistry()
        self._pending: Set["asyncio.Future[Any]"] = set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle_turn(
        self,
        session_id: str,
        user_id: str,
        text: str,
        options: Optional[TurnOptions] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> Union[TurnResult, TurnStream]:
        options = options or TurnOptions()
        self._validate(text)
        session = await run_in_threadpool(self._store.get_session, session_id)
        if session is None:
            raise session_not_found(session_id)
        selection = self._providers.resolve(options.provider, options.model)
        streaming = options.stream and selection.capabilities.streaming
        turn = StreamTurn(
            session_id=session_id,
            user_id=user_id,
            provider=selection.name,
            model=selection.model,
            mode="stream" if streaming else "json",
        )
        ctx = _TurnContext(
            text=text,
            options=options,
            selection=selection,
            timeout_s=options.timeout_s or self._settings.provider_timeout_s,
            is_disconnected=is_disconnected,
        )

        try:
            user_msg = await run_in_threadpool(self._store.add_message, session_id, user_id, "user", text)
        except OrbitmateError as exc:
            self._fail(turn, exc)
            raise
        turn.user_message_id = user_msg.message_id
        turn.advance(TurnState.USER_PERSISTED)
        self._hub.publish(
            session_target(session_id),
            "new_message",
            {
                "sessionId": session_id,
                "messageId": user_msg.message_id,
                "userId": user_id,
                "role": "user",
                "content": text,
                "createdAt": user_msg.created_at,
            },
        )
        LOG.info(
            "chat_turn_started",
            extra={"session_id": session_id, "provider": turn.provider, "model": turn.model, "mode": turn.mode},
        )

        if streaming:
            return TurnStream(
                turn,
                lambda emit: self._stream_events(turn, ctx, emit),
                self._encoder,
                abandon=lambda: self._abandon(turn, ctx),
            )
        return await self._run_single(turn, ctx)

    def _validate(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message content must not be empty")
        limit = self._settings.max_message_length
        if len(text) > limit:
            raise ValidationError(f"Message content exceeds {limit} characters")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    async def _build_prompt(self, turn: StreamTurn, ctx: _TurnContext) -> Prompt:
        limit = ctx.options.context_message_limit
        window = self._settings.context_message_limit if limit is None else limit
        history: List[ChatMessage] = await run_in_threadpool(self._store.list_messages, turn.session_id)
        prompt = self._prompts.build(
            _history_until(history, turn.user_message_id),
            ctx.options.system_prompt,
            ctx.options.special_mode,
            window,
        )
        self._telemetry.log_system_prompt(
            turn.session_id,
            turn.user_id,
            "custom" if prompt.personalized else "default",
            len(prompt.system_prompt),
            personalized=prompt.personalized,
            context_type=ctx.options.special_mode or "chat",
        )
        self._telemetry.log_ai_request(
            turn.session_id,
            turn.user_id,
            turn.provider,
            turn.model,
            len(ctx.text),
            len(prompt.system_prompt),
            self._tools.names(),
        )
        return prompt

    def _generation_options(self, ctx: _TurnContext) -> GenerationOptions:
        return GenerationOptions(
            model=ctx.selection.model,
            max_output_tokens=ctx.options.max_output_tokens,
            timeout_s=ctx.timeout_s,
            tools=self._tools.specs() if ctx.selection.capabilities.tools else [],
        )

    async def _within(self, ctx: _TurnContext, awaitable: Awaitable[Any]) -> Any:
        remaining = ctx.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise self._timeout_error(ctx)
        try:
            return await asyncio.wait_for(awaitable, remaining)
        except asyncio.TimeoutError as exc:
            raise self._timeout_error(ctx) from exc

    @staticmethod
    def _timeout_error(ctx: _TurnContext) -> ProviderTimeoutError:
        return ProviderTimeoutError(
            f"{ctx.selection.name} did not respond within {ctx.timeout_s:g}s",
            provider=ctx.selection.name,
        )

    async def _run_tools(
        self,
        turn: StreamTurn,
        ctx: _TurnContext,
        prompt: Prompt,
        calls: List[ToolCall],
        round_text: str,
    ) -> Prompt:
        results: List[Dict[str, Any]] = []
        for call in calls:
            tool = self._tools.get(call.name)
            started = time.perf_counter()
            error: Optional[str] = None
            if tool is None:
                error = f"Unknown tool '{call.name}'"
                output: Any = error
            else:
                try:
                    output = await self._within(ctx, tool.execute(call.arguments))
                except ProviderTimeoutError:
                    raise
                except Exception as exc:  # noqa: BLE001 - the model is told the tool failed
                    LOG.warning("tool_execution_failed", extra={"tool": call.name, "err": str(exc)})
                    error = str(exc) or exc.__class__.__name__
                    output = f"Tool '{call.name}' failed: {error}"
            turn.tool_calls_used.append(call.name)
            self._telemetry.log_tool_usage(
                turn.session_id,
                turn.user_id,
                call.name,
                call.arguments,
                output,
                int((time.perf_counter() - started) * 1000),
                success=error is None,
                error=error,
            )
            content = output if isinstance(output, str) else json.dumps(output, default=str)
            results.append({"role": "tool", "name": call.name, "tool_call_id": call.call_id, "content": content})
        assistant = {"role": "assistant", "content": round_text, "tool_calls": list(calls)}
        return prompt.extended([assistant] + results)

    def _ai_metadata(self, turn: StreamTurn, usage: Optional[TokenUsage] = None, cancelled: bool = False) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"ai_provider": turn.provider, "model_id": turn.model, "cancelled": cancelled}
        if usage is not None:
            meta["token_usage"] = usage.to_dict()
        if turn.tool_calls_used:
            meta["tool_calls"] = list(turn.tool_calls_used)
        return meta

    def _complete(self, turn: StreamTurn, ai_msg: ChatMessage, usage: Optional[TokenUsage] = None) -> None:
        turn.ai_message_id = ai_msg.message_id
        turn.advance(TurnState.AI_PERSISTED)
        turn.advance(TurnState.COMPLETED)
        outcome = "cancelled" if turn.cancelled else "completed"
        CHAT_TURNS.labels(provider=turn.provider, mode=turn.mode, outcome=outcome).inc()
        self._telemetry.log_ai_response(
            turn.session_id,
            turn.user_id,
            turn.provider,
            turn.model,
            len(ai_msg.content),
            (usage or TokenUsage()).to_dict(),
            function_calls=turn.tool_calls_used,
            success=True,
            user_message_id=turn.user_message_id,
            ai_message_id=ai_msg.message_id,
            cancelled=turn.cancelled,
            duration_ms=turn.elapsed_ms,
        )
        self._hub.publish(
            session_target(turn.session_id),
            "message_complete",
            {
                "sessionId": turn.session_id,
                "userMessageId": turn.user_message_id,
                "aiMessageId": ai_msg.message_id,
                "content": ai_msg.content,
                "provider": turn.provider,
                "model": turn.model,
                "cancelled": turn.cancelled,
            },
        )
        LOG.info(
            "chat_turn_completed",
            extra={"session_id": turn.session_id, "outcome": outcome, "chunks": turn.chunk_count, "ms": turn.elapsed_ms},
        )

    def _fail(self, turn: StreamTurn, exc: OrbitmateError) -> None:
        if turn.is_terminal:
            return
        turn.advance(TurnState.FAILED)
        outcome = "timeout" if isinstance(exc, ProviderTimeoutError) else "failed"
        CHAT_TURNS.labels(provider=turn.provider, mode=turn.mode, outcome=outcome).inc()
        context = {
            "ai_provider": turn.provider,
            "model_id": turn.model,
            "mode": turn.mode,
            "user_message_id": turn.user_message_id,
            "chunk_count": turn.chunk_count,
            "provider_code": getattr(exc, "provider_code", None),
        }
        self._telemetry.log_ai_response(
            turn.session_id,
            turn.user_id,
            turn.provider,
            turn.model,
            len(turn.text),
            function_calls=turn.tool_calls_used,
            success=False,
            error=exc.message,
            user_message_id=turn.user_message_id,
            error_code=exc.code,
        )
        self._telemetry.log_ai_error(turn.session_id, turn.user_id, exc.code, exc.message, context)
        LOG.warning(
            "chat_turn_failed",
            extra={"session_id": turn.session_id, "code": exc.code, "provider": turn.provider, "err": exc.message},
        )
        if turn.user_message_id:
            payload = exc.to_payload()
            self._hub.publish(
                session_target(turn.session_id),
                "message_error",
                {"sessionId": turn.session_id, "userMessageId": turn.user_message_id, **payload},
            )

    # ------------------------------------------------------------------
    # Single-shot turns
    # ------------------------------------------------------------------
    async def _run_single(self, turn: StreamTurn, ctx: _TurnContext) -> TurnResult:
        try:
            prompt = await self._build_prompt(turn, ctx)
            turn.advance(TurnState.GENERATING)
            ctx.deadline = asyncio.get_running_loop().time() + ctx.timeout_s
            gen_options = self._generation_options(ctx)
            adapter = ctx.selection.adapter
            texts: List[str] = []
            usage = TokenUsage()
            rounds = 0
            while True:
                completion: Completion = await self._within(ctx, adapter.generate(prompt, gen_options))
                texts.append(completion.text)
                usage = TokenUsage(
                    usage.input + completion.token_usage.input,
                    usage.output + completion.token_usage.output,
                    usage.total + completion.token_usage.total,
                )
                if not completion.tool_calls or rounds >= self._settings.max_tool_rounds:
                    break
                rounds += 1
                prompt = await self._run_tools(turn, ctx, prompt, completion.tool_calls, completion.text)
            turn.buffer.extend(t for t in texts if t)
            if not turn.text:
                raise empty_response_error(turn.provider)
            ai_msg = await run_in_threadpool(
                self._store.add_message,
                turn.session_id,
                turn.user_id,
                "ai",
                turn.text,
                self._ai_metadata(turn, usage),
            )
            self._complete(turn, ai_msg, usage)
        except OrbitmateError as exc:
            self._fail(turn, exc)
            raise
        except Exception as exc:
            LOG.exception("chat_turn_crashed", extra={"session_id": turn.session_id})
            wrapped = OrbitmateError(f"Unexpected failure: {exc}")
            self._fail(turn, wrapped)
            raise wrapped from exc

        canvas = extract_canvas(ai_msg.content) if ctx.options.special_mode == "canvas" else None
        return TurnResult(
            message=ai_msg.content,
            user_message_id=turn.user_message_id or "",
            ai_message_id=ai_msg.message_id,
            ai_provider=turn.provider,
            model_id=turn.model,
            created_at=ai_msg.created_at,
            token_usage=usage,
            canvas=canvas,
        )

    # ------------------------------------------------------------------
    # Streaming turns
    # ------------------------------------------------------------------
    async def _stream_events(
        self,
        turn: StreamTurn,
        ctx: _TurnContext,
        emit: Callable[[ProtocolEvent], Any],
    ) -> AsyncIterator[Any]:
        if ctx.started or turn.is_terminal:
            return
        ctx.started = True
        try:
            yield emit(ProtocolEvent.ids(turn.user_message_id or ""))
            prompt = await self._build_prompt(turn, ctx)
            turn.advance(TurnState.GENERATING)
            ctx.deadline = asyncio.get_running_loop().time() + ctx.timeout_s
            self._telemetry.log_streaming_status(turn.session_id, turn.user_id, "start")
            gen_options = self._generation_options(ctx)
            adapter = ctx.selection.adapter
            rounds = 0
            while True:
                calls: List[ToolCall] = []
                round_start = turn.chunk_count
                stream = adapter.generate_stream(prompt, gen_options)
                try:
                    while True:
                        try:
                            item = await self._within(ctx, stream.__anext__())
                        except StopAsyncIteration:
                            break
                        if isinstance(item, ToolCallEvent):
                            calls.append(item.call)
                            continue
                        if not item.text:
                            continue
                        if ctx.is_disconnected is not None and await ctx.is_disconnected():
                            turn.cancelled = True
                            break
                        frame = emit(ProtocolEvent.delta(item.text))
                        if turn.state is TurnState.GENERATING:
                            turn.advance(TurnState.STREAMING)
                        turn.buffer.append(item.text)
                        yield frame
                finally:
                    await stream.aclose()
                if turn.cancelled:
                    return
                if not calls or rounds >= self._settings.max_tool_rounds:
                    break
                rounds += 1
                round_text = "".join(turn.buffer[round_start:])
                prompt = await self._run_tools(turn, ctx, prompt, calls, round_text)

            if not turn.text:
                raise empty_response_error(turn.provider)
            ai_msg = await run_in_threadpool(
                self._store.add_message,
                turn.session_id,
                turn.user_id,
                "ai",
                turn.text,
                self._ai_metadata(turn),
            )
            self._telemetry.log_streaming_status(
                turn.session_id, turn.user_id, "complete", turn.chunk_count, len(turn.text)
            )
            self._complete(turn, ai_msg)
            yield emit(ProtocolEvent.end(ai_msg.message_id))
        except OrbitmateError as exc:
            if turn.is_terminal:
                raise
            self._fail(turn, exc)
            yield emit(ProtocolEvent.error(exc.code, exc.to_payload()["message"]))
        except (GeneratorExit, asyncio.CancelledError):
            turn.cancelled = True
            raise
        except Exception as exc:
            LOG.exception("chat_turn_crashed", extra={"session_id": turn.session_id})
            wrapped = OrbitmateError(f"Unexpected failure: {exc}")
            self._fail(turn, wrapped)
            yield emit(ProtocolEvent.error(wrapped.code, wrapped.to_payload()["message"]))
        finally:
            if turn.cancelled and not turn.is_terminal:
                await self._persist_partial(turn)

    async def _abandon(self, turn: StreamTurn, ctx: _TurnContext) -> None:
        if ctx.started or turn.is_terminal:
            return
        ctx.started = True
        turn.cancelled = True
        LOG.info("chat_stream_abandoned", extra={"session_id": turn.session_id})
        await self._persist_partial(turn)

    async def _persist_partial(self, turn: StreamTurn) -> None:
        # The consumer is gone and this task may already be cancelled. The
        # store write runs in its own task and finishes the turn from a done
        # callback, so a cancellation here cannot lose it.
        write = asyncio.ensure_future(
            run_in_threadpool(
                self._store.add_message,
                turn.session_id,
                turn.user_id,
                "ai",
                turn.text,
                self._ai_metadata(turn, cancelled=True),
            )
        )
        self._pending.add(write)
        write.add_done_callback(lambda task: self._finish_partial(turn, task))
        await asyncio.shield(write)

    def _finish_partial(self, turn: StreamTurn, task: "asyncio.Future[ChatMessage]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, OrbitmateError):
            self._fail(turn, exc)
            return
        if exc is not None:
            LOG.error("chat_partial_persist_crashed", extra={"session_id": turn.session_id, "err": str(exc)})
            self._fail(turn, OrbitmateError(f"Unexpected failure: {exc}"))
            return
        if turn.state is TurnState.USER_PERSISTED:
            turn.advance(TurnState.GENERATING)
        self._telemetry.log_streaming_status(
            turn.session_id, turn.user_id, "cancelled", turn.chunk_count, len(turn.text)
        )
        self._complete(turn, task.result())
