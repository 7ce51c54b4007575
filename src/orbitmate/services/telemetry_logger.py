"""Structured AI telemetry written as JSON lines.

Each entry is one JSON object per line: ``{timestamp, level, event, ...payload}``.
Entries are handed to a single writer thread through a queue so append order
matches call order and request handlers never wait on disk I/O. Failures are
reported on the ``orbitmate.telemetry`` diagnostic logger and never raised to
the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import threading
import time
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

_diag = logging.getLogger("orbitmate.telemetry")

_STOP = object()

AI_REQUEST_START = "AI_REQUEST_START"
AI_RESPONSE_COMPLETE = "AI_RESPONSE_COMPLETE"
SYSTEM_PROMPT = "SYSTEM_PROMPT"
TOOL_USAGE = "TOOL_USAGE"
STREAMING = "STREAMING"
AI_ERROR = "AI_ERROR"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TelemetryLogger:
    def __init__(
        self,
        log_dir: str | os.PathLike[str],
        file_name: str = "ai.log",
        retention_days: int = 7,
        recent_buffer: int = 200,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._dir = Path(log_dir)
        self._path = self._dir / file_name
        self._retention_s = retention_days * 24 * 60 * 60
        self._clock = clock or _utc_now
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=recent_buffer)
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._io_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def open(self) -> None:
        if self.is_open:
            return
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            self._path.touch(exist_ok=True)
        except OSError as exc:
            _diag.error("telemetry_open_failed", extra={"path": str(self._path), "err": str(exc)})
        self._thread = threading.Thread(target=self._run, name="orbitmate-telemetry", daemon=True)
        self._thread.start()

    def flush(self) -> None:
        """Block until every queued entry has been written."""
        if self.is_open:
            self._queue.join()

    def close(self) -> None:
        if not self.is_open:
            return
        self._queue.put(_STOP)
        assert self._thread is not None
        self._thread.join()
        self._thread = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write_line(item)
            except Exception as exc:  # noqa: BLE001 - the writer thread must outlive a bad entry
                _diag.error("telemetry_writer_error", extra={"err": repr(exc)})
            finally:
                self._queue.task_done()

    def _write_line(self, line: str) -> None:
        # Lone surrogates from provider payloads are written as \uXXXX escapes,
        # which keeps the line valid JSON.
        try:
            with self._io_lock:
                with self._path.open("a", encoding="utf-8", errors="backslashreplace") as fh:
                    fh.write(line + "\n")
        except (OSError, ValueError) as exc:
            _diag.error("telemetry_write_failed", extra={"path": str(self._path), "err": repr(exc)})

    def record(self, level: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Fire-and-forget; never raises into the caller."""
        try:
            entry: Dict[str, Any] = {
                "timestamp": self._clock().isoformat().replace("+00:00", "Z"),
                "level": level,
                "event": event,
            }
            for key, value in (payload or {}).items():
                if key not in entry:
                    entry[key] = value
            line = json.dumps(entry, ensure_ascii=False, default=str)
        except Exception as exc:  # noqa: BLE001 - telemetry must not break a turn
            _diag.error("telemetry_serialize_failed", extra={"event": event, "err": str(exc)})
            return
        self._recent.append(json.loads(line))
        _diag.debug("%s %s", level, event)
        if self.is_open:
            self._queue.put(line)
        else:
            self._write_line(line)

    def recent_buffer(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._recent)[-limit:]

    def recent(self, lines: int = 100, filter: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read the tail of the active log file.

        ``filter`` matches case-insensitively against the event name or level.
        Unparseable lines come back as ``{"raw": line}``.
        """
        self.flush()
        try:
            with self._io_lock:
                content = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            _diag.warning("telemetry_read_failed", extra={"path": str(self._path), "err": str(exc)})
            return []
        raw_lines = [line for line in content.splitlines() if line.strip()]
        needle = filter.lower() if filter else None
        out: List[Dict[str, Any]] = []
        for line in raw_lines:
            try:
                entry = json.loads(line)
            except ValueError:
                if needle is None:
                    out.append({"raw": line})
                continue
            if needle is not None:
                event = str(entry.get("event", "")).lower()
                level = str(entry.get("level", "")).lower()
                if needle not in event and needle not in level:
                    continue
            out.append(entry)
        if lines <= 0:
            return []
        return out[-lines:]

    def rotate_if_stale(self, now: Optional[float] = None) -> Optional[Path]:
        """Archive the active file when it has had no writes for the retention window."""
        now = time.time() if now is None else now
        try:
            with self._io_lock:
                if not self._path.exists():
                    return None
                if now - self._path.stat().st_mtime <= self._retention_s:
                    return None
                backup = self._dir / f"ai-backup-{int(now * 1000)}.log"
                os.replace(self._path, backup)
                self._path.touch()
        except OSError as exc:
            _diag.error("telemetry_rotate_failed", extra={"path": str(self._path), "err": str(exc)})
            return None
        _diag.info("telemetry_rotated", extra={"backup": backup.name})
        return backup

    async def rotation_loop(self, interval: float) -> None:
        while True:
            await asyncio.to_thread(self.rotate_if_stale)
            await asyncio.sleep(interval)

    # Event recorders

    def log_ai_request(
        self,
        session_id: str,
        user_id: str,
        provider: str,
        model: str,
        message_length: int,
        system_prompt_length: int,
        tools: Optional[List[str]] = None,
    ) -> None:
        tools = list(tools or [])
        self.record(
            "INFO",
            AI_REQUEST_START,
            {
                "session_id": session_id,
                "user_id": user_id,
                "ai_provider": provider,
                "model_id": model,
                "message_length": message_length,
                "system_prompt_length": system_prompt_length,
                "tools_available": len(tools),
                "tools_list": tools,
            },
        )

    def log_ai_response(
        self,
        session_id: str,
        user_id: str,
        provider: str,
        model: str,
        response_length: int,
        tokens: Optional[Dict[str, int]] = None,
        function_calls: Optional[List[str]] = None,
        success: bool = True,
        error: Optional[str] = None,
        **extra: Any,
    ) -> None:
        tokens = tokens or {}
        payload = {
            "session_id": session_id,
            "user_id": user_id,
            "ai_provider": provider,
            "model_id": model,
            "response_length": response_length,
            "input_tokens": tokens.get("input", 0),
            "output_tokens": tokens.get("output", 0),
            "total_tokens": tokens.get("total", 0),
            "function_calls_used": function_calls or None,
            "success": success,
            "error": error,
        }
        payload.update(extra)
        self.record("INFO" if success else "ERROR", AI_RESPONSE_COMPLETE, payload)

    def log_system_prompt(
        self,
        session_id: str,
        user_id: str,
        prompt_type: str,
        prompt_length: int,
        personalized: bool = False,
        context_type: Optional[str] = None,
    ) -> None:
        self.record(
            "DEBUG",
            SYSTEM_PROMPT,
            {
                "session_id": session_id,
                "user_id": user_id,
                "prompt_type": prompt_type,
                "prompt_length": prompt_length,
                "personalized": personalized,
                "context_type": context_type,
            },
        )

    def log_tool_usage(
        self,
        session_id: str,
        user_id: str,
        tool_name: str,
        parameters: Dict[str, Any],
        result: Any,
        execution_time_ms: int,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        if isinstance(result, dict):
            summary = f"{len(result)} properties"
        else:
            summary = f"{len(str(result))} chars"
        self.record(
            "INFO" if success else "ERROR",
            TOOL_USAGE,
            {
                "session_id": session_id,
                "user_id": user_id,
                "tool_name": tool_name,
                "parameters": json.dumps(parameters, default=str),
                "result_summary": summary,
                "execution_time_ms": execution_time_ms,
                "success": success,
                "error": error,
            },
        )

    def log_streaming_status(
        self,
        session_id: str,
        user_id: str,
        streaming_event: str,
        chunk_count: Optional[int] = None,
        total_characters: Optional[int] = None,
    ) -> None:
        self.record(
            "DEBUG",
            STREAMING,
            {
                "session_id": session_id,
                "user_id": user_id,
                "streaming_event": streaming_event,
                "chunk_count": chunk_count,
                "total_characters": total_characters,
            },
        )

    def log_ai_error(
        self,
        session_id: str,
        user_id: str,
        error_type: str,
        error_message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.record(
            "ERROR",
            AI_ERROR,
            {
                "session_id": session_id,
                "user_id": user_id,
                "error_type": error_type,
                "error_message": error_message,
                "context": dict(context or {}),
            },
        )
