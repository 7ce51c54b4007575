import asyncio
import json
import os
import time
from datetime import UTC, datetime

import pytest

from src.orbitmate.services.telemetry_logger import AI_ERROR, AI_REQUEST_START, TOOL_USAGE, TelemetryLogger


def _fixed_clock():
    return datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def test_entries_are_appended_in_call_order(tmp_path):
    logger = TelemetryLogger(tmp_path, clock=_fixed_clock)
    logger.open()
    for i in range(50):
        logger.record("INFO", "TICK", {"i": i})
    logger.close()

    lines = logger.path.read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    assert [e["i"] for e in entries] == list(range(50))
    assert entries[0]["timestamp"] == "2026-01-02T03:04:05Z"
    assert entries[0]["level"] == "INFO"
    assert entries[0]["event"] == "TICK"


def test_record_without_open_writes_synchronously(tmp_path):
    logger = TelemetryLogger(tmp_path / "nested")
    (tmp_path / "nested").mkdir()
    logger.record("DEBUG", "EARLY", {"ok": True})
    assert json.loads(logger.path.read_text(encoding="utf-8"))["event"] == "EARLY"


def test_unserializable_payload_never_raises(tmp_path):
    logger = TelemetryLogger(tmp_path)
    logger.open()
    circular = {}
    circular["self"] = circular
    logger.record("INFO", "BROKEN", circular)
    logger.record("INFO", "AFTER", {"value": object()})
    logger.close()

    entries = [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]
    assert [e["event"] for e in entries] == ["AFTER"]
    assert entries[0]["value"].startswith("<object object")


def test_lone_surrogate_does_not_stop_the_writer(tmp_path):
    bad = json.loads('"bad \\ud800"')
    logger = TelemetryLogger(tmp_path)
    logger.open()
    logger.record("ERROR", AI_ERROR, {"error_message": bad})
    logger.flush()
    assert logger.is_open

    logger.record("ERROR", AI_ERROR, {"error_message": bad})
    logger.record("INFO", "AFTER", {})
    logger.close()

    entries = [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]
    assert [e["event"] for e in entries] == [AI_ERROR, AI_ERROR, "AFTER"]
    assert entries[0]["error_message"] == bad


def test_lone_surrogate_without_open_never_raises(tmp_path):
    logger = TelemetryLogger(tmp_path)
    logger.record("ERROR", AI_ERROR, {"error_message": json.loads('"\\udfff"')})
    assert json.loads(logger.path.read_text(encoding="utf-8"))["event"] == AI_ERROR


def test_payload_cannot_override_envelope(tmp_path):
    logger = TelemetryLogger(tmp_path)
    logger.record("INFO", "REAL", {"event": "FAKE", "level": "DEBUG", "x": 1})
    entry = logger.recent_buffer(1)[0]
    assert entry["event"] == "REAL"
    assert entry["level"] == "INFO"
    assert entry["x"] == 1


def test_event_recorders_shape_entries(tmp_path):
    logger = TelemetryLogger(tmp_path)
    logger.open()
    logger.log_ai_request("s1", "u1", "ollama", "gemma3:4b", 5, 100, ["lookup"])
    logger.log_tool_usage("s1", "u1", "lookup", {"q": "x"}, {"a": 1, "b": 2}, 12)
    logger.log_ai_error("s1", "u1", "AI_TIMEOUT", "late", {"mode": "stream"})
    logger.close()

    request, tool, error = logger.recent(10)
    assert request["event"] == AI_REQUEST_START
    assert request["tools_available"] == 1 and request["tools_list"] == ["lookup"]
    assert tool["event"] == TOOL_USAGE
    assert tool["result_summary"] == "2 properties"
    assert tool["parameters"] == '{"q": "x"}'
    assert error["event"] == AI_ERROR
    assert error["level"] == "ERROR"
    assert error["context"] == {"mode": "stream"}


def test_recent_filters_and_keeps_raw_lines(tmp_path):
    logger = TelemetryLogger(tmp_path)
    logger.open()
    logger.record("INFO", "AI_REQUEST_START", {})
    logger.record("ERROR", "AI_ERROR", {})
    logger.flush()
    with logger.path.open("a", encoding="utf-8") as fh:
        fh.write("not json\n")
    logger.record("INFO", "AI_RESPONSE_COMPLETE", {})

    everything = logger.recent(10)
    assert {"raw": "not json"} in everything
    assert len(everything) == 4
    assert [e["event"] for e in logger.recent(10, filter="error")] == ["AI_ERROR"]
    assert [e["event"] for e in logger.recent(10, filter="ai_re")] == ["AI_REQUEST_START", "AI_RESPONSE_COMPLETE"]
    assert len(logger.recent(1)) == 1
    assert logger.recent(0) == []
    logger.close()


def test_recent_on_missing_file_is_empty(tmp_path):
    logger = TelemetryLogger(tmp_path / "absent")
    assert logger.recent() == []


def test_rotation_archives_stale_file(tmp_path):
    logger = TelemetryLogger(tmp_path, retention_days=7)
    logger.record("INFO", "OLD", {})
    old = time.time() - 8 * 24 * 3600
    os.utime(logger.path, (old, old))

    backup = logger.rotate_if_stale()

    assert backup is not None and backup.name.startswith("ai-backup-")
    assert json.loads(backup.read_text(encoding="utf-8"))["event"] == "OLD"
    assert logger.path.exists()
    assert logger.path.read_text(encoding="utf-8") == ""


def test_fresh_file_is_not_rotated(tmp_path):
    logger = TelemetryLogger(tmp_path)
    logger.record("INFO", "NEW", {})
    assert logger.rotate_if_stale() is None
    assert list(tmp_path.glob("ai-backup-*.log")) == []


@pytest.mark.asyncio
async def test_rotation_loop_rotates_on_first_pass(tmp_path):
    logger = TelemetryLogger(tmp_path, retention_days=1)
    logger.record("INFO", "OLD", {})
    old = time.time() - 2 * 24 * 3600
    os.utime(logger.path, (old, old))

    task = asyncio.create_task(logger.rotation_loop(60))
    for _ in range(50):
        if list(tmp_path.glob("ai-backup-*.log")):
            break
        await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(list(tmp_path.glob("ai-backup-*.log"))) == 1
