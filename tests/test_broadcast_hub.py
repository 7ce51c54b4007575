import asyncio
import contextlib

import pytest

from src.orbitmate.services.broadcast_hub import BroadcastHub, QueueChannel, session_target, user_target

from tests.utils import RecordingMirror


async def _received(channel: QueueChannel, wait: float = 0.05):
    frames = []

    async def send(frame):
        frames.append(frame)

    task = asyncio.create_task(channel.drain(send))
    await asyncio.sleep(wait)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    return frames


@pytest.mark.asyncio
async def test_publish_reaches_every_member_of_a_target():
    hub = BroadcastHub()
    a, b, c = hub.register("a"), hub.register("b"), hub.register("c")
    hub.join("a", session_target("s1"))
    hub.join("b", session_target("s1"))
    hub.join("c", session_target("s2"))

    delivered = hub.publish(session_target("s1"), "new_message", {"content": "hi"})

    assert delivered == 2
    for channel in (a, b):
        frames = await _received(channel)
        assert [f["event"] for f in frames] == ["new_message"]
        assert frames[0]["data"] == {"content": "hi"}
        assert frames[0]["target"] == "session:s1"
        assert frames[0]["timestamp"].endswith("Z")
    assert await _received(c) == []


@pytest.mark.asyncio
async def test_publish_preserves_order_and_honours_exclude():
    hub = BroadcastHub()
    a, b = hub.register("a"), hub.register("b")
    for cid in ("a", "b"):
        hub.join(cid, session_target("s1"))

    hub.publish(session_target("s1"), "one", {})
    hub.publish(session_target("s1"), "two", {}, exclude="a")
    hub.publish(session_target("s1"), "three", {})

    assert [f["event"] for f in await _received(a)] == ["one", "three"]
    assert [f["event"] for f in await _received(b)] == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_frames_for_a_left_target_are_dropped():
    hub = BroadcastHub()
    a = hub.register("a")
    hub.join("a", session_target("s1"))
    hub.publish(session_target("s1"), "queued", {})
    hub.leave("a", session_target("s1"))

    assert await _received(a) == []
    assert hub.member_count(session_target("s1")) == 0


@pytest.mark.asyncio
async def test_overflowing_channel_is_pruned_without_blocking_others():
    hub = BroadcastHub(queue_size=2)
    slow, fast = hub.register("slow"), hub.register("fast")
    hub.join("slow", session_target("s1"))
    hub.join("fast", session_target("s1"))
    fast_frames = []

    async def send(frame):
        fast_frames.append(frame)

    fast_task = asyncio.create_task(fast.drain(send))
    counts = []
    for i in range(4):
        counts.append(hub.publish(session_target("s1"), "tick", {"i": i}))
        await asyncio.sleep(0)

    assert slow.closed is True
    assert hub.channel("slow") is None
    assert counts[0] == 2 and counts[-1] == 1
    await asyncio.sleep(0.02)
    fast_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await fast_task
    assert [f["data"]["i"] for f in fast_frames] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_identify_moves_user_target_and_online_users():
    hub = BroadcastHub()
    hub.register("a")
    hub.register("b")
    hub.identify("a", "alice")
    hub.identify("b", "bob")
    hub.join("a", session_target("s1"))
    hub.join("b", session_target("s1"))

    assert hub.online_users("s1") == ["alice", "bob"]

    hub.identify("a", "carol")
    assert hub.member_count(user_target("alice")) == 0
    assert hub.member_count(user_target("carol")) == 1
    assert hub.online_users("s1") == ["bob", "carol"]


@pytest.mark.asyncio
async def test_disconnect_returns_targets_and_closes_channel():
    hub = BroadcastHub()
    channel = hub.register("a")
    hub.identify("a", "alice")
    hub.join("a", session_target("s1"))

    targets = hub.disconnect("a")

    assert targets == {user_target("alice"), session_target("s1")}
    assert channel.closed is True
    assert hub.publish(session_target("s1"), "x", {}) == 0
    assert hub.disconnect("a") == set()


@pytest.mark.asyncio
async def test_send_bypasses_targets():
    hub = BroadcastHub()
    channel = hub.register("a")

    assert hub.send("a", "online_users", {"users": []}) is True
    frames = await _received(channel)
    assert frames[0]["event"] == "online_users"
    assert frames[0]["target"] is None
    assert hub.send("missing", "x", {}) is False


@pytest.mark.asyncio
async def test_stats_and_mirror():
    mirror = RecordingMirror()
    hub = BroadcastHub(mirror=mirror)
    hub.register("a")
    hub.register("b")
    hub.identify("a", "alice")
    hub.join("a", session_target("s1"))
    hub.join("b", session_target("s1"))

    hub.publish(session_target("s1"), "user_typing", {"isTyping": True})

    stats = hub.stats()
    assert stats["total_connections"] == 2
    assert stats["identified_users"] == 1
    assert stats["active_sessions"] == 1
    assert stats["sessions"] == {"session:s1": 2}
    assert stats["users"] == {"user:alice": 1}
    assert mirror.published == [("session:s1", "user_typing", {"isTyping": True})]


@pytest.mark.asyncio
async def test_publish_to_empty_target_still_mirrors():
    mirror = RecordingMirror()
    hub = BroadcastHub(mirror=mirror)

    assert hub.publish(user_target("nobody"), "notice", {"a": 1}) == 0
    assert mirror.events("notice") == [{"a": 1}]
