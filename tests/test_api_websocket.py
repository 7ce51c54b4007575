def _join(ws, session_id, user_id):
    ws.send_json({"event": "join_session", "data": {"sessionId": session_id, "userId": user_id}})
    frame = ws.receive_json()
    assert frame["event"] == "join_session_success"
    assert frame["data"] == {"sessionId": session_id, "userId": user_id}
    return frame


def test_join_notifies_other_members_and_lists_users(client):
    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
        _join(alice, "s1", "alice")
        _join(bob, "s1", "bob")

        joined = alice.receive_json()
        assert joined["event"] == "user_joined"
        assert joined["data"] == {"sessionId": "s1", "userId": "bob"}
        assert joined["target"] == "session:s1"

        bob.send_json({"event": "get_online_users", "data": {"sessionId": "s1"}})
        online = bob.receive_json()
        assert online["event"] == "online_users"
        assert online["data"]["users"] == ["alice", "bob"]


def test_typing_and_leave_are_relayed(client):
    with client.websocket_connect("/ws") as alice:
        _join(alice, "s1", "alice")
        with client.websocket_connect("/ws") as bob:
            _join(bob, "s1", "bob")
            assert alice.receive_json()["event"] == "user_joined"

            bob.send_json({"event": "typing_start", "data": {"sessionId": "s1"}})
            typing = alice.receive_json()
            assert typing["event"] == "user_typing"
            assert typing["data"] == {"sessionId": "s1", "userId": "bob", "isTyping": True}

        left = alice.receive_json()
        assert left["event"] == "user_left"
        assert left["data"]["userId"] == "bob"


def test_bad_frames_get_error_replies(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["data"]["code"] == "INVALID_INPUT"

        ws.send_json({"data": {}})
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "join_session", "data": {"sessionId": "s1"}})
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "dance", "data": {"sessionId": "s1"}})
        error = ws.receive_json()
        assert error["event"] == "error"
        assert "dance" in error["data"]["message"]


def test_status_and_admin_broadcasts(client):
    with client.websocket_connect("/ws") as ws:
        _join(ws, "s1", "alice")

        status = client.get("/ws/status").json()
        assert status["status"] == "success"
        assert status["data"]["total_connections"] == 1
        assert status["data"]["sessions"] == {"session:s1": 1}

        resp = client.post("/ws/broadcast/session/s1", json={"event": "notice", "data": {"text": "maintenance"}})
        assert resp.json() == {"target": "session:s1", "event": "notice", "delivered": 1}
        frame = ws.receive_json()
        assert frame["event"] == "notice" and frame["data"] == {"text": "maintenance"}

        resp = client.post("/ws/send/user/alice", json={"event": "direct", "data": {"n": 1}})
        assert resp.json()["delivered"] == 1
        assert ws.receive_json()["target"] == "user:alice"

        assert client.post("/ws/send/user/nobody", json={"event": "direct"}).json()["delivered"] == 0
        assert client.post("/ws/broadcast/session/s1", json={"event": ""}).status_code == 400


def test_chat_turn_is_broadcast_to_session_members(client, mirror):
    sid = client.post("/sessions", json={"user_id": "u1"}).json()["session_id"]
    with client.websocket_connect("/ws") as ws:
        _join(ws, sid, "watcher")

        resp = client.post(f"/sessions/{sid}/messages", json={"message": "hello", "user_id": "u1"})

        new_message = ws.receive_json()
        assert new_message["event"] == "new_message"
        assert new_message["data"]["content"] == "hello"
        assert new_message["data"]["messageId"] == resp.json()["user_message_id"]
        complete = ws.receive_json()
        assert complete["event"] == "message_complete"
        assert complete["data"]["aiMessageId"] == resp.json()["ai_message_id"]
        assert complete["data"]["cancelled"] is False
    assert [e for _, e, _ in mirror.published if e == "new_message"]


def test_writer_task_is_finished_when_the_socket_closes(client, monkeypatch):
    from src.orbitmate.api.routers import websocket as websocket_router

    real_pump = websocket_router._pump
    stopped = []

    async def _pump(channel, websocket):
        try:
            await real_pump(channel, websocket)
        finally:
            stopped.append(channel.channel_id)

    monkeypatch.setattr(websocket_router, "_pump", _pump)

    with client.websocket_connect("/ws") as ws:
        _join(ws, "s1", "alice")

    assert len(stopped) == 1
    assert client.get("/ws/status").json()["data"]["total_connections"] == 0
