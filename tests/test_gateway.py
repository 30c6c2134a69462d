"""
End-to-end websocket tests.

Every websocket opened by the TestClient runs on its own event loop thread, so
each test waits for a session to answer before driving the next action.
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth_headers, token_for
from wanderchat.models import User
from wanderchat.services.message_service import MessageService
from wanderchat.utils.websocket_manager import connection_manager


def ws_url(user):
    return f"/ws?token={token_for(user)}"


def receive_until(ws, event_type, limit=10):
    """Read events until one of ``event_type`` arrives."""
    for _ in range(limit):
        event = ws.receive_json()
        if event["type"] == event_type:
            return event
    raise AssertionError(f"no {event_type} event received")


def sync(ws):
    """Round-trip a no-op event so everything the session queued earlier has been processed."""
    ws.send_json({"type": "sync"})
    events = []
    while True:
        event = ws.receive_json()
        if event["type"] == "error" and event["data"]["message"] == "Unknown message type: sync":
            return events
        events.append(event)


def open_chat(client, user, other):
    return client.post("/chats", json={"participant_id": other.id}, headers=auth_headers(user)).json()["data"]["id"]


def test_invalid_token_is_refused_before_accept(client, make_user):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=not-a-token"):
            pass

    assert exc.value.code == 1008
    assert connection_manager.presence.online_users() == []
    assert connection_manager.sessions == {}


def test_missing_token_is_refused(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass

    assert exc.value.code == 1008


def test_bearer_header_is_accepted(client, make_user):
    alice = make_user("alice")

    with client.websocket_connect("/ws", headers=auth_headers(alice)) as ws:
        confirmed = ws.receive_json()

    assert confirmed["type"] == "connection_confirmed"
    assert confirmed["data"]["user_id"] == alice.id


def test_connect_subscribes_to_chats_and_tracks_presence(client, db, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = open_chat(client, alice, bob)

    with client.websocket_connect(ws_url(alice)) as ws:
        confirmed = ws.receive_json()
        assert confirmed["type"] == "connection_confirmed"
        assert confirmed["data"]["chat_ids"] == [chat_id]
        assert "timestamp" in confirmed
        sync(ws)

        assert connection_manager.presence.is_online(alice.id)
        db.expire_all()
        assert db.get(User, alice.id).is_online is True

        presence = client.get(f"/presence/{alice.id}", headers=auth_headers(bob)).json()["data"]
        assert presence["is_online"] is True
        assert presence["connection_count"] == 1

    assert not connection_manager.presence.is_online(alice.id)
    db.expire_all()
    stored = db.get(User, alice.id)
    assert stored.is_online is False
    assert stored.last_seen is not None


def test_direct_chat_end_to_end(client, db, make_user, befriend):
    alice, bob = make_user("alice"), make_user("bob")
    befriend(alice, bob)
    chat_id = open_chat(client, alice, bob)

    with client.websocket_connect(ws_url(bob)) as ws_bob:
        receive_until(ws_bob, "connection_confirmed")
        sync(ws_bob)

        with client.websocket_connect(ws_url(alice)) as ws_alice:
            receive_until(ws_alice, "connection_confirmed")
            sync(ws_alice)
            status = receive_until(ws_bob, "user_status_changed")
            assert status["data"] == {"user_id": alice.id, "is_online": True, "last_seen": None}

            ws_alice.send_json({"type": "send_message", "data": {"chat_id": chat_id, "content": "hi"}})
            own_copy = receive_until(ws_alice, "new_message")
            assert receive_until(ws_alice, "chat_updated")["data"]["chat_id"] == chat_id

            delivered = receive_until(ws_bob, "new_message")
            assert receive_until(ws_bob, "chat_updated")["data"]["last_message"]["content"] == "hi"
            message_id = delivered["data"]["id"]
            assert own_copy["data"]["id"] == message_id
            assert delivered["data"]["content"] == "hi"
            assert [r["user_id"] for r in delivered["data"]["delivered_to"]] == [bob.id]

            ws_bob.send_json({"type": "message_read", "data": {"message_id": message_id, "chat_id": chat_id}})
            receipt = receive_until(ws_alice, "message_read_receipt")
            assert receipt["data"]["message_id"] == message_id
            assert receipt["data"]["user_id"] == bob.id
            sync(ws_bob)

            deleted = client.request(
                "DELETE", f"/messages/{message_id}", json={"delete_for_everyone": True}, headers=auth_headers(alice)
            )
            assert deleted.status_code == 200
            assert receive_until(ws_alice, "message_deleted")["data"]["message_id"] == message_id
            assert receive_until(ws_bob, "message_deleted")["data"]["message_id"] == message_id

    for user in (alice, bob):
        history = client.get(f"/messages/{chat_id}", headers=auth_headers(user)).json()["data"]
        assert history["messages"] == []


def test_group_chat_online_and_offline_members(client, make_user, befriend):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    befriend(alice, bob)
    befriend(alice, carol)
    befriend(bob, carol)
    group_id = client.post(
        "/chats/group",
        json={"name": "Trip", "participant_ids": [bob.id, carol.id]},
        headers=auth_headers(alice),
    ).json()["data"]["id"]

    with client.websocket_connect(ws_url(alice)) as ws_alice:
        receive_until(ws_alice, "connection_confirmed")
        sync(ws_alice)
        with client.websocket_connect(ws_url(bob)) as ws_bob:
            receive_until(ws_bob, "connection_confirmed")
            sync(ws_bob)
            sync(ws_alice)

            ws_alice.send_json({"type": "send_message", "data": {"chat_id": group_id, "content": "Boarding!"}})
            message = receive_until(ws_bob, "new_message")["data"]
            sync(ws_alice)

            assert [r["user_id"] for r in message["delivered_to"]] == [bob.id]

            history = client.get(f"/messages/{group_id}", headers=auth_headers(carol)).json()["data"]
            assert [m["content"] for m in history["messages"][0]["messages"]] == ["Boarding!"]

            # Carol comes online and the missed delivery is reconciled
            with client.websocket_connect(ws_url(carol)) as ws_carol:
                receive_until(ws_carol, "connection_confirmed")
                sync(ws_carol)
                receipt = receive_until(ws_alice, "message_delivered_receipt")
                assert receipt["data"]["message_id"] == message["id"]
                assert receipt["data"]["chat_id"] == group_id
                assert receipt["data"]["user_id"] == carol.id
                assert receipt["data"]["delivered_at"]


def test_failed_session_setup_leaves_user_offline(client, db, make_user, monkeypatch):
    alice, bob = make_user("alice"), make_user("bob")
    open_chat(client, alice, bob)

    def unavailable(self, user_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(MessageService, "reconcile_deliveries", unavailable)

    with client.websocket_connect(ws_url(alice)) as ws:
        assert ws.receive_json()["type"] == "connection_confirmed"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()

    assert exc.value.code == 1011
    assert connection_manager.presence.online_users() == []
    assert connection_manager.sessions == {}
    assert connection_manager.channels == {}
    db.expire_all()
    assert db.get(User, alice.id).is_online is False


def test_presence_survives_until_last_session_closes(client, db, make_user):
    alice, bob = make_user("alice"), make_user("bob")

    with client.websocket_connect(ws_url(bob)) as ws_bob:
        receive_until(ws_bob, "connection_confirmed")
        sync(ws_bob)

        with client.websocket_connect(ws_url(alice)) as phone:
            receive_until(phone, "connection_confirmed")
            sync(phone)
            assert receive_until(ws_bob, "user_status_changed")["data"]["is_online"] is True

            with client.websocket_connect(ws_url(alice)) as laptop:
                receive_until(laptop, "connection_confirmed")
                sync(laptop)
                assert connection_manager.presence.connection_count(alice.id) == 2
                # A second session does not announce the user again
                assert sync(ws_bob) == []

            assert connection_manager.presence.is_online(alice.id)
            assert sync(ws_bob) == []

        offline = receive_until(ws_bob, "user_status_changed")
        assert offline["data"]["user_id"] == alice.id
        assert offline["data"]["is_online"] is False
        assert offline["data"]["last_seen"] is not None

    db.expire_all()
    assert db.get(User, alice.id).is_online is False
    assert connection_manager.presence.online_users() == []


def test_typing_goes_to_other_subscribers_only(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = open_chat(client, alice, bob)

    with client.websocket_connect(ws_url(bob)) as ws_bob:
        receive_until(ws_bob, "connection_confirmed")
        sync(ws_bob)
        with client.websocket_connect(ws_url(alice)) as ws_alice:
            receive_until(ws_alice, "connection_confirmed")
            sync(ws_alice)
            sync(ws_bob)

            ws_alice.send_json({"type": "typing", "data": {"chat_id": chat_id}})
            typing = receive_until(ws_bob, "user_typing")
            ws_alice.send_json({"type": "stop_typing", "data": {"chat_id": chat_id}})
            stopped = receive_until(ws_bob, "user_stop_typing")

            assert typing["data"] == {"chat_id": chat_id, "user_id": alice.id, "username": "alice"}
            assert stopped["data"]["user_id"] == alice.id
            assert sync(ws_alice) == []


def test_errors_go_back_to_the_sender(client, make_user):
    alice, bob, eve = make_user("alice"), make_user("bob"), make_user("eve")
    chat_id = open_chat(client, alice, bob)

    with client.websocket_connect(ws_url(eve)) as ws:
        receive_until(ws, "connection_confirmed")
        sync(ws)

        ws.send_text("{not json")
        assert receive_until(ws, "error")["data"]["message"] == "Invalid JSON format"

        ws.send_json({"type": "teleport", "data": {}})
        assert receive_until(ws, "error")["data"]["message"] == "Unknown message type: teleport"

        ws.send_json({"type": "send_message", "data": {"content": "no chat id"}})
        invalid = receive_until(ws, "error")["data"]
        assert invalid["message"] == "Invalid event data"
        assert invalid["event"] == "send_message"

        ws.send_json({"type": "send_message", "data": {"chat_id": chat_id, "content": "let me in"}})
        assert receive_until(ws, "error")["data"]["message"] == "Chat not found"

        ws.send_json({"type": "join_chat", "data": {"chat_id": chat_id}})
        assert receive_until(ws, "error")["data"]["message"] == "Chat not found"

        ws.send_json({"type": "typing", "data": {"chat_id": chat_id}})
        assert receive_until(ws, "error")["data"]["message"] == "Chat not found"


def test_join_and_leave_chat(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")

    with client.websocket_connect(ws_url(alice)) as ws:
        receive_until(ws, "connection_confirmed")
        sync(ws)
        chat_id = open_chat(client, alice, bob)

        ws.send_json({"type": "leave_chat", "data": {"chat_id": chat_id}})
        assert receive_until(ws, "left_chat")["data"] == {"chat_id": chat_id}
        assert connection_manager.subscribers(chat_id) == []

        ws.send_json({"type": "join_chat", "data": {"chat_id": chat_id}})
        assert receive_until(ws, "joined_chat")["data"] == {"chat_id": chat_id}
        assert [session.user_id for session in connection_manager.subscribers(chat_id)] == [alice.id]


def test_left_chat_receives_no_further_events(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = open_chat(client, alice, bob)

    with client.websocket_connect(ws_url(bob)) as ws_bob:
        receive_until(ws_bob, "connection_confirmed")
        sync(ws_bob)

        ws_bob.send_json({"type": "leave_chat", "data": {"chat_id": chat_id}})
        receive_until(ws_bob, "left_chat")

        sent = client.post(f"/messages/{chat_id}", json={"content": "still there?"}, headers=auth_headers(alice))
        assert sent.status_code == 201
        assert sync(ws_bob) == []
        assert connection_manager.subscribers(chat_id) == []

        # Still a participant, so typing is allowed without joining again
        ws_bob.send_json({"type": "typing", "data": {"chat_id": chat_id}})
        assert sync(ws_bob) == []

        ws_bob.send_json({"type": "join_chat", "data": {"chat_id": chat_id}})
        receive_until(ws_bob, "joined_chat")
        client.post(f"/messages/{chat_id}", json={"content": "welcome back"}, headers=auth_headers(alice))
        assert receive_until(ws_bob, "new_message")["data"]["content"] == "welcome back"


def test_rest_writes_fan_out_to_live_sessions(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")

    with client.websocket_connect(ws_url(bob)) as ws_bob:
        receive_until(ws_bob, "connection_confirmed")
        sync(ws_bob)

        # The chat is created after Bob connected; his session is subscribed to it
        chat_id = open_chat(client, alice, bob)
        sent = client.post(f"/messages/{chat_id}", json={"content": "over REST"}, headers=auth_headers(alice))
        message_id = sent.json()["data"]["id"]
        assert [r["user_id"] for r in sent.json()["data"]["delivered_to"]] == [bob.id]

        assert receive_until(ws_bob, "new_message")["data"]["content"] == "over REST"
        assert receive_until(ws_bob, "chat_updated")["data"]["chat_id"] == chat_id

        client.put(f"/messages/edit/{message_id}", json={"content": "edited over REST"}, headers=auth_headers(alice))
        assert receive_until(ws_bob, "message_edited")["data"]["content"] == "edited over REST"

        client.delete(f"/chats/{chat_id}", headers=auth_headers(alice))
        assert receive_until(ws_bob, "chat_deleted")["data"]["chat_id"] == chat_id
        assert connection_manager.subscribers(chat_id) == []


def test_rest_mark_read_notifies_sender(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    chat_id = open_chat(client, alice, bob)
    message_id = client.post(f"/messages/{chat_id}", json={"content": "seen?"}, headers=auth_headers(alice)).json()["data"]["id"]

    with client.websocket_connect(ws_url(alice)) as ws_alice:
        receive_until(ws_alice, "connection_confirmed")
        sync(ws_alice)

        client.put(f"/messages/{chat_id}/read", json={"message_ids": [message_id]}, headers=auth_headers(bob))

        receipt = receive_until(ws_alice, "message_read_receipt")
        assert receipt["data"]["message_id"] == message_id
        assert receipt["data"]["user_id"] == bob.id


def test_online_users_endpoint(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")

    with client.websocket_connect(ws_url(alice)) as ws:
        receive_until(ws, "connection_confirmed")
        sync(ws)
        online = client.get("/presence", headers=auth_headers(bob)).json()["data"]

    assert online == {"online_users": [alice.id], "count": 1}
