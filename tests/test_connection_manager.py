import asyncio
import json

import pytest

from wanderchat.models import User
from wanderchat.schemas.events import build_event
from wanderchat.utils.presence import PresenceRegistry
from wanderchat.utils.websocket_manager import (
    ClientSession,
    ConnectionManager,
    SessionState,
    SessionStateError,
)


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.closed_with = None

    async def send_text(self, text):
        # Yield so concurrent publishers get a chance to interleave
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.closed_with = code

    @property
    def types(self):
        return [event["type"] for event in self.sent]


@pytest.fixture
def manager():
    return ConnectionManager(PresenceRegistry())


def connect(manager, user_id, fail=False):
    session = ClientSession(FakeWebSocket(fail=fail))
    session.transition(SessionState.AUTHENTICATING)
    session.transition(SessionState.ACTIVE)
    manager.register(session, User(id=user_id, username=f"user{user_id}", first_name=f"User{user_id}"))
    return session


def test_session_state_machine():
    session = ClientSession(FakeWebSocket())
    assert session.state == SessionState.CONNECTING

    with pytest.raises(SessionStateError):
        session.transition(SessionState.ACTIVE)

    session.transition(SessionState.AUTHENTICATING)
    session.transition(SessionState.ACTIVE)
    session.transition(SessionState.CLOSED)
    with pytest.raises(SessionStateError):
        session.transition(SessionState.ACTIVE)


def test_register_tracks_presence(manager):
    first = connect(manager, 1)
    second = connect(manager, 1)

    assert manager.presence.connection_count(1) == 2
    assert {s.id for s in manager.sessions_for_user(1)} == {first.id, second.id}
    assert first.user["username"] == "user1"

    assert manager.unregister(first) == (1, False)
    assert manager.unregister(second) == (1, True)
    assert not manager.is_user_online(1)


@pytest.mark.anyio
async def test_publish_reaches_only_subscribers(manager):
    alice, bob, carol = connect(manager, 1), connect(manager, 2), connect(manager, 3)
    manager.subscribe(alice, 10)
    manager.subscribe(bob, 10)

    delivered = await manager.publish_to_chat(10, [build_event("user_typing", {"chat_id": 10})], exclude_user_id=1)

    assert delivered == 1
    assert alice.websocket.types == []
    assert bob.websocket.types == ["user_typing"]
    assert carol.websocket.types == []


@pytest.mark.anyio
async def test_concurrent_publishes_keep_per_chat_order(manager):
    sessions = [connect(manager, user_id) for user_id in (1, 2, 3)]
    for session in sessions:
        manager.subscribe(session, 10)

    def burst(tag):
        return [build_event("new_message", {"id": f"{tag}-1"}), build_event("chat_updated", {"id": f"{tag}-2"})]

    await asyncio.gather(*(manager.publish_to_chat(10, burst(tag)) for tag in ("a", "b", "c")))

    orders = [[event["data"]["id"] for event in session.websocket.sent] for session in sessions]
    assert orders[0] == orders[1] == orders[2]
    # Each publish is delivered as an uninterrupted block
    for i in range(0, 6, 2):
        assert orders[0][i].split("-")[0] == orders[0][i + 1].split("-")[0]


@pytest.mark.anyio
async def test_publish_new_message_reaches_subscribers_only(manager):
    alice, bob, carol = connect(manager, 1), connect(manager, 2), connect(manager, 3)
    for session in (alice, bob, carol):
        manager.subscribe(session, 10)
    manager.unsubscribe(carol, 10)
    message = {
        "id": 5,
        "sender": {"id": 1},
        "content": "hi",
        "message_type": "text",
        "created_at": "2024-05-01T09:00:00",
    }

    await manager.publish_new_message(10, message)

    assert alice.websocket.types == ["new_message", "chat_updated"]
    assert bob.websocket.types == ["new_message", "chat_updated"]
    assert bob.websocket.sent[1]["data"]["last_message"]["content"] == "hi"
    assert carol.websocket.types == []
    assert 10 not in carol.chat_ids


@pytest.mark.anyio
async def test_chat_locks_are_dropped_once_idle(manager):
    alice, bob = connect(manager, 1), connect(manager, 2)
    manager.subscribe(alice, 10)
    manager.subscribe(bob, 10)

    await manager.publish_to_chat(10, [build_event("chat_updated", {})])
    assert 10 in manager._chat_locks

    manager.unsubscribe(alice, 10)
    assert 10 in manager._chat_locks
    manager.unregister(bob)
    assert 10 not in manager._chat_locks

    assert await manager.publish_to_chat(11, [build_event("chat_updated", {})]) == 0
    assert manager._chat_locks == {}


@pytest.mark.anyio
async def test_lock_survives_unsubscribe_while_a_publish_is_pending(manager):
    alice = connect(manager, 1)
    manager.subscribe(alice, 10)
    lock = manager.chat_lock(10)

    async with lock:
        pending = asyncio.ensure_future(manager.publish_to_chat(10, [build_event("chat_updated", {})]))
        await asyncio.sleep(0)
        manager.unsubscribe(alice, 10)
        assert manager._chat_locks[10] is lock

    assert await pending == 0
    assert manager._chat_locks == {}


@pytest.mark.anyio
async def test_notification_goes_to_every_session_of_the_user(manager):
    phone, laptop, other = connect(manager, 1), connect(manager, 1), connect(manager, 2)

    count = await manager.send_notification_to_user(1, {"title": "New buddy request"})

    assert count == 2
    assert phone.websocket.sent[0]["type"] == "notification"
    assert phone.websocket.sent[0]["data"] == {"title": "New buddy request"}
    assert "timestamp" in phone.websocket.sent[0]
    assert laptop.websocket.types == ["notification"]
    assert other.websocket.types == []
    assert await manager.send_notification_to_user(99, {"title": "nobody"}) == 0


@pytest.mark.anyio
async def test_failed_send_is_not_counted(manager):
    broken = connect(manager, 1, fail=True)
    healthy = connect(manager, 2)
    manager.subscribe(broken, 10)
    manager.subscribe(healthy, 10)

    delivered = await manager.publish_to_chat(10, [build_event("message_deleted", {"message_id": 1})])

    assert delivered == 1
    assert healthy.websocket.types == ["message_deleted"]


@pytest.mark.anyio
async def test_close_channel_and_unregister_drop_subscriptions(manager):
    alice, bob = connect(manager, 1), connect(manager, 2)
    manager.subscribe(alice, 10)
    manager.subscribe(bob, 10)
    manager.subscribe(bob, 11)

    manager.close_channel(10)
    assert 10 not in alice.chat_ids
    assert await manager.publish_to_chat(10, [build_event("chat_updated", {})]) == 0

    manager.unregister(bob)
    assert manager.subscribers(11) == []


@pytest.mark.anyio
async def test_shutdown_closes_sessions_and_clears_presence(manager):
    alice = connect(manager, 1)

    await manager.shutdown()

    assert alice.state == SessionState.CLOSED
    assert alice.websocket.closed_with == 1001
    assert manager.sessions == {}
    assert manager.presence.online_users() == []
