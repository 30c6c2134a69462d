from wanderchat.utils.presence import PresenceRegistry


def test_user_is_online_while_any_session_is_live():
    presence = PresenceRegistry()

    assert presence.register(1, "a") is True
    assert presence.register(1, "b") is False
    assert presence.is_online(1)
    assert presence.connection_count(1) == 2
    assert presence.sessions_for(1) == {"a", "b"}

    assert presence.unregister("a") == (1, False)
    assert presence.is_online(1)
    assert presence.unregister("b") == (1, True)
    assert not presence.is_online(1)
    assert presence.connection_count(1) == 0


def test_unknown_session_is_ignored():
    presence = PresenceRegistry()
    presence.register(1, "a")

    assert presence.unregister("nope") is None
    assert presence.unregister("a") == (1, True)
    assert presence.unregister("a") is None


def test_online_users_and_clear():
    presence = PresenceRegistry()
    presence.register(3, "c")
    presence.register(1, "a")
    presence.register(1, "b")

    assert presence.online_users() == [1, 3]

    presence.clear()
    assert presence.online_users() == []
    assert presence.sessions_for(1) == set()
    assert presence.unregister("a") is None


def test_sessions_for_returns_a_copy():
    presence = PresenceRegistry()
    presence.register(1, "a")

    presence.sessions_for(1).add("injected")

    assert presence.sessions_for(1) == {"a"}
