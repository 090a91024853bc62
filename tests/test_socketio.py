"""Socket.IO event tests using Flask-SocketIO's test client."""

import pytest

from threads import GLOBAL_THREAD_ID


def _names(client):
    return [pkt["name"] for pkt in client.get_received()]


def _events(client, name):
    # Flask-SocketIO's test client stores "message"/"json" payloads unwrapped.
    return [pkt["args"] if name in ("message", "json") else pkt["args"][0]
            for pkt in client.get_received() if pkt["name"] == name]


@pytest.fixture
def signed_in(app, socketio, chat):
    """Open a socket already signed in through the connect handshake."""
    clients = []

    def _open(username, password="hunter22"):
        _ident, token = chat.login(username, password)
        c = socketio.test_client(app, auth={"token": token})
        clients.append(c)
        return c

    yield _open
    for c in clients:
        if c.is_connected():
            c.disconnect()


def test_anonymous_socket_gets_presence_only(app, socketio):
    client = socketio.test_client(app)
    assert client.is_connected()
    assert _names(client) == ["presence"]
    ack = client.emit("send", {"thread_id": GLOBAL_THREAD_ID, "content": "hi"}, callback=True)
    assert ack["success"] is False and ack["error"] == "not_signed_in"
    client.disconnect()


def test_handshake_token_signs_in(signed_in, chat):
    client = signed_in("alice")
    names = _names(client)
    assert "hello" in names and "inbox" in names
    alice = chat.identities.by_username("alice")
    assert chat.presence.status_of(alice.id) == "online"


def test_bad_handshake_token_reports_session_expired(app, socketio):
    client = socketio.test_client(app, auth={"token": "bogus"})
    assert client.is_connected()
    assert "session_expired" in _names(client)
    client.disconnect()


def test_login_event(app, socketio, chat):
    client = socketio.test_client(app)
    ack = client.emit("login", {"username": "alice", "password": "hunter22"}, callback=True)
    assert ack["success"] is True
    assert ack["user"]["username"] == "alice"
    assert ack["token"]
    bad = client.emit("login", {"username": "alice", "password": "wrong-pass"}, callback=True)
    assert bad["error"] == "auth_failed" and bad["category"] == "auth"
    client.disconnect()


def test_send_reaches_other_sockets(signed_in):
    alice, bob = signed_in("alice"), signed_in("bob")
    bob.get_received()
    ack = alice.emit("send", {"thread_id": GLOBAL_THREAD_ID, "content": "hello", "client_id": "c-1"},
                     callback=True)
    assert ack["success"] is True and ack["duplicate"] is False
    got = _events(bob, "message")
    assert [m["content"] for m in got] == ["hello"]

    dup = alice.emit("send", {"thread_id": GLOBAL_THREAD_ID, "content": "hello", "client_id": "c-1"},
                     callback=True)
    assert dup["duplicate"] is True and dup["message"]["id"] == ack["message"]["id"]


def test_cooldown_ack_carries_remaining_ms(signed_in):
    alice = signed_in("alice")
    alice.emit("send", {"thread_id": GLOBAL_THREAD_ID, "content": "one"}, callback=True)
    ack = alice.emit("send", {"thread_id": GLOBAL_THREAD_ID, "content": "two"}, callback=True)
    assert ack["success"] is False
    assert ack["error"] == "cooldown" and ack["category"] == "rate_limited"
    assert ack["remaining_ms"] == 3000


def test_history_and_edit(signed_in, clock):
    alice = signed_in("alice")
    sent = alice.emit("send", {"thread_id": GLOBAL_THREAD_ID, "content": "helo"}, callback=True)
    mid = sent["message"]["id"]
    edited = alice.emit("edit", {"message_id": mid, "content": "hello"}, callback=True)
    assert edited["message"]["content"] == "hello"
    hist = alice.emit("history", {"thread_id": GLOBAL_THREAD_ID}, callback=True)
    assert [m["content"] for m in hist["messages"]] == ["hello"]

    clock.advance(61)
    late = alice.emit("delete", {"message_id": mid}, callback=True)
    assert late["error"] == "edit_window_expired" and late["category"] == "conflict"


def test_dm_and_groups_over_socket(signed_in):
    alice, bob = signed_in("alice"), signed_in("bob")
    dm = alice.emit("dm:open", {"username": "bob"}, callback=True)
    assert dm["success"] is True and dm["thread_id"].startswith("dm:")

    created = alice.emit("group:create", {"name": "Crew", "invitees": ["bob"]}, callback=True)
    gid = created["group"]["id"]
    assert any(p["group"]["id"] == gid for p in _events(bob, "group_invite"))
    joined = bob.emit("group:accept", {"group_id": gid}, callback=True)
    assert joined["group"]["active"] is True
    listed = bob.emit("groups:list", {}, callback=True)
    assert [g["id"] for g in listed["groups"]] == [gid]


def test_friend_and_block_events(signed_in):
    alice, bob = signed_in("alice"), signed_in("bob")
    req = alice.emit("friend:request", {"username": "bob"}, callback=True)
    assert req["status"] == "pending"
    acc = bob.emit("friend:accept", {"username": "alice"}, callback=True)
    assert [p["username"] for p in acc["friends"]["friends"]] == ["alice"]
    blocked = bob.emit("block", {"username": "alice"}, callback=True)
    assert blocked["changed"] is True
    listed = bob.emit("blocked:list", {}, callback=True)
    assert [p["username"] for p in listed["blocked"]] == ["alice"]


def test_status_and_disconnect_update_presence(signed_in, chat):
    alice = signed_in("alice")
    ack = alice.emit("status:set", {"status": "dnd"}, callback=True)
    assert ack["status"] == "dnd"
    bad = alice.emit("status:set", {"status": "away"}, callback=True)
    assert bad["error"] == "invalid_status"
    ident = chat.identities.by_username("alice")
    alice.disconnect()
    assert chat.presence.status_of(ident.id) is None
    assert chat.identities.connections_of(ident.id) == []


def test_guest_event_and_restrictions(app, socketio):
    client = socketio.test_client(app)
    ack = client.emit("guest", {"name": "visitor"}, callback=True)
    assert ack["user"]["guest"] is True
    denied = client.emit("friend:request", {"username": "visitor"}, callback=True)
    assert denied["category"] in ("forbidden", "invalid")
    client.disconnect()


def test_login_event_is_throttled_per_ip(app, socketio, settings, chat):
    chat.login("alice", "hunter22")
    settings["rate_limit_login"] = "3 per minute"
    client = socketio.test_client(app)
    errors = []
    for _ in range(5):
        ack = client.emit("login", {"username": "alice", "password": "wrong-pass"}, callback=True)
        errors.append(ack["error"])
    assert errors[0] == "auth_failed"
    assert errors[3:] == ["rate_limited", "rate_limited"]
    limited = client.emit("login", {"username": "alice", "password": "hunter22"}, callback=True)
    assert limited["category"] == "rate_limited" and limited["remaining_ms"] > 0
    # Guests have their own bucket.
    assert client.emit("guest", {"name": "visitor"}, callback=True)["success"] is True
    client.disconnect()


def test_socket_throttle_can_be_switched_off(app, socketio, settings):
    settings["rate_limit_login"] = "1 per minute"
    settings["socket_auth_rate_limits_enabled"] = False
    client = socketio.test_client(app)
    for _ in range(3):
        ack = client.emit("login", {"username": "alice", "password": "hunter22"}, callback=True)
        assert ack["success"] is True
    client.disconnect()
