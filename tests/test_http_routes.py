"""Tests for the HTTP auth routes and the moderation bot API."""

import pytest

from permissions import BOT_SECRET_HEADER
from threads import GLOBAL_THREAD_ID

BOT_HEADERS = {BOT_SECRET_HEADER: "bot-secret", "X-Tonkotsu-Bot-Name": "pytest"}


def _login(client, username="alice", password="hunter22"):
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()


def _bearer(body):
    return {"Authorization": f"Bearer {body['access_token']}"}


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True


def test_login_issues_session_and_access_token(client):
    body = _login(client)
    assert body["success"] is True
    assert body["username"] == "alice" and body["guest"] is False
    assert body["token"] and body["access_token"]

    me = client.get("/api/me", headers=_bearer(body))
    assert me.status_code == 200
    assert me.get_json()["user"]["username"] == "alice"


def test_bad_password_is_401(client):
    _login(client)
    resp = client.post("/api/auth/login", json={"username": "alice", "password": "nope-nope"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "auth_failed"


def test_invalid_username_is_400(client):
    resp = client.post("/api/auth/login", json={"username": "a", "password": "hunter22"})
    assert resp.status_code == 400
    assert resp.get_json()["category"] == "invalid"


def test_me_requires_token(client):
    assert client.get("/api/me").status_code == 401


def test_logout_revokes_access_token(client):
    body = _login(client)
    out = client.post("/api/auth/logout", json={"token": body["token"]})
    assert out.get_json()["username"] == "alice"
    assert client.get("/api/me", headers=_bearer(body)).status_code == 401
    resume = client.post("/api/auth/resume", json={"token": body["token"]})
    assert resume.status_code == 401
    assert resume.get_json()["error"] == "session_expired"


def test_guest_and_resume(client):
    guest = client.post("/api/auth/guest", json={"name": "visitor"}).get_json()
    assert guest["guest"] is True and guest["username"] == "visitor"
    resumed = client.post("/api/auth/resume", json={"token": guest["token"]})
    assert resumed.status_code == 200
    assert resumed.get_json()["user"]["id"] == guest["user"]["id"]


def test_history_and_presence(client, chat):
    body = _login(client)
    alice = chat.identities.by_username("alice")
    chat.send(alice, GLOBAL_THREAD_ID, "hello http")

    hist = client.get("/api/threads/global/history?limit=10", headers=_bearer(body))
    assert hist.status_code == 200
    assert [m["content"] for m in hist.get_json()["messages"]] == ["hello http"]

    missing = client.get("/api/threads/g:nope/history", headers=_bearer(body))
    assert missing.status_code == 404

    pres = client.get("/api/presence", headers=_bearer(body))
    assert pres.get_json()["online_count"] == 0


# ── bot API ────────────────────────────────────────────────────────────


def test_bot_requires_secret(client):
    assert client.get("/api/bot/reports").status_code == 403
    wrong = {BOT_SECRET_HEADER: "guess"}
    assert client.post("/api/bot/announce", json={"text": "hi"}, headers=wrong).status_code == 403


def test_bot_disabled_without_secret(client, settings):
    settings["bot_shared_secret"] = ""
    resp = client.get("/api/bot/reports", headers=BOT_HEADERS)
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "bot_api_disabled"


def test_bot_delete_user(client, chat):
    _login(client, "mallory")
    resp = client.post("/api/bot/deleteUser", json={"username": "mallory"}, headers=BOT_HEADERS)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True and body["strikes"] == 1 and body["permanent"] is False
    assert chat.identities.by_username("mallory") is None

    missing = client.post("/api/bot/deleteUser", json={"username": "ghost"}, headers=BOT_HEADERS)
    assert missing.status_code == 404
    blank = client.post("/api/bot/deleteUser", json={}, headers=BOT_HEADERS)
    assert blank.status_code == 400


def test_bot_announce(client, chat):
    resp = client.post("/api/bot/announce", json={"text": "Restarting soon"}, headers=BOT_HEADERS)
    assert resp.status_code == 200
    msg = resp.get_json()["message"]
    assert msg["kind"] == "announcement"
    assert chat.log.history(GLOBAL_THREAD_ID)[-1].id == msg["id"]
    empty = client.post("/api/bot/announce", json={"text": "   "}, headers=BOT_HEADERS)
    assert empty.status_code == 400


def test_bot_ban_ip_blocks_login(client):
    resp = client.post("/api/bot/banIp", json={"ip": "127.0.0.1", "seconds": 60}, headers=BOT_HEADERS)
    assert resp.status_code == 200
    assert resp.get_json()["ip"] == "127.0.0.1"

    refused = client.post("/api/auth/login", json={"username": "alice", "password": "hunter22"})
    assert refused.status_code == 403
    assert refused.get_json()["category"] == "banned"

    bad = client.post("/api/bot/banIp", json={"ip": "nope"}, headers=BOT_HEADERS)
    assert bad.status_code == 400


def test_bot_reports(client, chat):
    _login(client, "alice")
    _login(client, "bob")
    alice = chat.identities.by_username("alice")
    bob = chat.identities.by_username("bob")
    msg, _ = chat.send(alice, GLOBAL_THREAD_ID, "rude words")
    chat.report(bob, msg.id, "spam")

    resp = client.get("/api/bot/reports?limit=5", headers=BOT_HEADERS)
    rows = resp.get_json()["reports"]
    assert len(rows) == 1
    assert rows[0]["reporter"]["username"] == "bob"
    assert rows[0]["reason"] == "spam"


@pytest.mark.parametrize("path", ["/api/me", "/api/presence", "/api/threads/global/history"])
def test_garbage_bearer_is_rejected(client, path):
    assert client.get(path, headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
