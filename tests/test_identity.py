"""Tests for accounts, guests, sessions and connection bookkeeping."""

import pytest

from errors import AuthError, BannedError, Conflict, GuestNotAllowed, InvalidRequest, SessionExpired
from security import legacy_hash_password, session_id_for_token


def test_first_login_registers_then_verifies(service):
    """An unused username is registered on first login; later logins check the password."""
    ident, token = service.login("Alice", "hunter22")
    assert not ident.guest
    again, token2 = service.login("alice", "hunter22")
    assert again.id == ident.id
    assert again.username == "Alice"
    assert token != token2
    with pytest.raises(AuthError):
        service.login("ALICE", "wrong-password")


def test_session_token_is_stored_as_digest(service, store):
    ident, token = service.login("alice", "hunter22")
    assert store.get("sessions", token) is None
    sess = store.get("sessions", session_id_for_token(token))
    assert sess["identity_id"] == ident.id


@pytest.mark.parametrize("name", ["ab", "has space", "x" * 21, "Guest1234"])
def test_bad_or_reserved_usernames(service, name):
    with pytest.raises(InvalidRequest):
        service.login(name, "hunter22")


def test_short_password_rejected(service):
    with pytest.raises(InvalidRequest) as exc:
        service.login("alice", "abc")
    assert exc.value.code == "weak_password"


def test_legacy_hash_is_upgraded_on_login(service, store):
    ident, _ = service.login("alice", "hunter22")
    rec = store.get("identities", ident.id)
    rec["password_hash"] = legacy_hash_password("hunter22")
    store.put("identities", ident.id, rec)

    service.login("alice", "hunter22")
    assert store.get("identities", ident.id)["password_hash"].startswith("$argon2")


def test_guest_names(service):
    """Guests get a GuestNNNN name unless they ask for a free, valid one."""
    g1, _ = service.guest_join()
    assert g1.guest and g1.username.startswith("Guest")
    g2, _ = service.guest_join("visitor")
    assert g2.username == "visitor"
    g3, _ = service.guest_join("visitor")
    assert g3.username != "visitor"


def test_guest_name_blocks_registration(service):
    service.guest_join("visitor")
    with pytest.raises(Conflict) as exc:
        service.login("Visitor", "hunter22")
    assert exc.value.code == "username_taken"


def test_resume_and_expiry(service, clock):
    ident, token = service.login("alice", "hunter22")
    assert service.resume(token).id == ident.id
    clock.advance(31 * 86400)
    with pytest.raises(SessionExpired):
        service.resume(token)
    with pytest.raises(SessionExpired):
        service.resume("not-a-token")
    with pytest.raises(SessionExpired):
        service.resume(None)


def test_resume_refused_for_banned_account(service):
    _ident, token = service.login("alice", "hunter22")
    service.moderation.strike("alice")
    service.moderation.strike("alice")
    with pytest.raises(BannedError):
        service.resume(token)


def test_logout_revokes_session(service):
    _ident, token = service.login("alice", "hunter22")
    assert service.logout(token).username == "alice"
    with pytest.raises(SessionExpired):
        service.resume(token)
    assert service.logout(token) is None


def test_guest_logout_destroys_guest(service):
    guest, token = service.guest_join("visitor")
    service.connect("sid-1", guest, "10.0.0.2")
    service.logout(token)
    assert service.identities.get(guest.id) is None
    assert service.identities.connections_of(guest.id) == []
    assert service.presence.status_of(guest.id) is None


def test_attach_detach_tracks_last_connection(service):
    ident, _ = service.login("alice", "hunter22")
    ids = service.identities
    assert ids.attach("s1", ident, "1.2.3.4") is True
    assert ids.attach("s2", ident, "1.2.3.4") is False
    assert ids.connections_of(ident.id) == ["s1", "s2"]
    assert ids.detach("s1")[1] is False
    conn, last = ids.detach("s2")
    assert conn.identity_id == ident.id and last is True
    assert ids.detach("s2") == (None, False)


def test_disconnected_guests_are_purged_after_grace(service, clock):
    guest, _ = service.guest_join()
    service.connect("s1", guest)
    service.detach("s1")
    clock.advance(30)
    assert service.identities.purge_guests() == []
    clock.advance(31)
    assert [g.id for g in service.identities.purge_guests()] == [guest.id]
    assert service.identities.by_username(guest.username) is None


def test_update_profile_is_accounts_only(service):
    ident, _ = service.login("alice", "hunter22")
    updated = service.identities.update_profile(
        ident.id, settings={"showBlocked": 1, "unknown": True}, mutes={"global": True}, bio="  hi  "
    )
    assert updated.settings["showBlocked"] is True
    assert "unknown" not in updated.settings
    assert updated.mutes["global"] is True
    assert service.identities.get(ident.id).bio == "hi"

    guest, _ = service.guest_join()
    with pytest.raises(GuestNotAllowed):
        service.identities.update_profile(guest.id, bio="x")
