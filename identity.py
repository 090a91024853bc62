#!/usr/bin/env python3
"""identity.py

Identity & session store.

Accounts are durable records in the store (``identities`` + a case-insensitive
``usernames`` index). Guests live in memory only and disappear on logout or
once they have had no live connection for ``guest_grace_seconds``.

Session tokens are random hex strings handed to the client once. The store
only ever sees their sha256 digest (the session id), which is also what the
JWT ``sid`` claim carries.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
import time
import uuid
from typing import Dict, List, Optional, Set, Tuple

from errors import AuthError, Conflict, GuestNotAllowed, InvalidRequest, NotFound, SessionExpired
from models import DEFAULT_SETTINGS, Connection, Identity
from security import hash_password, new_session_token, session_id_for_token, verify_password_and_upgrade

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.]{3,20}$")
GUEST_NAME_RE = re.compile(r"^guest\d{4,5}$", re.IGNORECASE)
DISALLOWED_NAME_PATTERNS = (
    re.compile(r"(porn|onlyfans|nude|nsfw|sex|xxx)", re.IGNORECASE),
    re.compile(r"(child|minor|underage)", re.IGNORECASE),
    re.compile(r"(rape|rapist)", re.IGNORECASE),
    re.compile(r"(hitler|nazi)", re.IGNORECASE),
)
MIN_PASSWORD_CHARS = 4
MAX_BIO_CHARS = 180
MAX_MUTE_ENTRIES = 200


def validate_username(username: str) -> str:
    name = (username or "").strip()
    if not USERNAME_RE.match(name):
        raise InvalidRequest(
            "Usernames are 3-20 characters: letters, numbers, underscore or dot.",
            code="invalid_username",
        )
    if any(p.search(name) for p in DISALLOWED_NAME_PATTERNS):
        raise InvalidRequest("That username is not allowed.", code="disallowed_username")
    return name


class IdentityStore:
    def __init__(self, store, policy, moderation, locks, clock=time.time):
        self.store = store
        self.policy = policy
        self.moderation = moderation
        self.locks = locks
        self.clock = clock

        self._lock = threading.RLock()
        self._guests: Dict[str, Identity] = {}
        self._guest_names: Dict[str, str] = {}
        self._guest_left_at: Dict[str, float] = {}
        self._connections: Dict[str, Connection] = {}
        self._by_identity: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, identity_id: str | None) -> Optional[Identity]:
        if not identity_id:
            return None
        with self._lock:
            guest = self._guests.get(identity_id)
        if guest is not None:
            return guest
        rec = self.store.get("identities", identity_id)
        return Identity.from_record(rec) if rec else None

    def require(self, identity_id: str) -> Identity:
        ident = self.get(identity_id)
        if ident is None:
            raise NotFound("Unknown user.", code="unknown_user")
        return ident

    def by_username(self, username: str | None) -> Optional[Identity]:
        key = (username or "").strip().lower()
        if not key:
            return None
        with self._lock:
            gid = self._guest_names.get(key)
            if gid:
                return self._guests.get(gid)
        ident_id = self.store.get("usernames", key)
        return self.get(ident_id) if ident_id else None

    def require_username(self, username: str | None) -> Identity:
        ident = self.by_username(username)
        if ident is None:
            raise NotFound("User not found.", code="unknown_user")
        return ident

    def require_account(self, identity_id: str) -> Identity:
        ident = self.require(identity_id)
        if ident.guest:
            raise GuestNotAllowed()
        return ident

    def _save(self, ident: Identity) -> None:
        if ident.guest:
            with self._lock:
                self._guests[ident.id] = ident
            return
        self.store.put("identities", ident.id, ident.to_record())

    # ------------------------------------------------------------------
    # Login / guest / resume / logout
    # ------------------------------------------------------------------
    def login(self, username: str, password: str, ip: str | None = None) -> Tuple[Identity, str]:
        """Sign in, registering the account on first use of a free username."""
        self.moderation.check_ip(ip)
        username = (username or "").strip()
        password = password or ""
        if not USERNAME_RE.match(username):
            raise InvalidRequest(
                "Usernames are 3-20 characters: letters, numbers, underscore or dot.",
                code="invalid_username",
            )
        if len(password) < MIN_PASSWORD_CHARS:
            raise InvalidRequest(
                f"Password must be at least {MIN_PASSWORD_CHARS} characters.", code="weak_password"
            )
        self.moderation.check_identity(username)

        key = username.lower()
        with self.locks.hold("username:" + key):
            ident_id = self.store.get("usernames", key)
            rec = self.store.get("identities", ident_id) if ident_id else None
            if rec is None:
                ident = self._register(username, password)
            else:
                ident = Identity.from_record(rec)
                ok, upgraded = verify_password_and_upgrade(password, ident.password_hash or "")
                if not ok:
                    raise AuthError()
                if upgraded:
                    ident.password_hash = upgraded
                    self._save(ident)

        return ident, self._issue_session(ident)

    def _register(self, username: str, password: str) -> Identity:
        validate_username(username)
        if GUEST_NAME_RE.match(username):
            raise InvalidRequest("Guest-style names are reserved.", code="reserved_username")
        with self._lock:
            if username.lower() in self._guest_names:
                raise Conflict("That name is in use by a guest right now.", code="username_taken")
        ident = Identity(
            id=uuid.uuid4().hex,
            username=username,
            guest=False,
            created_at=self.clock(),
            password_hash=hash_password(password),
        )
        self._save(ident)
        self.store.put("usernames", ident.key, ident.id)
        logging.info("Registered account %s", username)
        return ident

    def _name_available(self, name: str) -> bool:
        key = name.lower()
        with self._lock:
            if key in self._guest_names:
                return False
        if self.store.get("usernames", key):
            return False
        return not self.moderation.is_banned(name)

    def _generate_guest_name(self) -> str:
        for _ in range(200):
            name = f"Guest{1000 + secrets.randbelow(90000)}"
            if self._name_available(name):
                return name
        raise Conflict("No guest names available, try again.", code="guest_names_exhausted")

    def guest_join(self, requested_name: str | None = None, ip: str | None = None) -> Tuple[Identity, str]:
        self.moderation.check_ip(ip)
        name = (requested_name or "").strip()
        with self._lock:
            usable = False
            if name:
                try:
                    validate_username(name)
                    usable = self._name_available(name)
                except InvalidRequest:
                    usable = False
            if not usable:
                name = self._generate_guest_name()
            ident = Identity(id=uuid.uuid4().hex, username=name, guest=True, created_at=self.clock())
            self._guests[ident.id] = ident
            self._guest_names[ident.key] = ident.id
            # Counts as "disconnected" until a socket attaches.
            self._guest_left_at[ident.id] = self.clock()
        return ident, self._issue_session(ident)

    def _issue_session(self, ident: Identity) -> str:
        token = new_session_token()
        now = self.clock()
        self.store.put(
            "sessions",
            session_id_for_token(token),
            {
                "identity_id": ident.id,
                "guest": ident.guest,
                "created_at": now,
                "expires_at": now + self.policy.session_ttl(ident.guest),
            },
        )
        return token

    def session_identity(self, session_id: str | None) -> Optional[Identity]:
        """Identity behind a live session id, or None."""
        if not session_id:
            return None
        sess = self.store.get("sessions", session_id)
        if not sess or float(sess.get("expires_at") or 0) <= self.clock():
            return None
        return self.get(sess.get("identity_id"))

    def resume(self, token: str | None, ip: str | None = None) -> Identity:
        """Reattach a client by session token. Fails closed."""
        self.moderation.check_ip(ip)
        if not token or not isinstance(token, str):
            raise SessionExpired()
        sid = session_id_for_token(token)
        sess = self.store.get("sessions", sid)
        if not sess:
            raise SessionExpired()
        if float(sess.get("expires_at") or 0) <= self.clock():
            self.store.delete("sessions", sid)
            raise SessionExpired()
        ident = self.get(sess.get("identity_id"))
        if ident is None or bool(sess.get("guest")) != ident.guest:
            self.store.delete("sessions", sid)
            raise SessionExpired()
        if not ident.guest:
            self.moderation.check_identity(ident.username)
        return ident

    def logout(self, token: str | None) -> Optional[Identity]:
        if not token:
            return None
        sid = session_id_for_token(token)
        sess = self.store.get("sessions", sid)
        if not sess:
            return None
        self.store.delete("sessions", sid)
        return self.get(sess.get("identity_id"))

    def revoke_identity(self, identity_id: str) -> int:
        n = 0
        for sid, sess in self.store.items("sessions"):
            if sess.get("identity_id") == identity_id:
                self.store.delete("sessions", sid)
                n += 1
        return n

    def purge_sessions(self, now: float | None = None) -> int:
        now = self.clock() if now is None else now
        n = 0
        for sid, sess in self.store.items("sessions"):
            if float(sess.get("expires_at") or 0) <= now:
                self.store.delete("sessions", sid)
                n += 1
        return n

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def attach(self, connection_id: str, identity: Identity, ip: str | None = None) -> bool:
        """Bind a socket to an identity. Returns True for the identity's first connection."""
        now = self.clock()
        with self._lock:
            old = self._connections.get(connection_id)
            if old is not None and old.identity_id != identity.id:
                self._unbind(connection_id)
            sids = self._by_identity.setdefault(identity.id, set())
            first = not sids
            sids.add(connection_id)
            existing = self._connections.get(connection_id)
            if existing is None:
                self._connections[connection_id] = Connection(
                    connection_id=connection_id,
                    identity_id=identity.id,
                    ip=ip,
                    connected_at=now,
                    last_seen=now,
                )
            self._guest_left_at.pop(identity.id, None)
            return first

    def _unbind(self, connection_id: str) -> Tuple[Optional[Connection], bool]:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None, False
        sids = self._by_identity.get(conn.identity_id)
        last = False
        if sids is not None:
            sids.discard(connection_id)
            if not sids:
                del self._by_identity[conn.identity_id]
                last = True
        if last and conn.identity_id in self._guests:
            self._guest_left_at[conn.identity_id] = self.clock()
        return conn, last

    def detach(self, connection_id: str) -> Tuple[Optional[Connection], bool]:
        """Drop a socket. Returns (connection, was_last_for_identity)."""
        with self._lock:
            return self._unbind(connection_id)

    def connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def touch(self, connection_id: str) -> None:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is not None:
                conn.last_seen = self.clock()

    def connections_of(self, identity_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_identity.get(identity_id, ()))

    def connected_identity_ids(self) -> List[str]:
        with self._lock:
            return list(self._by_identity)

    def connections_from_ip(self, ip: str) -> List[Connection]:
        with self._lock:
            return [c for c in self._connections.values() if c.ip == ip]

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------
    def update_profile(self, identity_id: str, *, settings: dict | None = None,
                       mutes: dict | None = None, bio: str | None = None) -> Identity:
        with self.locks.hold("profile:" + identity_id):
            ident = self.require_account(identity_id)
            if settings is not None:
                if not isinstance(settings, dict):
                    raise InvalidRequest("settings must be an object.")
                for k, v in settings.items():
                    if k in DEFAULT_SETTINGS:
                        ident.settings[k] = bool(v)
            if mutes is not None:
                if not isinstance(mutes, dict):
                    raise InvalidRequest("mutes must be an object.")
                if "global" in mutes:
                    ident.mutes["global"] = bool(mutes.get("global"))
                for k in ("dms", "groups"):
                    if k in mutes:
                        vals = mutes.get(k) or []
                        if not isinstance(vals, list):
                            raise InvalidRequest(f"mutes.{k} must be a list.")
                        ident.mutes[k] = list(dict.fromkeys(str(x) for x in vals))[:MAX_MUTE_ENTRIES]
            if bio is not None:
                ident.bio = str(bio).strip()[:MAX_BIO_CHARS]
            self._save(ident)
            return ident

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def delete_account(self, identity_id: str) -> Optional[Identity]:
        ident = self.get(identity_id)
        if ident is None:
            return None
        if ident.guest:
            self.destroy_guest(identity_id)
            return ident
        with self.locks.hold("username:" + ident.key):
            self.store.delete("identities", ident.id)
            if self.store.get("usernames", ident.key) == ident.id:
                self.store.delete("usernames", ident.key)
        return ident

    def destroy_guest(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            ident = self._guests.pop(identity_id, None)
            if ident is None:
                return None
            self._guest_names.pop(ident.key, None)
            self._guest_left_at.pop(identity_id, None)
        self.revoke_identity(identity_id)
        return ident

    def purge_guests(self, now: float | None = None) -> List[Identity]:
        """Destroy guests that have had no connection for the grace period."""
        now = self.clock() if now is None else now
        grace = self.policy.guest_grace_seconds
        with self._lock:
            stale = [gid for gid, left in self._guest_left_at.items()
                     if gid not in self._by_identity and now - left >= grace]
        out = []
        for gid in stale:
            ident = self.destroy_guest(gid)
            if ident is not None:
                out.append(ident)
        return out
