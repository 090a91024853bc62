#!/usr/bin/env python3
"""errors.py

Expected, recoverable failures raised by the chat engine.

Every error carries a short machine ``code`` plus a ``category`` from the
taxonomy (auth, rate_limited, forbidden, not_found, conflict, banned, invalid).
Transport layers never format these by hand: Socket.IO handlers return
``err.to_dict()`` as the ack, HTTP routes return it as the JSON body with
``err.http_status``.
"""

from __future__ import annotations

from typing import Any, Dict


class ChatError(Exception):
    category = "error"
    code = "error"
    http_status = 400
    default_message = "Request failed."

    def __init__(self, message: str | None = None, *, code: str | None = None, **details: Any):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "success": False,
            "error": self.code,
            "category": self.category,
            "message": self.message,
        }
        out.update(self.details)
        return out


# ── auth ─────────────────────────────────────────────────────────────
class AuthError(ChatError):
    category = "auth"
    code = "auth_failed"
    http_status = 401
    default_message = "Invalid username or password."


class SessionExpired(AuthError):
    code = "session_expired"
    default_message = "Your session has expired. Please sign in again."


# ── rate limiting ────────────────────────────────────────────────────
class RateLimited(ChatError):
    category = "rate_limited"
    code = "rate_limited"
    http_status = 429
    default_message = "Slow down."

    def __init__(self, remaining_ms: int = 0, message: str | None = None, **details: Any):
        super().__init__(message, remaining_ms=int(max(0, remaining_ms)), **details)

    @property
    def remaining_ms(self) -> int:
        return int(self.details.get("remaining_ms", 0))


class CooldownActive(RateLimited):
    code = "cooldown"
    default_message = "You're sending messages too fast."


class LinkCooldownActive(RateLimited):
    code = "link_cooldown"
    default_message = "You can only post one link every few minutes."


# ── forbidden ────────────────────────────────────────────────────────
class Forbidden(ChatError):
    category = "forbidden"
    code = "forbidden"
    http_status = 403
    default_message = "Not allowed."


class NotOwner(Forbidden):
    code = "not_owner"
    default_message = "Only the group owner can do that."


class NotAuthor(Forbidden):
    code = "not_author"
    default_message = "You can only change your own messages."


class GuestNotAllowed(Forbidden):
    code = "guest_not_allowed"
    default_message = "Guests can't do that. Create an account first."


# ── not found ────────────────────────────────────────────────────────
class NotFound(ChatError):
    category = "not_found"
    code = "not_found"
    http_status = 404
    default_message = "Not found."


# ── conflict ─────────────────────────────────────────────────────────
class Conflict(ChatError):
    category = "conflict"
    code = "conflict"
    http_status = 409
    default_message = "Conflicting request."


class EditWindowExpired(Conflict):
    code = "edit_window_expired"
    default_message = "Messages can only be changed for a short time after sending."


class AlreadyDeleted(Conflict):
    code = "already_deleted"
    default_message = "That message was already deleted."


# ── bans ─────────────────────────────────────────────────────────────
class BannedError(ChatError):
    category = "banned"
    code = "banned"
    http_status = 403
    default_message = "You are banned."

    def __init__(self, scope: str = "identity", until: float | None = None, permanent: bool = False,
                 message: str | None = None):
        super().__init__(message, scope=scope, until=until, permanent=bool(permanent))


# ── invalid input ────────────────────────────────────────────────────
class InvalidRequest(ChatError):
    category = "invalid"
    code = "invalid"
    http_status = 400
    default_message = "Invalid request."


class InsufficientInvites(InvalidRequest):
    code = "insufficient_invites"
    default_message = "Invite at least one other user to create a group."
