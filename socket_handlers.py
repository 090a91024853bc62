#!/usr/bin/env python3
"""
socket_handlers.py

Socket.IO wiring for the Tonkotsu chat server.

A socket is anonymous until it signs in (``login`` / ``guest`` / ``resume``
events, or a session token in the connect handshake). The binding between
socket ids and identities lives in the ChatService identity store, not in
Flask-SocketIO rooms, so one identity can hold many sockets.

Handlers are split by concern under realtime/*.py; each exposes
``register(socketio, settings, ctx)`` and pulls its helpers from ``ctx``.
"""

import functools
import logging

from flask import request
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from errors import AuthError, ChatError


class SocketEvents:
    """Event sink that routes ChatService notifications to live sockets."""

    def __init__(self, socketio, identities):
        self.socketio = socketio
        self.identities = identities

    def deliver(self, identity_id, event, payload):
        for sid in self.identities.connections_of(identity_id):
            self.socketio.emit(event, payload, to=sid)

    def broadcast(self, event, payload):
        self.socketio.emit(event, payload)

    def disconnect_connection(self, connection_id, payload):
        self.socketio.emit("force_logout", payload, to=connection_id)
        self.socketio.server.disconnect(connection_id, namespace="/")

    def disconnect_identity(self, identity_id, payload):
        for sid in self.identities.connections_of(identity_id):
            self.disconnect_connection(sid, payload)


def register_socketio_handlers(socketio, settings, service):
    """Bind the service to this Socket.IO server and register every event handler."""

    service.bind_events(SocketEvents(socketio, service.identities))

    def _client_ip() -> str | None:
        xff = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
        if xff and settings.get("trust_forwarded_for", False):
            return xff
        return (request.remote_addr or "").strip() or None

    def _ok(**payload):
        out = {"success": True}
        out.update(payload)
        return out

    def _current_identity():
        """Identity bound to the calling socket, or AuthError."""
        sid = request.sid
        conn = service.identities.connection(sid)
        ident = service.identities.get(conn.identity_id) if conn else None
        if ident is None:
            raise AuthError("Sign in first.", code="not_signed_in")
        service.identities.touch(sid)
        return ident

    def _guarded(fn):
        """Turn ChatError into an error ack; anything else is logged and reported as internal."""

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except ChatError as e:
                return e.to_dict()
            except Exception:
                logging.exception("Socket.IO handler %s failed", fn.__name__)
                return {"success": False, "error": "internal", "category": "internal",
                        "message": "Something went wrong."}

        return wrapper

    def _identity_from_handshake(auth):
        """Resolve (identity, token) from the connect handshake, if it carries credentials."""
        token = auth.get("token") if isinstance(auth, dict) else None
        if token:
            return service.resume(token, _client_ip()), token

        header = request.headers.get("Authorization") or ""
        if header.lower().startswith("bearer "):
            try:
                claims = decode_token(header[7:].strip())
            except (JWTExtendedException, PyJWTError):
                return None, None
            return service.identities.session_identity(claims.get("sid")), None
        return None, None

    def _data(data) -> dict:
        return data if isinstance(data, dict) else {}

    # ───────────────────────────────────────────────────────────────────
    # Register split handler modules (see realtime/*.py)
    # ───────────────────────────────────────────────────────────────────
    from types import SimpleNamespace
    ctx = SimpleNamespace(
        service=service,
        client_ip=_client_ip,
        ok=_ok,
        current_identity=_current_identity,
        guarded=_guarded,
        identity_from_handshake=_identity_from_handshake,
        data=_data,
    )
    from realtime import session, messaging, groups, social
    session.register(socketio, settings, ctx)
    messaging.register(socketio, settings, ctx)
    groups.register(socketio, settings, ctx)
    social.register(socketio, settings, ctx)
    return ctx
