#!/usr/bin/env python3
"""permissions.py

Request guards for the Tonkotsu HTTP API.

This module provides:
  - require_identity: access-JWT guard that resolves the live session's identity
  - require_bot_secret: shared-secret guard for the moderation bot endpoints
"""

from __future__ import annotations

import functools
import logging
from typing import Callable

from flask import current_app, g, jsonify, request
from flask_jwt_extended import get_jwt, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from security import secrets_match

BOT_SECRET_HEADER = "X-Tonkotsu-Bot-Secret"


def _safe_verify_jwt() -> dict | None:
    """Return the access JWT claims if present/valid, else None."""
    try:
        verify_jwt_in_request()
    except (JWTExtendedException, PyJWTError):
        return None
    return get_jwt()


def require_identity(func: Callable) -> Callable:
    """Decorator: require a valid access JWT whose session is still live.

    The resolved Identity is available as ``g.identity`` and the session id
    as ``g.session_id``.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        claims = _safe_verify_jwt()
        if not claims:
            return jsonify({"success": False, "error": "auth_failed", "category": "auth"}), 401
        service = current_app.config["TONKOTSU_SERVICE"]
        ident = service.identities.session_identity(claims.get("sid"))
        if ident is None:
            return jsonify({"success": False, "error": "session_expired", "category": "auth"}), 401
        g.identity = ident
        g.session_id = claims.get("sid")
        return func(*args, **kwargs)

    return wrapper


def require_bot_secret(settings: dict) -> Callable:
    """Decorator factory: require the configured bot shared secret.

    The secret is read from ``settings`` on every request so a reloaded
    config takes effect without a restart. With no secret configured the
    bot endpoints are disabled (503).
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            expected = str(settings.get("bot_shared_secret") or "").strip()
            if not expected:
                return jsonify({"ok": False, "error": "bot_api_disabled"}), 503
            supplied = request.headers.get(BOT_SECRET_HEADER) or ""
            if not secrets_match(supplied, expected):
                logging.warning("Rejected bot request to %s from %s", request.path, request.remote_addr)
                return jsonify({"ok": False, "error": "forbidden"}), 403
            return func(*args, **kwargs)

        return wrapper

    return decorator
