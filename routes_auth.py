#!/usr/bin/env python3
"""
routes_auth.py

HTTP authentication and read-only chat routes.

Every sign-in issues two credentials:
  - ``token``: the opaque session token (used for Socket.IO ``resume``)
  - ``access_token``: a short-lived JWT whose ``sid`` claim is the session id,
    for Authorization: Bearer calls against /api/*
"""

import logging
from datetime import timedelta

from flask import current_app, g, jsonify, request
from flask_jwt_extended import create_access_token

from permissions import require_identity
from security import session_id_for_token


def register_auth_routes(app, settings, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    def _service():
        return current_app.config["TONKOTSU_SERVICE"]

    def _client_ip():
        xff = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
        if xff and settings.get("trust_forwarded_for", False):
            return xff
        return (request.remote_addr or "").strip() or None

    def _body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _session_response(ident, token):
        minutes = int(settings.get("access_token_minutes", 30))
        access = create_access_token(
            identity=ident.id,
            additional_claims={"sid": session_id_for_token(token), "username": ident.username, "guest": ident.guest},
            expires_delta=timedelta(minutes=minutes),
        )
        return jsonify({
            "success": True,
            "username": ident.username,
            "guest": ident.guest,
            "user": _service().whoami(ident),
            "token": token,
            "access_token": access,
        })

    @app.route("/api/health", methods=["GET"])
    def api_health():
        return jsonify({"ok": True, "online": _service().presence.online_count()})

    @app.route("/api/auth/login", methods=["POST"])
    @_limit(settings.get("rate_limit_login") or "10 per minute")
    def api_login():
        data = _body()
        ident, token = _service().login(data.get("username"), data.get("password"), _client_ip())
        logging.info("HTTP login for %s", ident.username)
        return _session_response(ident, token)

    @app.route("/api/auth/guest", methods=["POST"])
    @_limit(settings.get("rate_limit_guest") or "10 per minute")
    def api_guest():
        data = _body()
        ident, token = _service().guest_join(data.get("name") or data.get("username"), _client_ip())
        return _session_response(ident, token)

    @app.route("/api/auth/resume", methods=["POST"])
    @_limit(settings.get("rate_limit_resume") or "30 per minute")
    def api_resume():
        token = _body().get("token")
        ident = _service().resume(token, _client_ip())
        return _session_response(ident, token)

    @app.route("/api/auth/logout", methods=["POST"])
    def api_logout():
        ident = _service().logout(_body().get("token"))
        return jsonify({"success": True, "username": ident.username if ident else None})

    @app.route("/api/me", methods=["GET"])
    @require_identity
    def api_me():
        return jsonify({"success": True, "user": _service().whoami(g.identity)})

    @app.route("/api/threads/<path:thread_id>/history", methods=["GET"])
    @_limit(settings.get("rate_limit_history") or "120 per minute")
    @require_identity
    def api_thread_history(thread_id):
        messages = _service().history(g.identity, thread_id, request.args.get("limit"))
        return jsonify({"success": True, "thread_id": thread_id, "messages": messages})

    @app.route("/api/presence", methods=["GET"])
    @require_identity
    def api_presence():
        return jsonify({"success": True, **_service().presence_payload()})
