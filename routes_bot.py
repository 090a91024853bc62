#!/usr/bin/env python3
"""
routes_bot.py

Moderation bot integration. Every route requires the shared secret in the
X-Tonkotsu-Bot-Secret header (see permissions.require_bot_secret).

    POST /api/bot/deleteUser   {"username": ...}
    POST /api/bot/announce     {"text": ...}
    POST /api/bot/banIp        {"ip": ..., "seconds": 3600}
    GET  /api/bot/reports?limit=10
"""

from flask import current_app, jsonify, request

from errors import InvalidRequest
from permissions import require_bot_secret


def register_bot_routes(app, settings, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    bot_only = require_bot_secret(settings)

    def _service():
        return current_app.config["TONKOTSU_SERVICE"]

    def _body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _actor() -> str:
        return "bot:" + (request.headers.get("X-Tonkotsu-Bot-Name") or "default")[:40]

    @app.route("/api/bot/deleteUser", methods=["POST"])
    @_limit(settings.get("rate_limit_bot") or "60 per minute")
    @bot_only
    def bot_delete_user():
        username = str(_body().get("username") or "").strip()
        if not username:
            raise InvalidRequest("username is required.", code="missing_username")
        result = _service().delete_identity(username, actor=_actor())
        return jsonify({"ok": True, "username": username, **result})

    @app.route("/api/bot/announce", methods=["POST"])
    @_limit(settings.get("rate_limit_bot") or "60 per minute")
    @bot_only
    def bot_announce():
        data = _body()
        msg = _service().post_announcement(data.get("text", data.get("content")), actor=_actor())
        return jsonify({"ok": True, "message": msg.to_public()})

    @app.route("/api/bot/banIp", methods=["POST"])
    @_limit(settings.get("rate_limit_bot") or "60 per minute")
    @bot_only
    def bot_ban_ip():
        data = _body()
        try:
            seconds = int(data.get("seconds", 3600))
        except (TypeError, ValueError):
            raise InvalidRequest("seconds must be an integer.", code="bad_seconds")
        return jsonify(_service().block_ip(data.get("ip"), seconds, actor=_actor()))

    @app.route("/api/bot/reports", methods=["GET"])
    @_limit(settings.get("rate_limit_bot") or "60 per minute")
    @bot_only
    def bot_reports():
        try:
            limit = int(request.args.get("limit", 10))
        except (TypeError, ValueError):
            limit = 10
        return jsonify({"ok": True, "reports": _service().recent_reports(limit)})
