#!/usr/bin/env python3
"""
server_init.py
Initialises and runs the Tonkotsu chat server Flask application.

create_app() builds the storage backend, the ChatService engine, HTTP routes
and Socket.IO handlers. It never starts a server, so wsgi.py can import it.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO, disconnect, emit

# Socket.IO auth error hardening
from jwt import ExpiredSignatureError
from flask_jwt_extended.exceptions import JWTExtendedException

from chat_service import ChatService
from constants import APP_VERSION, get_db_connection_string, postgres_dsn_parts, redact_postgres_dsn
from errors import ChatError
from policy import ChatPolicy
from secrets_policy import persist_secrets_enabled
from storage import MemoryStore

# Background cleanup
from janitor import start_janitor
from routes_auth import register_auth_routes
from routes_bot import register_bot_routes


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path] | None) -> None:
    """Log a boot banner that makes 'wrong DB / wrong config' obvious."""
    cfg_path = Path(settings_file) if settings_file else None
    cfg_exists = bool(cfg_path and cfg_path.exists())
    cfg_mtime = None
    if cfg_exists:
        cfg_mtime = datetime.fromtimestamp(cfg_path.stat().st_mtime).isoformat(timespec="seconds")

    logging.info("==================== Tonkotsu Boot ====================")
    logging.info("Tonkotsu version: %s", APP_VERSION)
    logging.info("Settings file: %s (exists=%s%s)", str(cfg_path) if cfg_path else "<none>", cfg_exists,
                 f", mtime={cfg_mtime}" if cfg_mtime else "")
    backend = str(settings.get("storage_backend") or "memory")
    logging.info("Storage backend: %s", backend)
    if backend == "postgres":
        dsn = get_db_connection_string(settings)
        parts = postgres_dsn_parts(dsn)
        logging.info(
            "Configured DB: host=%s port=%s db=%s user=%s",
            parts.get("host"), parts.get("port"), parts.get("db"), parts.get("user"),
        )
        logging.info("Configured DSN: %s", redact_postgres_dsn(dsn))
    logging.info("========================================================")


def build_store(settings: Dict[str, Any]):
    """Create the configured storage backend ("memory" or "postgres")."""
    backend = str(settings.get("storage_backend") or "memory").strip().lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "postgres":
        from database import PostgresStore, get_db_identity, init_database, init_db_pool

        init_db_pool(
            minconn=int(settings.get("db_pool_min", 1)),
            maxconn=int(settings.get("db_pool_max", 10)),
            dsn=get_db_connection_string(settings),
        )
        init_database()
        ident = get_db_identity()
        logging.info("Connected DB: user=%s db=%s addr=%s:%s", ident["current_user"],
                     ident["current_database"], ident["server_addr"], ident["server_port"])
        return PostgresStore()
    raise ValueError(f"Unknown storage_backend {backend!r} (expected memory or postgres)")


def create_app(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
    store=None,
    clock=time.time,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application.

    This function does **not** start a server. It is safe to import from a
    Gunicorn `wsgi.py` module.
    """

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file

    # ───── Flask App Core ─────
    app = Flask(__name__)
    app.config["TONKOTSU_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    app.config["TONKOTSU_SETTINGS"] = settings

    app.secret_key = _ensure_secret_key(settings, settings_file)

    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_jwt_secret(settings, settings_file),
        # Bearer tokens only; the browser client keeps the session token itself.
        JWT_TOKEN_LOCATION=["headers"],
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(minutes=int(settings.get("access_token_minutes", 30))),
    )

    _log_startup_banner(settings, settings_file)

    # ───── Chat engine ─────
    policy = ChatPolicy.from_settings(settings)
    if store is None:
        store = build_store(settings)
    service = ChatService(store, policy, clock=clock)
    app.config["TONKOTSU_SERVICE"] = service

    jwt = JWTManager(app)

    @app.after_request
    def _add_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    # ------------------------------------------------------------------
    # JWT revocation: an access token dies with its session
    # ------------------------------------------------------------------
    @jwt.token_in_blocklist_loader
    def _token_in_blocklist(jwt_header, jwt_payload):
        """Return True if the token should be rejected.

        Access tokens carry the session id (``sid``). Logging out, deleting
        the identity or letting the session expire revokes every JWT minted
        for it.
        """
        if (jwt_payload.get("type") or "access") != "access":
            return True
        sid = jwt_payload.get("sid")
        return service.identities.session_identity(sid) is None

    # ------------------------------------------------------------------
    # Error mapping: ChatError -> JSON body with the error's HTTP status
    # ------------------------------------------------------------------
    @app.errorhandler(ChatError)
    def _chat_error(err):
        return jsonify(err.to_dict()), err.http_status

    @app.errorhandler(429)
    def _too_many_requests(err):
        return jsonify({"success": False, "error": "rate_limited", "category": "rate_limited",
                        "message": str(getattr(err, "description", "Too many requests"))}), 429

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
            enabled=bool(settings.get("http_rate_limits_enabled", True)),
        )
    limiter.init_app(app)

    # ───── SocketIO Setup ─────
    cors_origins = settings.get("cors_allowed_origins") or None
    socketio = SocketIO(
        app,
        async_mode="threading",
        cors_allowed_origins=cors_origins,
        cookie="tonkotsu_io",
        logger=False,
        engineio_logger=False,
        ping_interval=20,
        ping_timeout=15,
    )
    app.config["TONKOTSU_SOCKETIO"] = socketio

    # ───── Global Socket.IO Error Handler ─────
    # JWT problems inside handlers become a client-visible signal plus a
    # disconnect so the browser can re-auth; everything else is logged.
    @socketio.on_error_default  # applies to all namespaces
    def _socketio_default_error_handler(e):
        sid = getattr(request, "sid", None)

        if isinstance(e, ExpiredSignatureError):
            if sid:
                emit("auth_error", {"reason": "access_token_expired"}, to=sid)
                disconnect(sid=sid)
            return

        if isinstance(e, JWTExtendedException):
            if sid:
                emit("auth_error", {"reason": "auth_failed"}, to=sid)
                disconnect(sid=sid)
            return

        app.logger.exception("Socket.IO handler error: %s", e)

    # ───── Routes ─────
    register_auth_routes(app, settings, limiter=limiter)
    register_bot_routes(app, settings, limiter=limiter)

    from socket_handlers import register_socketio_handlers
    register_socketio_handlers(socketio, settings, service)

    return app, socketio


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> None:
    """Bootstrap the Flask-SocketIO app, attach routes & handlers, then run it."""

    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    # ───── Run Server (dev / single-process) ─────
    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 5000)
    debug = bool(settings.get("debug") or False)

    print(f"🚀  Starting Tonkotsu chat server on http://{host}:{port} (debug={debug})")

    # Background janitor: idle presence, disconnected guests, expired sessions/bans.
    # NOTE: Under Gunicorn, wsgi.py starts it instead (one worker only).
    start_janitor(settings, app.config["TONKOTSU_SERVICE"])

    # Reduce console spam from long-polling by filtering Werkzeug access logs for /socket.io.
    class _SocketIOAccessFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:  # type: ignore
            return "/socket.io/" not in record.getMessage()

    logging.getLogger("werkzeug").addFilter(_SocketIOAccessFilter())

    socketio.run(
        app,
        host=host,
        port=port,
        debug=debug,
        use_reloader=False,
        log_output=False,
        allow_unsafe_werkzeug=True,
    )


# ───── Helpers ─────
def _ensure_secret_key(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    key = settings.get("secret_key") or os.getenv("TONKOTSU_SECRET_KEY")
    if key:
        return key

    key = secrets.token_urlsafe(64)
    settings["secret_key"] = key
    persisted = _persist_generated_key(settings, settings_file)
    if persisted:
        print("✅ secret_key generated and saved to settings.")
    else:
        print("⚠️  Generated a one-off secret_key (NOT saved).")
    return key


def _ensure_jwt_secret(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    # Prefer explicit config, then env var. Only persist if we *generated* it
    # and secret persistence is enabled.
    key = settings.get("jwt_secret")
    if key:
        return str(key)

    env_key = os.getenv("TONKOTSU_JWT_SECRET")
    if env_key and str(env_key).strip():
        return str(env_key).strip()

    key = secrets.token_hex(32)
    settings["jwt_secret"] = key
    persisted = _persist_generated_key(settings, settings_file)
    if persisted:
        print("✅ jwt_secret generated and saved to settings.")
    else:
        print("⚠️  Generated a one-off jwt_secret (NOT saved). Access tokens die on restart.")
    return key


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    # If persistence is disabled, never write secrets into tonkotsu_config.json.
    if not persist_secrets_enabled():
        return False
    if not settings_file:
        return False
    if settings_file.suffix.lower() != ".json":
        print(f"⚠️  Unsupported settings file format: {settings_file}")
        return False

    try:
        # Only merge into the file if it is valid JSON or does not exist.
        existing: dict | None = None
        if settings_file.exists():
            try:
                with settings_file.open("r", encoding="utf-8") as fp:
                    existing = json.load(fp)
            except ValueError:
                existing = None

        # If the settings file exists but is invalid JSON, back it up and write a fresh JSON file.
        if existing is None and settings_file.exists():
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            bad_path = settings_file.with_suffix(settings_file.suffix + f".bad-{ts}")
            settings_file.rename(bad_path)
            print(f"⚠️  Backed up invalid settings file to: {bad_path}")
            existing = {}

        merged = dict(existing or {})
        merged.update(settings)

        with settings_file.open("w", encoding="utf-8") as fp:
            json.dump(merged, fp, indent=2)
    except OSError as exc:
        print(f"⚠️  Could not persist generated secret to {settings_file}: {exc}", file=sys.stderr)
        return False

    return True
