#!/usr/bin/env python3
"""interactive_setup.py

Tonkotsu setup wizard.

  • Quick setup (default): bind address, storage backend, bot secret.
  • Advanced setup (optional): cooldowns, edit window, log caps, sessions,
    ban escalation, logging.

The saved JSON is *compacted* to known keys, so tonkotsu_config.json stays
readable.
"""

from __future__ import annotations

import getpass
import os
import secrets
from typing import Any, Dict

import psycopg2

from constants import DEFAULT_DB_CONNECTION_STRING, STORAGE_BACKENDS, sanitize_postgres_dsn
from policy import DEFAULT_HARD_FILTER_PATTERNS, DEFAULT_LOG_CAPS, ChatPolicy


# ──────────────────────────────────────────────────────────────────────────────
# Defaults (compact)
# ──────────────────────────────────────────────────────────────────────────────


def get_default_settings() -> Dict[str, Any]:
    """Return a compact set of defaults for Tonkotsu.

    Notes:
      - Keep secrets out of JSON when possible; prefer env vars.
      - server_init.py will generate/persist secret_key + jwt_secret if missing.
    """

    dsn = sanitize_postgres_dsn(
        os.getenv("TONKOTSU_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or DEFAULT_DB_CONNECTION_STRING
    )

    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "Tonkotsu",
        "host": "0.0.0.0",
        "port": 5000,
        "debug": False,
        "trust_forwarded_for": False,
        "cors_allowed_origins": None,

        # ── Storage ──────────────────────────────────────────────────────
        "storage_backend": "memory",
        "database_url": dsn,
        "db_pool_min": 1,
        "db_pool_max": 10,

        # ── Secrets (generated on first boot when empty) ─────────────────
        "secret_key": "",
        "jwt_secret": "",
        "bot_shared_secret": "",

        # ── Auth tokens ──────────────────────────────────────────────────
        "access_token_minutes": 30,
        "account_session_days": 30,
        "guest_session_hours": 12,
        "guest_grace_seconds": 60,

        # ── Chat rules ───────────────────────────────────────────────────
        "account_cooldown_seconds": 3,
        "guest_cooldown_seconds": 5,
        "link_window_seconds": 300,
        "edit_window_seconds": 60,
        "idle_after_seconds": 120,
        "max_message_chars": 2000,
        "message_log_caps": dict(DEFAULT_LOG_CAPS),
        "mention_inbox_limit": 50,
        "max_group_members": 200,
        "hard_filter_patterns": list(DEFAULT_HARD_FILTER_PATTERNS),

        # ── Moderation ───────────────────────────────────────────────────
        "ban_escalation_seconds": [0, 3600, 86400, 604800],
        "ban_permanent_after": 5,

        # ── HTTP rate limits (Flask-Limiter) ─────────────────────────────
        "http_rate_limits_enabled": True,
        "rate_limit_storage_uri": "memory://",
        "rate_limit_login": "10 per minute",
        "rate_limit_guest": "10 per minute",
        "rate_limit_resume": "30 per minute",
        "rate_limit_history": "120 per minute",
        "rate_limit_bot": "60 per minute",
        # Socket.IO login/guest/resume reuse the rate_limit_* values above,
        # counted in-process per client IP.
        "socket_auth_rate_limits_enabled": True,

        # ── Housekeeping ─────────────────────────────────────────────────
        "janitor_interval_seconds": 15,

        # ── Logging ──────────────────────────────────────────────────────
        "log_level": "INFO",
        "log_file_path": "logs/server.log",
        "audit_log_path": "logs/audit.log",
    }


def _compact_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unknown keys so tonkotsu_config.json stays small."""
    template = get_default_settings()
    compact: Dict[str, Any] = {}
    for k in template.keys():
        compact[k] = settings.get(k, template[k])
    return compact


# ──────────────────────────────────────────────────────────────────────────────
# Prompt helpers
# ──────────────────────────────────────────────────────────────────────────────


def _yn(prompt: str, default: bool = True) -> bool:
    suffix = "[Y/n]" if default else "[y/N]"
    while True:
        raw = (input(f"{prompt} {suffix}: ") or "").strip().lower()
        if not raw:
            return default
        if raw in ("y", "yes"):
            return True
        if raw in ("n", "no"):
            return False
        print("❌ Please answer yes or no.")


def _prompt_str(prompt: str, default: str) -> str:
    raw = input(f"{prompt} [{default}]: ")
    return raw.strip() if raw.strip() else default


def _prompt_int(prompt: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    while True:
        raw = input(f"{prompt} [{default}]: ").strip()
        if not raw:
            val = default
        else:
            try:
                val = int(raw)
            except ValueError:
                print("❌ Please enter a valid integer.")
                continue

        if min_val is not None and val < min_val:
            print(f"❌ Must be ≥ {min_val}.")
            continue
        if max_val is not None and val > max_val:
            print(f"❌ Must be ≤ {max_val}.")
            continue
        return val


def _prompt_choice(prompt: str, default: str, choices: tuple[str, ...]) -> str:
    ch = {c.lower(): c for c in choices}
    choices_str = "/".join(choices)
    while True:
        raw = (input(f"{prompt} ({choices_str}) [{default}]: ") or "").strip()
        val = (raw or default).strip().lower()
        if val in ch:
            return val
        print(f"❌ Please choose one of: {choices_str}")


def _prompt_secret(prompt: str, allow_blank: bool = False) -> str:
    while True:
        val = getpass.getpass(f"{prompt}: ").strip()
        if not val and allow_blank:
            return ""
        if not val:
            print("❌ Value cannot be empty.")
            continue
        return val


def _prompt_int_list(prompt: str, default: list[int]) -> list[int]:
    default_str = ",".join(str(x) for x in default)
    while True:
        raw = input(f"{prompt} [{default_str}]: ").strip()
        if not raw:
            return list(default)
        try:
            return [int(x.strip()) for x in raw.split(",") if x.strip()]
        except ValueError:
            print("❌ Please enter comma-separated integers.")


# ──────────────────────────────────────────────────────────────────────────────
# Wizard
# ──────────────────────────────────────────────────────────────────────────────


def interactive_setup(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Run the Tonkotsu setup wizard and return an updated (compacted) settings dict."""

    base = get_default_settings()
    merged = {**base, **(settings or {})}

    advanced = _yn("Advanced mode? (more prompts)", default=False)

    # ── Core server ───────────────────────────────────────────────────────────
    merged["server_name"] = _prompt_str("Server name", str(merged.get("server_name") or base["server_name"]))
    merged["host"] = _prompt_str("Bind host", str(merged.get("host") or base["host"]))
    merged["port"] = _prompt_int("Bind port", int(merged.get("port") or base["port"]), 1, 65535)
    merged["trust_forwarded_for"] = _yn(
        "Running behind a reverse proxy that sets X-Forwarded-For?",
        default=bool(merged.get("trust_forwarded_for", False)),
    )

    # ── Storage ───────────────────────────────────────────────────────────────
    merged["storage_backend"] = _prompt_choice(
        "Storage backend", str(merged.get("storage_backend") or "memory"), STORAGE_BACKENDS
    )
    if merged["storage_backend"] == "postgres":
        while True:
            raw_dsn = _prompt_str("PostgreSQL DSN", str(merged.get("database_url") or base["database_url"]))
            merged["database_url"] = str(sanitize_postgres_dsn(raw_dsn))
            if merged["database_url"] != raw_dsn:
                print("⚠️  DSN sanitised (removed placeholder angle brackets / quotes).")
            try:
                test = psycopg2.connect(str(merged["database_url"]))
                test.close()
                print("✅ PostgreSQL connection OK")
                break
            except psycopg2.Error as e:
                print(f"❌ PostgreSQL connection failed: {e}")
                if not _yn("Try again?", default=True):
                    raise SystemExit(1)

    # ── Moderation bot ────────────────────────────────────────────────────────
    print("\n— Moderation bot (/api/bot/*) —")
    if _yn("Enable the moderation bot API?", default=bool(merged.get("bot_shared_secret"))):
        if _yn("Generate a random shared secret?", default=True):
            merged["bot_shared_secret"] = secrets.token_urlsafe(32)
            print(f"🔑 Bot shared secret: {merged['bot_shared_secret']}")
        else:
            merged["bot_shared_secret"] = _prompt_secret("Bot shared secret")
    else:
        merged["bot_shared_secret"] = ""

    if advanced:
        print("\n— Chat rules —")
        merged["account_cooldown_seconds"] = _prompt_int(
            "Seconds between messages (accounts)", int(merged["account_cooldown_seconds"]), 0, 3600)
        merged["guest_cooldown_seconds"] = _prompt_int(
            "Seconds between messages (guests)", int(merged["guest_cooldown_seconds"]), 0, 3600)
        merged["link_window_seconds"] = _prompt_int(
            "Seconds between messages containing links", int(merged["link_window_seconds"]), 0, 86400)
        merged["edit_window_seconds"] = _prompt_int(
            "Edit/delete window (seconds)", int(merged["edit_window_seconds"]), 0, 86400)
        merged["idle_after_seconds"] = _prompt_int(
            "Mark users idle after (seconds)", int(merged["idle_after_seconds"]), 10, 86400)
        merged["max_message_chars"] = _prompt_int(
            "Max message length", int(merged["max_message_chars"]), 1, 20000)

        print("\n— Sessions —")
        merged["account_session_days"] = _prompt_int(
            "Account session lifetime (days)", int(merged["account_session_days"]), 1, 365)
        merged["guest_session_hours"] = _prompt_int(
            "Guest session lifetime (hours)", int(merged["guest_session_hours"]), 1, 24 * 30)

        print("\n— Bans —")
        merged["ban_escalation_seconds"] = _prompt_int_list(
            "Ban length per strike (seconds, comma-separated)", list(merged["ban_escalation_seconds"]))
        merged["ban_permanent_after"] = _prompt_int(
            "Permanent ban at strike", int(merged["ban_permanent_after"]), 1, 100)

        print("\n— Logging —")
        merged["log_level"] = _prompt_choice(
            "Log level", str(merged.get("log_level") or "INFO").lower(), ("debug", "info", "warning", "error")
        ).upper()

    # Fail now, not at boot, if the rules don't validate.
    ChatPolicy.from_settings(merged)

    return _compact_settings(merged)
