#!/usr/bin/env python3
"""main.py

Tonkotsu chat server entrypoint.

Settings live in ``tonkotsu_config.json`` (plain JSON). Secrets can stay out
of the file: set ``TONKOTSU_PERSIST_SECRETS=0`` and provide them through the
environment (``TONKOTSU_DATABASE_URL``, ``TONKOTSU_SECRET_KEY``,
``TONKOTSU_JWT_SECRET``, ``TONKOTSU_BOT_SECRET``).
"""

from __future__ import annotations

import argparse
from datetime import datetime
import json
import logging
import os
import sys
from pathlib import Path

from constants import CONFIG_FILE, STORAGE_BACKENDS, sanitize_postgres_dsn
from interactive_setup import get_default_settings, interactive_setup
from server_init import run_web_server
from secrets_policy import scrub_secrets_for_persist


def configure_logging(settings: dict) -> None:
    """Configure file + console logging."""
    log_level_str = str(settings.get("log_level", "INFO")).upper()
    log_format = settings.get(
        "log_format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    log_file_path = settings.get("log_file_path", "logs/server.log")

    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(level=log_level, format=log_format, filename=log_file_path, filemode="a")
    logging.getLogger().addHandler(logging.StreamHandler(sys.stdout))

    # Moderation actions get their own file when configured.
    audit_path = settings.get("audit_log_path")
    if audit_path:
        audit_dir = os.path.dirname(audit_path)
        if audit_dir:
            os.makedirs(audit_dir, exist_ok=True)
        handler = logging.FileHandler(audit_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger("tonkotsu.audit").addHandler(handler)

    logging.info("Logging configured (level=%s)", log_level_str)


def load_settings(path: Path) -> dict:
    """Load settings from JSON, layered over the defaults. Returns defaults if missing."""
    settings = get_default_settings()
    if not path.exists():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            loaded = json.load(fp)
    except ValueError as exc:
        print(f"⚠️  Could not parse {path} as JSON: {exc}")
        # Back the broken file up so generated secrets can be persisted into a
        # fresh JSON file.
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            print(f"⚠️  Backed up invalid settings file to: {bad_path}")
        except OSError as e2:
            print(f"⚠️  Could not back up invalid settings file: {e2}")
        print("⚠️  Falling back to defaults (run with --setup to rewrite config).")
        return settings

    if isinstance(loaded, dict):
        settings.update(loaded)
    return settings


def save_settings(path: Path, settings: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # If TONKOTSU_PERSIST_SECRETS=0, do not write secrets (DB DSN, bot secret, etc.)
    # into tonkotsu_config.json. Keep them in env instead.
    to_save = scrub_secrets_for_persist(settings)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(to_save, fp, indent=2)


def apply_env_overrides(settings: dict) -> None:
    """Apply env overrides for secrets and runtime deployment."""

    def _bool_env(*names: str) -> bool | None:
        for n in names:
            v = os.getenv(n)
            if v is None:
                continue
            v = v.strip().lower()
            if v in ("1", "true", "yes", "y", "on"):
                return True
            if v in ("0", "false", "no", "n", "off"):
                return False
        return None

    def _str_env(*names: str) -> str | None:
        for n in names:
            v = os.getenv(n)
            if v is not None and v.strip() != "":
                return v.strip()
        return None

    def _int_env(*names: str) -> int | None:
        v = _str_env(*names)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    db = _str_env("TONKOTSU_DATABASE_URL", "DATABASE_URL")
    if db:
        settings["database_url"] = str(sanitize_postgres_dsn(db))

    backend = _str_env("TONKOTSU_STORAGE_BACKEND")
    if backend and backend.lower() in STORAGE_BACKENDS:
        settings["storage_backend"] = backend.lower()

    secret = _str_env("TONKOTSU_SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("TONKOTSU_JWT_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    bot_secret = _str_env("TONKOTSU_BOT_SECRET")
    if bot_secret:
        settings["bot_shared_secret"] = bot_secret

    host = _str_env("TONKOTSU_HOST")
    if host:
        settings["host"] = host

    port = _int_env("TONKOTSU_PORT")
    if port:
        settings["port"] = port

    debug = _bool_env("TONKOTSU_DEBUG")
    if debug is not None:
        settings["debug"] = debug

    trust_xff = _bool_env("TONKOTSU_TRUST_FORWARDED_FOR")
    if trust_xff is not None:
        settings["trust_forwarded_for"] = trust_xff

    log_level = _str_env("TONKOTSU_LOG_LEVEL")
    if log_level:
        settings["log_level"] = log_level


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Tonkotsu chat server")
    p.add_argument("--setup", action="store_true", help="run the interactive setup wizard")
    p.add_argument("--config", default=CONFIG_FILE, help="path to server config JSON")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    if args.setup or not settings_path.exists():
        print("\n=== Tonkotsu Setup Wizard ===\n")
        settings = interactive_setup(settings)
        save_settings(settings_path, settings)
        print(f"✅ Saved settings to {settings_path}\n")

    if not settings.get("bot_shared_secret"):
        print("⚠️  bot_shared_secret is empty. The /api/bot/* endpoints will answer 503.")

    configure_logging(settings)

    run_web_server(settings, limiter=None, settings_file=settings_path)


if __name__ == "__main__":
    main()
