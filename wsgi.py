"""wsgi.py

Gunicorn entrypoint for the Tonkotsu chat server.

Run (example):
  gunicorn -c gunicorn_conf.py wsgi:app

Notes:
- Presence, guests and connections are process-local, so run exactly one
  worker (gunicorn_conf.py pins workers=1 with gthread).
- The janitor loop is started here, once, for that worker.
"""

from __future__ import annotations

import os
from pathlib import Path

from constants import CONFIG_FILE
from janitor import start_janitor
from main import apply_env_overrides, configure_logging, load_settings
from server_init import create_app


def _resolve_config_path() -> Path:
    # Prefer explicit env path when running under systemd.
    p = os.environ.get("TONKOTSU_CONFIG") or CONFIG_FILE
    return Path(p)


_settings_path = _resolve_config_path()
_settings = load_settings(_settings_path)
apply_env_overrides(_settings)
configure_logging(_settings)

# Create the Flask app + Socket.IO integration.
app, socketio = create_app(_settings, limiter=None, settings_file=_settings_path)
start_janitor(_settings, app.config["TONKOTSU_SERVICE"])

# Expose these for tooling / introspection.
app.config["TONKOTSU_GUNICORN"] = True
app.config["TONKOTSU_SETTINGS_PATH"] = str(_settings_path)
