"""secrets_policy.py

Central policy for whether the server should persist *secrets* into
tonkotsu_config.json.

Secrets may be persisted unless you disable it via env:
  export TONKOTSU_PERSIST_SECRETS=0
"""

from __future__ import annotations

import os
from typing import Any, Dict


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


def persist_secrets_enabled() -> bool:
    """Whether secret values should be written into tonkotsu_config.json."""
    return _env_bool("TONKOTSU_PERSIST_SECRETS", True)


# Top-level keys in tonkotsu_config.json that are treated as secrets.
SECRET_SETTING_KEYS = {
    # Flask/JWT secrets
    "secret_key",
    "jwt_secret",
    # DB DSN often contains password
    "database_url",
    # Moderation bot shared secret
    "bot_shared_secret",
}


def scrub_secrets_for_persist(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of settings with secret keys removed if persistence is disabled."""
    out = dict(settings)
    if persist_secrets_enabled():
        return out
    for k in list(out.keys()):
        if k in SECRET_SETTING_KEYS:
            out.pop(k, None)
    return out
