#!/usr/bin/env python3
"""security.py

Password hashing, session token helpers and audit logging.

  - New hashes: Argon2id (argon2-cffi)
  - Back-compat: verify legacy PBKDF2 hashes (salt_hex:derived_hex, the format
    older Tonkotsu deployments stored)
  - Upgrade path: verify_password_and_upgrade() returns a new Argon2id hash
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import threading
import time
import uuid
from collections import deque
from typing import Optional, Tuple

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

audit_logger = logging.getLogger("tonkotsu.audit")

# ────────────────────────────────────────────────────────────
# Audit logging
# ────────────────────────────────────────────────────────────

def log_audit_event(store, actor: str, action: str, target: str | None = None,
                    details: str | None = None) -> None:
    """Record an audit entry in the store's ``audit`` namespace and the audit log."""
    audit_logger.info("actor=%s action=%s target=%s details=%s", actor, action, target, details)
    if store is None:
        return
    try:
        store.put(
            "audit",
            f"{time.time():017.6f}-{uuid.uuid4().hex[:8]}",
            {"actor": actor, "action": action, "target": target, "details": details, "ts": time.time()},
        )
    except Exception as e:
        logging.error("Failed to write audit log (%s, %s, %s, %s): %s", actor, action, target, details, e)


# ────────────────────────────────────────────────────────────
# Password hashing utilities
# ────────────────────────────────────────────────────────────

# Legacy PBKDF2 parameters (kept only for verifying old hashes)
_LEGACY_PBKDF2_ITERS = 120_000
_LEGACY_PBKDF2_LEN = 32

_PWH = PasswordHasher(
    time_cost=3,
    memory_cost=65536,  # KiB (64 MiB)
    parallelism=1,
    hash_len=32,
    salt_len=16,
)


def _pbkdf2_legacy(password: str, salt: bytes) -> bytes:
    """Derive a 32-byte key from password+salt using legacy PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_LEGACY_PBKDF2_LEN,
        salt=salt,
        iterations=_LEGACY_PBKDF2_ITERS,
    )
    return kdf.derive(password.encode("utf-8"))


def _is_legacy_pbkdf2_hash(stored_hash: str) -> bool:
    # Expected: <salt hex>:<64 hex chars>
    if not stored_hash or ":" not in stored_hash:
        return False
    left, right = stored_hash.split(":", 1)
    if not left or len(right) != _LEGACY_PBKDF2_LEN * 2:
        return False
    try:
        bytes.fromhex(left)
        bytes.fromhex(right)
    except ValueError:
        return False
    return True


def _verify_legacy_pbkdf2(password: str, stored_hash: str) -> bool:
    salt_hex, derived_hex = stored_hash.split(":", 1)
    derived = _pbkdf2_legacy(password, bytes.fromhex(salt_hex)).hex()
    return hmac.compare_digest(derived, derived_hex.lower())


def legacy_hash_password(password: str, salt: bytes | None = None) -> str:
    """Produce a legacy-format hash (imports from older deployments, tests)."""
    salt = salt or secrets.token_bytes(16)
    return f"{salt.hex()}:{_pbkdf2_legacy(password, salt).hex()}"


def _is_argon2_hash(stored_hash: str) -> bool:
    return bool(stored_hash) and stored_hash.startswith("$argon2")


def hash_password(password: str) -> str:
    """Hash plaintext password using Argon2id."""
    return _PWH.hash(password)


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify password against stored hash (Argon2id or legacy PBKDF2)."""
    ok, _ = verify_password_and_upgrade(password, stored_hash)
    return ok


def verify_password_and_upgrade(password: str, stored_hash: str) -> Tuple[bool, Optional[str]]:
    """Verify password, and if the stored hash is legacy (or needs rehash),
    return a new Argon2id hash for upgrade.

    Returns: (ok, upgraded_hash_or_None)
    """
    if not stored_hash:
        return False, None

    if _is_argon2_hash(stored_hash):
        try:
            _PWH.verify(stored_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False, None
        if _PWH.check_needs_rehash(stored_hash):
            return True, _PWH.hash(password)
        return True, None

    if _is_legacy_pbkdf2_hash(stored_hash):
        if _verify_legacy_pbkdf2(password, stored_hash):
            return True, _PWH.hash(password)
        return False, None

    # Unknown format
    return False, None


# ────────────────────────────────────────────────────────────
# Session tokens
# ────────────────────────────────────────────────────────────

def new_session_token() -> str:
    return secrets.token_hex(24)


def session_id_for_token(token: str) -> str:
    """Stable id for a session token. Only this digest is ever stored."""
    return hashlib.sha256(str(token).encode("utf-8")).hexdigest()


def secrets_match(supplied: str | None, expected: str | None) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(str(supplied).encode("utf-8"), str(expected).encode("utf-8"))


# ────────────────────────────────────────────────────────────
# Small in-process rate limiter
# ────────────────────────────────────────────────────────────
#
# Used for Socket.IO auth events, which Flask-Limiter can't decorate.

_SRL_BUCKETS: dict[str, deque] = {}
_SRL_LOCK = threading.Lock()


def simple_rate_limit(key: str, limit: int, window_sec: int) -> tuple[bool, float]:
    """Sliding-window limiter.

    Returns (ok, retry_after_seconds).
    """
    limit = int(limit or 0)
    window_sec = int(window_sec or 0)
    if limit <= 0 or window_sec <= 0:
        return True, 0.0

    now = time.time()
    with _SRL_LOCK:
        dq = _SRL_BUCKETS.get(key)
        if dq is None:
            dq = deque()
            _SRL_BUCKETS[key] = dq
        cutoff = now - window_sec
        while dq and dq[0] < cutoff:
            dq.popleft()
        if len(dq) >= limit:
            retry = (dq[0] + window_sec) - now
            return False, max(0.0, float(retry))
        dq.append(now)
        return True, 0.0


_LIMIT_UNITS = {"s": 1, "sec": 1, "second": 1, "m": 60, "min": 60, "minute": 60,
                "h": 3600, "hour": 3600, "d": 86400, "day": 86400}


def parse_limit_value(val, default_limit: int, default_window: int) -> tuple[int, int]:
    """Parse an int (per-minute) or a Flask-Limiter style string.

    Accepts "10 per minute", "10/min" and "30@10" (30 per 10 seconds).
    Returns (limit, window_seconds).
    """
    if val is None or isinstance(val, bool):
        return int(default_limit), int(default_window)
    if isinstance(val, (int, float)):
        lim = int(val)
        return (lim if lim > 0 else int(default_limit)), 60
    s = str(val).strip().lower()
    m = re.match(r"^(\d+)\s*@\s*(\d+)$", s)
    if m:
        return int(m.group(1)), int(m.group(2))
    m = re.match(r"^(\d+)\s*(?:per|/)\s*(s|sec|second|m|min|minute|h|hour|d|day)s?$", s)
    if m:
        return int(m.group(1)), _LIMIT_UNITS[m.group(2)]
    return int(default_limit), int(default_window)


def reset_rate_limits() -> None:
    with _SRL_LOCK:
        _SRL_BUCKETS.clear()
