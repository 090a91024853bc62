#!/usr/bin/env python3
"""policy.py

Typed view of the chat rules that live in tonkotsu_config.json.

``ChatPolicy.from_settings(settings)`` reads the flat settings dict (see
interactive_setup.get_default_settings) and validates it once at startup, so
the engine never re-parses raw config values on the hot path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

DEFAULT_HARD_FILTER_PATTERNS: Tuple[str, ...] = (
    r"\b(kys|kill\s+yourself)\b",
    r"\b(i('?m| am)?\s+going\s+to\s+kill|i('?m| am)?\s+gonna\s+kill)\b",
    r"\b(send\s+nudes|nude\s+pics)\b",
    r"\b(dox|doxx|address|phone\s*number)\b",
)

DEFAULT_LOG_CAPS: Dict[str, int] = {"global": 400, "dm": 300, "group": 350}


@dataclass(frozen=True)
class ChatPolicy:
    account_cooldown_seconds: float = 3.0
    guest_cooldown_seconds: float = 5.0
    link_window_seconds: float = 300.0
    edit_window_seconds: float = 60.0
    idle_after_seconds: float = 120.0
    max_message_chars: int = 2000
    message_log_caps: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LOG_CAPS))
    # Ban length per strike number (1-based); the last entry repeats.
    ban_escalation_seconds: Tuple[int, ...] = (0, 3600, 86400, 604800)
    ban_permanent_after: int = 5
    account_session_days: float = 30.0
    guest_session_hours: float = 12.0
    guest_grace_seconds: float = 60.0
    hard_filter_patterns: Tuple[str, ...] = DEFAULT_HARD_FILTER_PATTERNS
    mention_inbox_limit: int = 50
    max_group_name_chars: int = 40
    max_group_members: int = 200
    max_report_reason_chars: int = 300
    max_ip_ban_seconds: int = 30 * 86400

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_settings(cls, settings: Dict[str, Any] | None) -> "ChatPolicy":
        s = settings or {}
        base = cls()

        def _num(key: str, default, cast=float):
            val = s.get(key)
            if val is None or val == "":
                return default
            try:
                return cast(val)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be a number, got {val!r}")

        caps = dict(DEFAULT_LOG_CAPS)
        for k, v in (s.get("message_log_caps") or {}).items():
            caps[str(k)] = int(v)

        escalation = s.get("ban_escalation_seconds")
        escalation = tuple(int(x) for x in escalation) if escalation else base.ban_escalation_seconds

        patterns = s.get("hard_filter_patterns")
        patterns = tuple(str(p) for p in patterns) if patterns else base.hard_filter_patterns

        return cls(
            account_cooldown_seconds=_num("account_cooldown_seconds", base.account_cooldown_seconds),
            guest_cooldown_seconds=_num("guest_cooldown_seconds", base.guest_cooldown_seconds),
            link_window_seconds=_num("link_window_seconds", base.link_window_seconds),
            edit_window_seconds=_num("edit_window_seconds", base.edit_window_seconds),
            idle_after_seconds=_num("idle_after_seconds", base.idle_after_seconds),
            max_message_chars=_num("max_message_chars", base.max_message_chars, int),
            message_log_caps=caps,
            ban_escalation_seconds=escalation,
            ban_permanent_after=_num("ban_permanent_after", base.ban_permanent_after, int),
            account_session_days=_num("account_session_days", base.account_session_days),
            guest_session_hours=_num("guest_session_hours", base.guest_session_hours),
            guest_grace_seconds=_num("guest_grace_seconds", base.guest_grace_seconds),
            hard_filter_patterns=patterns,
            mention_inbox_limit=_num("mention_inbox_limit", base.mention_inbox_limit, int),
            max_group_members=_num("max_group_members", base.max_group_members, int),
        )

    def validate(self) -> None:
        for name in ("account_cooldown_seconds", "guest_cooldown_seconds", "link_window_seconds",
                     "edit_window_seconds", "idle_after_seconds", "guest_grace_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_message_chars < 1:
            raise ValueError("max_message_chars must be >= 1")
        for kind in ("global", "dm", "group"):
            if int(self.message_log_caps.get(kind, 0)) < 1:
                raise ValueError(f"message_log_caps.{kind} must be >= 1")
        if not self.ban_escalation_seconds:
            raise ValueError("ban_escalation_seconds must not be empty")
        prev = 0
        for secs in self.ban_escalation_seconds:
            if secs < prev:
                raise ValueError("ban_escalation_seconds must be non-decreasing")
            prev = secs
        if self.ban_permanent_after < 1:
            raise ValueError("ban_permanent_after must be >= 1")
        if self.max_group_members < 2:
            raise ValueError("max_group_members must be >= 2")

    # ── derived values ───────────────────────────────────────────────
    def cooldown_for(self, guest: bool) -> float:
        return self.guest_cooldown_seconds if guest else self.account_cooldown_seconds

    def log_cap(self, thread_kind: str) -> int:
        return int(self.message_log_caps.get(thread_kind) or DEFAULT_LOG_CAPS["global"])

    def session_ttl(self, guest: bool) -> float:
        if guest:
            return self.guest_session_hours * 3600.0
        return self.account_session_days * 86400.0

    def ban_for_strike(self, strikes: int) -> Tuple[Optional[int], bool]:
        """Return (ban_seconds, permanent) for the given strike count."""
        if strikes >= self.ban_permanent_after:
            return None, True
        if strikes < 1:
            return 0, False
        idx = min(strikes, len(self.ban_escalation_seconds)) - 1
        return int(self.ban_escalation_seconds[idx]), False
