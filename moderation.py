#!/usr/bin/env python3
"""moderation.py

Moderation engine: block lists, the hard content filter, the progressive
strike/ban table, transient IP bans and user reports.

Three separate policies, never mixed:
  - block: the blocker stops seeing the blocked user's content (viewer side)
  - hard filter: disallowed text is replaced before it is stored (everyone)
  - mute: lives on the identity (models.Identity.mutes), only flags delivery
"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
import uuid
from typing import Dict, Iterable, List, Optional, Set

from errors import BannedError, InvalidRequest
from models import Message, Report
from security import log_audit_event

HIDDEN_BY_FILTER = "__HIDDEN_BY_FILTER__"


def _norm(username: str | None) -> str:
    return (username or "").strip().lower()


class ModerationEngine:
    def __init__(self, store, policy, locks, clock=time.time):
        self.store = store
        self.policy = policy
        self.locks = locks
        self.clock = clock
        self._filters = [re.compile(p, re.IGNORECASE) for p in policy.hard_filter_patterns]

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------
    def blocked_by(self, identity_id: str) -> Set[str]:
        """Ids that ``identity_id`` has blocked."""
        return set(self.store.get("blocks", identity_id) or [])

    def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        return blocked_id in self.blocked_by(blocker_id)

    def either_blocked(self, a: str, b: str) -> bool:
        return self.is_blocked(a, b) or self.is_blocked(b, a)

    def block(self, identity_id: str, target_id: str) -> bool:
        """Returns True if the block is new."""
        if identity_id == target_id:
            raise InvalidRequest("You can't block yourself.", code="self_block")
        with self.locks.hold("blocks:" + identity_id):
            current = self.blocked_by(identity_id)
            if target_id in current:
                return False
            current.add(target_id)
            self.store.put("blocks", identity_id, sorted(current))
            return True

    def unblock(self, identity_id: str, target_id: str) -> bool:
        with self.locks.hold("blocks:" + identity_id):
            current = self.blocked_by(identity_id)
            if target_id not in current:
                return False
            current.discard(target_id)
            if current:
                self.store.put("blocks", identity_id, sorted(current))
            else:
                self.store.delete("blocks", identity_id)
            return True

    def visible_to(self, viewer_id: str, messages: Iterable[Message]) -> List[Message]:
        """The viewer's filtered view: messages from senders they blocked are dropped."""
        hidden = self.blocked_by(viewer_id)
        return [m for m in messages if m.sender_id not in hidden]

    def forget_identity(self, identity_id: str) -> None:
        self.store.delete("blocks", identity_id)
        for owner, blocked in self.store.items("blocks"):
            if identity_id in (blocked or []):
                self.unblock(owner, identity_id)

    # ------------------------------------------------------------------
    # Hard filter
    # ------------------------------------------------------------------
    def apply_hard_filter(self, content: str) -> str:
        text = content or ""
        for rx in self._filters:
            if rx.search(text):
                return HIDDEN_BY_FILTER
        return text

    # ------------------------------------------------------------------
    # Strikes / identity bans
    # ------------------------------------------------------------------
    def ban_state(self, username: str) -> Dict:
        rec = self.store.get("moderation", _norm(username)) or {}
        return {
            "strikes": int(rec.get("strikes") or 0),
            "until": rec.get("until"),
            "permanent": bool(rec.get("permanent")),
        }

    def is_banned(self, username: str) -> bool:
        state = self.ban_state(username)
        if state["permanent"]:
            return True
        return bool(state["until"]) and float(state["until"]) > self.clock()

    def check_identity(self, username: str) -> None:
        state = self.ban_state(username)
        if state["permanent"]:
            raise BannedError(scope="identity", permanent=True, message="This account is permanently banned.")
        until = state["until"]
        if until and float(until) > self.clock():
            raise BannedError(scope="identity", until=float(until), message="This account is temporarily banned.")

    def strike(self, username: str, actor: str = "system") -> Dict:
        """Record one strike and apply the escalation table.

        Returns {strikes, until, permanent}. ``until`` is None when the strike
        carries no timed ban.
        """
        key = _norm(username)
        if not key:
            raise InvalidRequest("username required")
        with self.locks.hold("moderation:" + key):
            state = self.ban_state(key)
            strikes = state["strikes"] + 1
            seconds, permanent = self.policy.ban_for_strike(strikes)
            now = self.clock()
            until = None
            if permanent or state["permanent"]:
                permanent = True
            elif seconds:
                until = now + seconds
                prev = state["until"]
                if prev and float(prev) > until:
                    until = float(prev)
            rec = {"strikes": strikes, "until": until, "permanent": permanent, "last_strike_at": now}
            self.store.put("moderation", key, rec)
        log_audit_event(self.store, actor, "strike", key, f"strikes={strikes} until={until} permanent={permanent}")
        return {"strikes": strikes, "until": until, "permanent": permanent}

    # ------------------------------------------------------------------
    # IP bans
    # ------------------------------------------------------------------
    def block_ip(self, ip: str, seconds: int = 3600, actor: str = "system") -> float:
        try:
            addr = str(ipaddress.ip_address(str(ip or "").strip()))
        except ValueError:
            raise InvalidRequest("Invalid IP address.", code="invalid_ip")
        try:
            seconds = int(seconds)
        except (TypeError, ValueError):
            raise InvalidRequest("seconds must be an integer.", code="invalid_seconds")
        if seconds <= 0:
            raise InvalidRequest("seconds must be positive.", code="invalid_seconds")
        seconds = min(seconds, self.policy.max_ip_ban_seconds)
        until = self.clock() + seconds
        prev = self.store.get("ip_bans", addr) or {}
        until = max(until, float(prev.get("until") or 0))
        self.store.put("ip_bans", addr, {"until": until})
        log_audit_event(self.store, actor, "ban_ip", addr, f"seconds={seconds}")
        return until

    def check_ip(self, ip: str | None) -> None:
        if not ip:
            return
        rec = self.store.get("ip_bans", str(ip).strip())
        if not rec:
            return
        until = float(rec.get("until") or 0)
        if until > self.clock():
            raise BannedError(scope="ip", until=until, message="Connections from your network are blocked.")

    def purge_expired(self, now: float | None = None) -> int:
        now = self.clock() if now is None else now
        n = 0
        for ip, rec in self.store.items("ip_bans"):
            if float(rec.get("until") or 0) <= now:
                self.store.delete("ip_bans", ip)
                n += 1
        return n

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    def report(self, reporter_id: str, reporter_name: str, message: Message, reason: str | None) -> Report:
        rep = Report(
            id=uuid.uuid4().hex,
            reporter_id=reporter_id,
            reporter_name=reporter_name,
            message_id=message.id,
            thread_id=message.thread_id,
            reason=str(reason or "").strip()[: self.policy.max_report_reason_chars],
            created_at=self.clock(),
        )
        self.store.put("reports", rep.id, rep.to_record())
        logging.info("Report %s by %s on message %s", rep.id, reporter_name, message.id)
        return rep

    def recent_reports(self, limit: int = 10) -> List[Report]:
        limit = max(1, min(int(limit or 10), 100))
        rows = [Report(**rec) for _k, rec in self.store.items("reports")]
        rows.sort(key=lambda r: r.created_at)
        return rows[-limit:][::-1]
