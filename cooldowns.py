"""Rate limiter / cooldown engine.

Two per-identity gates, enforced for every thread type:

  - send cooldown: account_cooldown_seconds (accounts) or
    guest_cooldown_seconds (guests) between accepted sends
  - link limiter: one message containing a URL per link_window_seconds

Checks are pure reads and never move state. State only advances through
``record_send``, ``record_link`` or the reserving ``check_and_reserve``/``check_link``
after a send or edit was accepted.
"""

from __future__ import annotations

import math
import re
import time
from contextlib import contextmanager

from errors import CooldownActive, LinkCooldownActive

URL_RE = re.compile(
    r"(?:\bhttps?://\S+|\bwww\.\S+|\b[a-z0-9-]+\.(?:com|net|org|io|gg|co|me|ly|xyz|tv|app|dev)\b)",
    re.IGNORECASE,
)


def contains_link(content: str | None) -> bool:
    return bool(URL_RE.search(content or ""))


def _remaining_ms(until: float, now: float) -> int:
    return int(math.ceil(max(0.0, until - now) * 1000))


class CooldownEngine:
    def __init__(self, store, policy, locks, clock=time.time):
        self.store = store
        self.policy = policy
        self.locks = locks
        self.clock = clock

    def _state(self, identity_id: str) -> dict:
        return self.store.get("cooldowns", identity_id) or {"next_send_at": 0.0, "last_link_at": None}

    @contextmanager
    def locked(self, identity_id: str):
        """Serialize the check-append-commit sequence for one identity."""
        with self.locks.hold("identity:" + identity_id):
            yield

    def ensure_send_allowed(self, identity_id: str) -> None:
        now = self.clock()
        nxt = float(self._state(identity_id).get("next_send_at") or 0)
        if now < nxt:
            raise CooldownActive(_remaining_ms(nxt, now))

    def ensure_link_allowed(self, identity_id: str, content: str) -> None:
        if not contains_link(content):
            return
        last = self._state(identity_id).get("last_link_at")
        if last is None:
            return
        now = self.clock()
        until = float(last) + self.policy.link_window_seconds
        if now < until:
            raise LinkCooldownActive(_remaining_ms(until, now))

    def record_send(self, identity_id: str, guest: bool, content: str | None = None) -> None:
        now = self.clock()
        state = self._state(identity_id)
        state["next_send_at"] = now + self.policy.cooldown_for(guest)
        if contains_link(content):
            state["last_link_at"] = now
        self.store.put("cooldowns", identity_id, state)

    def record_link(self, identity_id: str, content: str | None) -> None:
        """Consume the link allowance only; the send cooldown is left alone."""
        if not contains_link(content):
            return
        state = self._state(identity_id)
        state["last_link_at"] = self.clock()
        self.store.put("cooldowns", identity_id, state)

    def check_and_reserve(self, identity_id: str, thread_id: str, guest: bool) -> None:
        """Fail with CooldownActive, or start a new cooldown window.

        The window is per identity; ``thread_id`` does not narrow it.
        """
        with self.locked(identity_id):
            self.ensure_send_allowed(identity_id)
            state = self._state(identity_id)
            state["next_send_at"] = self.clock() + self.policy.cooldown_for(guest)
            self.store.put("cooldowns", identity_id, state)

    def check_link(self, identity_id: str, content: str) -> None:
        """Fail with LinkCooldownActive, or consume the link allowance."""
        with self.locked(identity_id):
            self.ensure_link_allowed(identity_id, content)
            if contains_link(content):
                state = self._state(identity_id)
                state["last_link_at"] = self.clock()
                self.store.put("cooldowns", identity_id, state)

    def remaining_ms(self, identity_id: str) -> int:
        return _remaining_ms(float(self._state(identity_id).get("next_send_at") or 0), self.clock())

    def forget(self, identity_id: str) -> None:
        self.store.delete("cooldowns", identity_id)
