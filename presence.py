"""Presence tracker.

States are exactly ``online``, ``idle``, ``dnd`` and ``invisible``:

  online    -> idle      no activity from any connection for idle_after_seconds
  idle      -> online    any activity event
  dnd/invisible          only changed by the user, activity never overrides

Only identities with at least one live connection are tracked. Whenever the
visible picture changes the ``on_change`` callback fires so the caller can
broadcast a full snapshot.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

from errors import InvalidRequest

STATUSES = ("online", "idle", "dnd", "invisible")
USER_SELECTABLE = set(STATUSES)


class PresenceTracker:
    def __init__(self, policy, clock=time.time, on_change: Optional[Callable[[], None]] = None):
        self.policy = policy
        self.clock = clock
        self.on_change = on_change
        self._lock = threading.Lock()
        # identity id -> {"username", "guest", "status", "last_active"}
        self._entries: Dict[str, Dict] = {}

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    @staticmethod
    def _visible_change(old: Optional[str], new: Optional[str]) -> bool:
        hidden = (None, "invisible")
        if old in hidden and new in hidden:
            return False
        return old != new

    def online(self, identity) -> str:
        """Mark an identity online on login/resume. dnd/invisible are kept."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get(identity.id)
            old = entry["status"] if entry else None
            if entry is None:
                entry = {"username": identity.username, "guest": identity.guest,
                         "status": "online", "last_active": now}
                self._entries[identity.id] = entry
            else:
                entry["last_active"] = now
                if entry["status"] == "idle":
                    entry["status"] = "online"
            new = entry["status"]
        if self._visible_change(old, new):
            self._changed()
        return new

    def drop(self, identity_id: str) -> None:
        """Identity has no connections left."""
        with self._lock:
            entry = self._entries.pop(identity_id, None)
        if entry and self._visible_change(entry["status"], None):
            self._changed()

    def activity(self, identity_id: str) -> None:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                return
            entry["last_active"] = now
            flipped = entry["status"] == "idle"
            if flipped:
                entry["status"] = "online"
        if flipped:
            self._changed()

    def set_status(self, identity_id: str, status: str) -> str:
        status = str(status or "").strip().lower()
        if status not in USER_SELECTABLE:
            raise InvalidRequest(f"status must be one of {', '.join(STATUSES)}", code="invalid_status")
        now = self.clock()
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                raise InvalidRequest("Not connected.", code="not_connected")
            old = entry["status"]
            entry["status"] = status
            entry["last_active"] = now
        if self._visible_change(old, status):
            self._changed()
        return status

    def sweep(self, now: float | None = None) -> List[str]:
        """Move online identities without recent activity to idle."""
        now = self.clock() if now is None else now
        limit = self.policy.idle_after_seconds
        flipped = []
        with self._lock:
            for ident_id, entry in self._entries.items():
                if entry["status"] == "online" and now - entry["last_active"] >= limit:
                    entry["status"] = "idle"
                    flipped.append(ident_id)
        if flipped:
            self._changed()
        return flipped

    def status_of(self, identity_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(identity_id)
            return entry["status"] if entry else None

    def snapshot(self) -> List[Dict]:
        """Visible identities (invisible ones excluded), sorted by username."""
        with self._lock:
            rows = [
                {"id": ident_id, "username": e["username"], "status": e["status"], "guest": e["guest"]}
                for ident_id, e in self._entries.items()
                if e["status"] != "invisible"
            ]
        rows.sort(key=lambda r: r["username"].lower())
        return rows

    def online_count(self) -> int:
        with self._lock:
            return len(self._entries)
