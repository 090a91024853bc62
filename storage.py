#!/usr/bin/env python3
"""storage.py

The narrow record store the chat engine reads and writes.

Two kinds of data go through it:

  • namespaced key/value records (identities, sessions, threads, moderation
    state, cooldowns, reports, ...). Values are JSON-compatible dicts.
  • per-thread message logs, append-only and trimmed to the newest ``keep``
    entries, with a ``(thread_id, sender_id, client_id)`` lookup for dedupe.

MemoryStore is the default backend (single process, nothing survives a
restart). database.PostgresStore implements the same interface on psycopg2.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections import deque
from typing import Any, Dict, List, Optional, Tuple


class Store:
    """Interface shared by MemoryStore and database.PostgresStore."""

    # ── key/value records ────────────────────────────────────────────
    def get(self, ns: str, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def put(self, ns: str, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, ns: str, key: str) -> bool:
        raise NotImplementedError

    def items(self, ns: str) -> List[Tuple[str, Any]]:
        raise NotImplementedError

    # ── message logs ─────────────────────────────────────────────────
    def append_message(self, thread_id: str, record: Dict[str, Any], keep: int) -> Dict[str, Any]:
        """Append ``record`` (``seq`` is assigned here) and trim the thread."""
        raise NotImplementedError

    def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def find_message(self, thread_id: str, sender_id: str, client_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def update_message(self, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def read_messages(self, thread_id: str, limit: int) -> List[Dict[str, Any]]:
        """Newest ``limit`` messages of a thread, oldest first."""
        raise NotImplementedError

    def drop_messages(self, thread_id: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(Store):
    def __init__(self):
        self._lock = threading.RLock()
        self._kv: Dict[str, Dict[str, Any]] = {}
        self._threads: Dict[str, deque] = {}
        self._messages: Dict[str, Dict[str, Any]] = {}
        self._dedupe: Dict[Tuple[str, str, str], str] = {}
        self._seq = itertools.count(1)

    def get(self, ns, key, default=None):
        with self._lock:
            val = self._kv.get(ns, {}).get(key)
            return copy.deepcopy(val) if val is not None else default

    def put(self, ns, key, value):
        with self._lock:
            self._kv.setdefault(ns, {})[key] = copy.deepcopy(value)

    def delete(self, ns, key):
        with self._lock:
            return self._kv.get(ns, {}).pop(key, None) is not None

    def items(self, ns):
        with self._lock:
            return [(k, copy.deepcopy(v)) for k, v in self._kv.get(ns, {}).items()]

    def append_message(self, thread_id, record, keep):
        with self._lock:
            rec = copy.deepcopy(record)
            rec["seq"] = next(self._seq)
            ids = self._threads.setdefault(thread_id, deque())
            ids.append(rec["id"])
            self._messages[rec["id"]] = rec
            if rec.get("client_id"):
                self._dedupe[(thread_id, rec["sender_id"], rec["client_id"])] = rec["id"]
            while len(ids) > max(1, int(keep)):
                self._forget(ids.popleft())
            return copy.deepcopy(rec)

    def _forget(self, message_id: str) -> None:
        old = self._messages.pop(message_id, None)
        if old and old.get("client_id"):
            self._dedupe.pop((old["thread_id"], old["sender_id"], old["client_id"]), None)

    def get_message(self, message_id):
        with self._lock:
            rec = self._messages.get(message_id)
            return copy.deepcopy(rec) if rec else None

    def find_message(self, thread_id, sender_id, client_id):
        if not client_id:
            return None
        with self._lock:
            mid = self._dedupe.get((thread_id, sender_id, client_id))
            return copy.deepcopy(self._messages[mid]) if mid in self._messages else None

    def update_message(self, record):
        with self._lock:
            if record["id"] not in self._messages:
                return
            self._messages[record["id"]] = copy.deepcopy(record)

    def read_messages(self, thread_id, limit):
        with self._lock:
            ids = list(self._threads.get(thread_id, ()))
            if limit is not None:
                ids = ids[-int(limit):] if int(limit) > 0 else []
            return [copy.deepcopy(self._messages[i]) for i in ids]

    def drop_messages(self, thread_id):
        with self._lock:
            ids = self._threads.pop(thread_id, deque())
            for mid in ids:
                self._forget(mid)
            return len(ids)
