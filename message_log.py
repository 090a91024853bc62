#!/usr/bin/env python3
"""message_log.py

Append-only, bounded, per-thread message log.

  - ``append`` looks up ``(thread, sender, client_id)`` first and returns the
    stored message unchanged on a repeat, so client retries are harmless
  - each thread keeps only its newest N entries (``message_log_caps``);
    trimming only affects history, never the message just appended
  - edit/delete: sender only, within ``edit_window_seconds``, never after a
    delete. Deletes are soft: the entry stays, its content becomes a marker
  - appends for one thread are serialized, and ``created_at`` never goes
    backwards inside a thread
"""

from __future__ import annotations

import time
import uuid
from typing import List, Optional

from errors import AlreadyDeleted, EditWindowExpired, InvalidRequest, NotAuthor, NotFound
from models import MESSAGE_KINDS, Message
from threads import thread_kind

DELETED_MARKER = "__DELETED__"
MAX_CLIENT_ID_CHARS = 64


class MessageLog:
    def __init__(self, store, policy, locks, clock=time.time):
        self.store = store
        self.policy = policy
        self.locks = locks
        self.clock = clock

    def clean_content(self, content) -> str:
        if not isinstance(content, str):
            raise InvalidRequest("Message must be text.", code="bad_message")
        text = content.strip()
        if not text:
            raise InvalidRequest("Message is empty.", code="empty")
        if len(text) > self.policy.max_message_chars:
            raise InvalidRequest(
                f"Message too long (max {self.policy.max_message_chars}).",
                code="too_long",
                max=self.policy.max_message_chars,
            )
        return text

    @staticmethod
    def clean_client_id(client_id) -> Optional[str]:
        if client_id is None or client_id == "":
            return None
        cid = str(client_id).strip()
        if len(cid) > MAX_CLIENT_ID_CHARS:
            raise InvalidRequest("client_id too long.", code="bad_client_id")
        return cid or None

    def find(self, thread_id: str, sender_id: str, client_id: str | None) -> Optional[Message]:
        cid = self.clean_client_id(client_id)
        if not cid:
            return None
        rec = self.store.find_message(thread_id, sender_id, cid)
        return Message.from_record(rec) if rec else None

    def append(self, thread_id: str, sender_id: str, client_id: str | None, content: str,
               kind: str = "text", sender_name: str | None = None) -> Message:
        if kind not in MESSAGE_KINDS:
            raise InvalidRequest(f"Unknown message kind {kind!r}.", code="bad_kind")
        tkind = thread_kind(thread_id)
        cid = self.clean_client_id(client_id)
        with self.locks.hold("thread:" + thread_id):
            if cid:
                existing = self.store.find_message(thread_id, sender_id, cid)
                if existing:
                    return Message.from_record(existing)
            now = self.clock()
            last = self.store.read_messages(thread_id, 1)
            if last:
                now = max(now, float(last[-1]["created_at"]))
            msg = Message(
                id=uuid.uuid4().hex,
                seq=0,
                thread_id=thread_id,
                sender_id=sender_id,
                sender_name=sender_name or sender_id,
                client_id=cid,
                content=content,
                created_at=now,
                kind=kind,
            )
            rec = self.store.append_message(thread_id, msg.to_record(), self.policy.log_cap(tkind))
            return Message.from_record(rec)

    def get(self, message_id: str) -> Message:
        rec = self.store.get_message(str(message_id or ""))
        if not rec:
            raise NotFound("Message not found.", code="unknown_message")
        return Message.from_record(rec)

    def _check_mutable(self, msg: Message, requester_id: str) -> None:
        if msg.sender_id != requester_id:
            raise NotAuthor()
        if msg.deleted:
            raise AlreadyDeleted()
        if self.clock() - msg.created_at > self.policy.edit_window_seconds:
            raise EditWindowExpired(window_seconds=self.policy.edit_window_seconds)

    def edit(self, message_id: str, requester_id: str, new_content: str) -> Message:
        msg = self.get(message_id)
        with self.locks.hold("thread:" + msg.thread_id):
            msg = self.get(message_id)
            self._check_mutable(msg, requester_id)
            msg.content = new_content
            msg.edited_at = self.clock()
            self.store.update_message(msg.to_record())
            return msg

    def delete(self, message_id: str, requester_id: str) -> Message:
        msg = self.get(message_id)
        with self.locks.hold("thread:" + msg.thread_id):
            msg = self.get(message_id)
            self._check_mutable(msg, requester_id)
            msg.content = DELETED_MARKER
            msg.deleted_at = self.clock()
            self.store.update_message(msg.to_record())
            return msg

    def history(self, thread_id: str, limit: int | None = None) -> List[Message]:
        """Newest-last, at most ``limit`` entries (clamped to the thread's cap).

        A ``limit`` of zero or less yields an empty list.
        """
        cap = self.policy.log_cap(thread_kind(thread_id))
        try:
            limit = int(limit) if limit is not None else cap
        except (TypeError, ValueError):
            limit = cap
        if limit <= 0:
            return []
        limit = min(limit, cap)
        return [Message.from_record(r) for r in self.store.read_messages(thread_id, limit)]
