#!/usr/bin/env python3
"""social.py

Friend requests, friendships and the per-account inbox (mentions).

Stored per account in the ``social`` namespace as
``{"friends": [...], "incoming": [...], "outgoing": [...]}``. Both sides of
a pair are always updated together under the pair's locks. Guests are not
part of the graph at all.
"""

from __future__ import annotations

import re
import time
from typing import Dict, List

from errors import Forbidden, InvalidRequest, NotFound

MENTION_RE = re.compile(r"@([A-Za-z0-9_.]{3,20})")


def _empty() -> Dict[str, List[str]]:
    return {"friends": [], "incoming": [], "outgoing": []}


def mentioned_names(content: str | None) -> List[str]:
    return list(dict.fromkeys(m.lower() for m in MENTION_RE.findall(content or "")))


class SocialGraph:
    def __init__(self, store, policy, identities, moderation, locks, clock=time.time):
        self.store = store
        self.policy = policy
        self.identities = identities
        self.moderation = moderation
        self.locks = locks
        self.clock = clock

    def _get(self, identity_id: str) -> Dict[str, List[str]]:
        rec = self.store.get("social", identity_id) or {}
        out = _empty()
        for k in out:
            out[k] = list(rec.get(k) or [])
        return out

    def _put(self, identity_id: str, rec: Dict[str, List[str]]) -> None:
        if any(rec.values()):
            self.store.put("social", identity_id, rec)
        else:
            self.store.delete("social", identity_id)

    def _pair_lock(self, a: str, b: str):
        return self.locks.hold("social:" + a, "social:" + b)

    @staticmethod
    def _add(seq: List[str], item: str) -> None:
        if item not in seq:
            seq.append(item)

    @staticmethod
    def _discard(seq: List[str], item: str) -> None:
        while item in seq:
            seq.remove(item)

    def _check_pair(self, a: str, b: str) -> None:
        if a == b:
            raise InvalidRequest("You can't friend yourself.", code="self_friend")
        self.identities.require_account(a)
        self.identities.require_account(b)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request(self, from_id: str, to_id: str) -> str:
        """Send a friend request.

        Returns "pending" for a new request, "already_pending" or
        "already_friends" for repeats, and "accepted" when ``to_id`` had
        already asked ``from_id``.
        """
        self._check_pair(from_id, to_id)
        if self.moderation.either_blocked(from_id, to_id):
            raise Forbidden("You can't send a request to this user.", code="blocked")
        with self._pair_lock(from_id, to_id):
            a, b = self._get(from_id), self._get(to_id)
            if to_id in a["friends"]:
                return "already_friends"
            if to_id in a["outgoing"]:
                return "already_pending"
            if to_id in a["incoming"]:
                self._befriend(from_id, a, to_id, b)
                return "accepted"
            self._add(a["outgoing"], to_id)
            self._add(b["incoming"], from_id)
            self._put(from_id, a)
            self._put(to_id, b)
            return "pending"

    def _befriend(self, a_id, a, b_id, b) -> None:
        for rec, other in ((a, b_id), (b, a_id)):
            self._discard(rec["incoming"], other)
            self._discard(rec["outgoing"], other)
            self._add(rec["friends"], other)
        self._put(a_id, a)
        self._put(b_id, b)

    def accept(self, identity_id: str, from_id: str) -> None:
        self._check_pair(identity_id, from_id)
        with self._pair_lock(identity_id, from_id):
            me, them = self._get(identity_id), self._get(from_id)
            if from_id not in me["incoming"]:
                raise NotFound("No pending request from that user.", code="no_request")
            self._befriend(identity_id, me, from_id, them)

    def decline(self, identity_id: str, from_id: str) -> None:
        self._check_pair(identity_id, from_id)
        with self._pair_lock(identity_id, from_id):
            me, them = self._get(identity_id), self._get(from_id)
            if from_id not in me["incoming"]:
                raise NotFound("No pending request from that user.", code="no_request")
            self._discard(me["incoming"], from_id)
            self._discard(them["outgoing"], identity_id)
            self._put(identity_id, me)
            self._put(from_id, them)

    def remove(self, identity_id: str, friend_id: str) -> None:
        self._check_pair(identity_id, friend_id)
        with self._pair_lock(identity_id, friend_id):
            me, them = self._get(identity_id), self._get(friend_id)
            if friend_id not in me["friends"]:
                raise NotFound("Not friends.", code="not_friends")
            self._discard(me["friends"], friend_id)
            self._discard(them["friends"], identity_id)
            self._put(identity_id, me)
            self._put(friend_id, them)

    def sever(self, a: str, b: str) -> None:
        """Drop friendship and pending requests in both directions."""
        with self._pair_lock(a, b):
            ra, rb = self._get(a), self._get(b)
            for rec, other in ((ra, b), (rb, a)):
                for k in rec:
                    self._discard(rec[k], other)
            self._put(a, ra)
            self._put(b, rb)

    def forget_identity(self, identity_id: str) -> List[str]:
        """Remove an identity from every edge. Returns the ids that were touched."""
        touched = set()
        for k in self._get(identity_id).values():
            touched.update(k)
        for other in touched:
            self.sever(identity_id, other)
        self.store.delete("social", identity_id)
        self.store.delete("inbox", identity_id)
        return sorted(touched)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def _names(self, ids: List[str]) -> List[Dict]:
        out = []
        for ident_id in ids:
            ident = self.identities.get(ident_id)
            if ident is not None:
                out.append(ident.to_public())
        return out

    def snapshot(self, identity_id: str) -> Dict[str, List[Dict]]:
        rec = self._get(identity_id)
        return {k: self._names(v) for k, v in rec.items()}

    def are_friends(self, a: str, b: str) -> bool:
        return b in self._get(a)["friends"]

    # ------------------------------------------------------------------
    # Mention inbox
    # ------------------------------------------------------------------
    def add_mention(self, identity_id: str, entry: Dict) -> None:
        with self.locks.hold("inbox:" + identity_id):
            rec = self.store.get("inbox", identity_id) or {"mentions": []}
            mentions = [m for m in rec.get("mentions") or [] if m.get("message_id") != entry.get("message_id")]
            mentions.append(entry)
            rec["mentions"] = mentions[-self.policy.mention_inbox_limit:]
            self.store.put("inbox", identity_id, rec)

    def mentions(self, identity_id: str) -> List[Dict]:
        rec = self.store.get("inbox", identity_id) or {}
        return list(rec.get("mentions") or [])

    def clear_mentions(self, identity_id: str) -> None:
        with self.locks.hold("inbox:" + identity_id):
            self.store.delete("inbox", identity_id)
