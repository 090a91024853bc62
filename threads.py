#!/usr/bin/env python3
"""threads.py

Thread registry: the global channel, one DM thread per unordered pair of
accounts, and invite-gated groups.

Thread ids:
    global              the singleton global channel
    dm:<a>|<b>          a < b are identity ids
    g:<12 hex chars>    groups

Group rules:
  - the owner is a member from creation; the group turns ``active`` once it
    has two members and stays active afterwards
  - only the owner invites, removes, renames, transfers or deletes
  - the owner can't leave while anyone else is a member (transfer first); an
    owner who is the last member deletes the group by leaving
  - non-members get NotFound, never a hint that the group exists

Every group mutation runs under that group's lock.
"""

from __future__ import annotations

import secrets
import time
from typing import List, Optional, Tuple

from errors import Conflict, Forbidden, InsufficientInvites, InvalidRequest, NotFound, NotOwner
from models import Group

GLOBAL_THREAD_ID = "global"
DEFAULT_GROUP_NAME = "Unnamed Group"


def dm_thread_id(a: str, b: str) -> str:
    lo, hi = sorted((str(a), str(b)))
    return f"dm:{lo}|{hi}"


def dm_peers(thread_id: str) -> Tuple[str, str]:
    body = thread_id[len("dm:"):] if thread_id.startswith("dm:") else ""
    a, sep, b = body.partition("|")
    if not sep or not a or not b:
        raise NotFound("Unknown thread.", code="unknown_thread")
    return a, b


def thread_kind(thread_id: str | None) -> str:
    tid = str(thread_id or "")
    if tid == GLOBAL_THREAD_ID:
        return "global"
    if tid.startswith("dm:"):
        return "dm"
    if tid.startswith("g:"):
        return "group"
    raise NotFound("Unknown thread.", code="unknown_thread")


class ThreadRegistry:
    def __init__(self, store, policy, identities, locks, clock=time.time):
        self.store = store
        self.policy = policy
        self.identities = identities
        self.locks = locks
        self.clock = clock

    # ------------------------------------------------------------------
    # DMs
    # ------------------------------------------------------------------
    def ensure_dm(self, a: str, b: str) -> str:
        """Idempotent, order-independent DM thread for two accounts."""
        if a == b:
            raise InvalidRequest("You can't DM yourself.", code="self_dm")
        self.identities.require_account(a)
        self.identities.require_account(b)
        tid = dm_thread_id(a, b)
        with self.locks.hold("dm:" + tid):
            if self.store.get("threads", tid) is None:
                lo, hi = sorted((a, b))
                self.store.put("threads", tid, {"id": tid, "kind": "dm", "members": [lo, hi],
                                                "created_at": self.clock()})
        return tid

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------
    def require_member(self, thread_id: str, identity_id: str) -> str:
        """Raise NotFound unless ``identity_id`` may read/post in the thread."""
        kind = thread_kind(thread_id)
        if kind == "global":
            return kind
        if kind == "dm":
            a, b = dm_peers(thread_id)
            if identity_id not in (a, b):
                raise NotFound("Unknown thread.", code="unknown_thread")
            other = b if identity_id == a else a
            self.ensure_dm(identity_id, other)
            return kind
        group = self._load(thread_id)
        if identity_id not in group.members:
            raise NotFound("Unknown thread.", code="unknown_thread")
        return kind

    def members_of(self, thread_id: str) -> Optional[List[str]]:
        """Member ids of a DM or group; None for the global channel."""
        kind = thread_kind(thread_id)
        if kind == "global":
            return None
        if kind == "dm":
            return list(dm_peers(thread_id))
        rec = self.store.get("threads", thread_id)
        return list(rec.get("members") or []) if rec else []

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------
    def _load(self, group_id: str) -> Group:
        rec = self.store.get("threads", str(group_id or "")) if str(group_id or "").startswith("g:") else None
        if not rec:
            raise NotFound("Group not found.", code="unknown_group")
        return Group.from_record(rec)

    def _save(self, group: Group) -> None:
        self.store.put("threads", group.id, group.to_record())

    def _lock(self, group_id: str):
        return self.locks.hold("group:" + str(group_id))

    @staticmethod
    def _require_owner(group: Group, identity_id: str) -> None:
        if identity_id not in group.members:
            raise NotFound("Group not found.", code="unknown_group")
        if group.owner_id != identity_id:
            raise NotOwner()

    def _clean_name(self, name: str | None) -> str:
        return str(name or "").strip()[: self.policy.max_group_name_chars].strip()

    def get_group(self, group_id: str, viewer_id: str) -> Group:
        group = self._load(group_id)
        if viewer_id not in group.members and viewer_id not in group.invites:
            raise NotFound("Group not found.", code="unknown_group")
        return group

    def create_group(self, owner_id: str, name: str | None, invitee_ids) -> Group:
        self.identities.require_account(owner_id)
        invitees = [i for i in dict.fromkeys(invitee_ids or []) if i and i != owner_id]
        if not invitees:
            raise InsufficientInvites()
        if len(invitees) + 1 > self.policy.max_group_members:
            raise InvalidRequest(
                f"A group holds at most {self.policy.max_group_members} people.",
                code="group_full",
                max=self.policy.max_group_members,
            )
        for invitee in invitees:
            self.identities.require_account(invitee)
        now = self.clock()
        group = Group(
            id="g:" + secrets.token_hex(6),
            name=self._clean_name(name) or DEFAULT_GROUP_NAME,
            owner_id=owner_id,
            created_at=now,
            members=[owner_id],
            invites={i: {"inviter_id": owner_id, "at": now} for i in invitees},
            active=False,
        )
        with self._lock(group.id):
            self._save(group)
        return group

    def invite(self, group_id: str, inviter_id: str, invitee_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._require_owner(group, inviter_id)
            self.identities.require_account(invitee_id)
            if invitee_id in group.members:
                raise Conflict("Already a member.", code="already_member")
            if invitee_id in group.invites:
                raise Conflict("Already invited.", code="duplicate_invite")
            if len(group.members) + len(group.invites) >= self.policy.max_group_members:
                raise Conflict("This group is full.", code="group_full", max=self.policy.max_group_members)
            group.invites[invitee_id] = {"inviter_id": inviter_id, "at": self.clock()}
            self._save(group)
            return group

    def _pop_invite(self, group: Group, identity_id: str) -> None:
        if identity_id not in group.invites:
            raise NotFound("No pending invite.", code="no_invite")
        group.invites.pop(identity_id)

    def accept_invite(self, group_id: str, identity_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._pop_invite(group, identity_id)
            group.members.append(identity_id)
            if len(group.members) >= 2:
                group.active = True
            self._save(group)
            return group

    def decline_invite(self, group_id: str, identity_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._pop_invite(group, identity_id)
            self._save(group)
            return group

    def revoke_invite(self, group_id: str, owner_id: str, invitee_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._require_owner(group, owner_id)
            self._pop_invite(group, invitee_id)
            self._save(group)
            return group

    def remove_member(self, group_id: str, owner_id: str, target_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._require_owner(group, owner_id)
            if target_id == group.owner_id:
                raise Forbidden("The owner can't be removed.", code="cannot_remove_owner")
            if target_id not in group.members:
                raise NotFound("Not a member.", code="not_member")
            group.members.remove(target_id)
            self._save(group)
            return group

    def leave(self, group_id: str, identity_id: str) -> Tuple[Group, bool]:
        """Returns (group, deleted)."""
        with self._lock(group_id):
            group = self._load(group_id)
            if identity_id not in group.members:
                raise NotFound("Group not found.", code="unknown_group")
            if identity_id == group.owner_id:
                if len(group.members) > 1:
                    raise Forbidden("Transfer ownership before leaving.", code="transfer_required")
                self._drop(group)
                return group, True
            group.members.remove(identity_id)
            self._save(group)
            return group, False

    def rename(self, group_id: str, owner_id: str, name: str | None) -> Group:
        clean = self._clean_name(name)
        if not clean:
            raise InvalidRequest("Group name can't be empty.", code="empty_name")
        with self._lock(group_id):
            group = self._load(group_id)
            self._require_owner(group, owner_id)
            group.name = clean
            self._save(group)
            return group

    def transfer_owner(self, group_id: str, owner_id: str, target_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._require_owner(group, owner_id)
            if target_id not in group.members:
                raise NotFound("Not a member.", code="not_member")
            group.owner_id = target_id
            self._save(group)
            return group

    def delete_group(self, group_id: str, owner_id: str) -> Group:
        with self._lock(group_id):
            group = self._load(group_id)
            self._require_owner(group, owner_id)
            self._drop(group)
            return group

    def _drop(self, group: Group) -> None:
        self.store.delete("threads", group.id)
        self.store.drop_messages(group.id)

    def _all_groups(self) -> List[Group]:
        return [Group.from_record(rec) for _k, rec in self.store.items("threads") if rec.get("kind") == "group"]

    def groups_for(self, identity_id: str) -> List[Group]:
        groups = [g for g in self._all_groups() if identity_id in g.members]
        groups.sort(key=lambda g: g.created_at)
        return groups

    def invites_for(self, identity_id: str) -> List[Group]:
        groups = [g for g in self._all_groups() if identity_id in g.invites]
        groups.sort(key=lambda g: g.invites[identity_id].get("at") or 0)
        return groups

    def remove_identity(self, identity_id: str) -> List[Tuple[Group, str]]:
        """Detach an identity from every group it touches.

        Owned groups pass to the longest-tenured remaining member, or are
        deleted when nobody else is left. Returns (group, action) pairs with
        action in {"transferred", "deleted", "left", "invite_dropped"}.
        """
        out = []
        for snapshot in self._all_groups():
            if identity_id not in snapshot.members and identity_id not in snapshot.invites:
                continue
            with self._lock(snapshot.id):
                try:
                    group = self._load(snapshot.id)
                except NotFound:
                    continue
                if identity_id in group.invites:
                    group.invites.pop(identity_id)
                    self._save(group)
                    out.append((group, "invite_dropped"))
                if identity_id not in group.members:
                    continue
                group.members.remove(identity_id)
                if group.owner_id == identity_id:
                    if group.members:
                        group.owner_id = group.members[0]
                        self._save(group)
                        out.append((group, "transferred"))
                    else:
                        self._drop(group)
                        out.append((group, "deleted"))
                else:
                    self._save(group)
                    out.append((group, "left"))
        return out
