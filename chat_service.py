#!/usr/bin/env python3
"""chat_service.py

ChatService wires the engine components together and is the only thing the
transport layers (Socket.IO handlers, HTTP routes, the janitor) talk to.

Send pipeline, in order:
    1. thread access (membership, DM block rule)
    2. under the sender's identity lock:
         dedupe lookup -> cooldown check -> link check -> hard filter
         -> append -> commit cooldown state
    3. per-recipient fan-out (blockers skipped, mute flagged) and mentions

Outbound notifications go through an event sink with ``deliver``,
``broadcast``, ``disconnect_identity`` and ``disconnect_connection``; the
Socket.IO layer provides the real one (socket_handlers.SocketEvents).
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from cooldowns import CooldownEngine, contains_link
from errors import Forbidden, GuestNotAllowed, InvalidRequest, NotFound
from identity import IdentityStore
from locks import KeyedLocks
from message_log import MessageLog
from models import Group, Identity, Message
from moderation import HIDDEN_BY_FILTER, ModerationEngine
from policy import ChatPolicy
from presence import PresenceTracker
from security import log_audit_event
from social import SocialGraph, mentioned_names
from threads import GLOBAL_THREAD_ID, ThreadRegistry, dm_peers, thread_kind

SYSTEM_SENDER = "system"


class NullEvents:
    """Event sink that drops everything (CLI tools, offline use)."""

    def deliver(self, identity_id, event, payload):
        pass

    def broadcast(self, event, payload):
        pass

    def disconnect_identity(self, identity_id, payload):
        pass

    def disconnect_connection(self, connection_id, payload):
        pass


class ChatService:
    def __init__(self, store, policy: ChatPolicy | None = None, events=None, clock=time.time):
        self.store = store
        self.policy = policy or ChatPolicy()
        self.clock = clock
        self.events = events or NullEvents()
        self.locks = KeyedLocks()

        self.moderation = ModerationEngine(store, self.policy, self.locks, clock)
        self.identities = IdentityStore(store, self.policy, self.moderation, self.locks, clock)
        self.presence = PresenceTracker(self.policy, clock, on_change=self._broadcast_presence)
        self.threads = ThreadRegistry(store, self.policy, self.identities, self.locks, clock)
        self.log = MessageLog(store, self.policy, self.locks, clock)
        self.cooldowns = CooldownEngine(store, self.policy, self.locks, clock)
        self.social = SocialGraph(store, self.policy, self.identities, self.moderation, self.locks, clock)

    def bind_events(self, events) -> None:
        self.events = events

    # ──────────────────────────────────────────────────────────────────
    # Sessions & connections
    # ──────────────────────────────────────────────────────────────────
    def login(self, username: str, password: str, ip: str | None = None) -> Tuple[Identity, str]:
        ident, token = self.identities.login(username, password, ip)
        log_audit_event(self.store, ident.username, "login", None, f"ip={ip}")
        return ident, token

    def guest_join(self, name: str | None = None, ip: str | None = None) -> Tuple[Identity, str]:
        ident, token = self.identities.guest_join(name, ip)
        logging.info("Guest %s joined (ip=%s)", ident.username, ip)
        return ident, token

    def resume(self, token: str | None, ip: str | None = None) -> Identity:
        return self.identities.resume(token, ip)

    def logout(self, token: str | None) -> Optional[Identity]:
        ident = self.identities.logout(token)
        if ident is None:
            return None
        log_audit_event(self.store, ident.username, "logout")
        if ident.guest:
            self.events.deliver(ident.id, "force_logout", {"reason": "logout"})
            for cid in self.identities.connections_of(ident.id):
                self.detach(cid)
            self._destroy_guest(ident.id)
        return ident

    def connect(self, connection_id: str, identity: Identity, ip: str | None = None) -> None:
        """Bind a live socket to an identity and mark it online."""
        current = self.identities.connection(connection_id)
        if current is not None and current.identity_id != identity.id:
            self.detach(connection_id)
        self.identities.attach(connection_id, identity, ip)
        self.presence.online(identity)

    def detach(self, connection_id: str):
        conn, last = self.identities.detach(connection_id)
        if conn is not None and last:
            self.presence.drop(conn.identity_id)
        return conn

    def activity(self, identity_id: str) -> None:
        self.presence.activity(identity_id)

    def set_status(self, identity_id: str, status: str) -> str:
        return self.presence.set_status(identity_id, status)

    def presence_payload(self) -> Dict:
        return {"users": self.presence.snapshot(), "online_count": self.presence.online_count()}

    def _broadcast_presence(self) -> None:
        self.events.broadcast("presence", self.presence_payload())

    def whoami(self, identity: Identity) -> Dict:
        out = identity.to_public()
        out.update({
            "settings": dict(identity.settings),
            "mutes": dict(identity.mutes),
            "bio": identity.bio,
            "status": self.presence.status_of(identity.id) or "offline",
        })
        return out

    def _destroy_guest(self, identity_id: str) -> None:
        self.identities.destroy_guest(identity_id)
        self.moderation.forget_identity(identity_id)
        self.cooldowns.forget(identity_id)

    # ──────────────────────────────────────────────────────────────────
    # Messaging
    # ──────────────────────────────────────────────────────────────────
    def _dm_other(self, thread_id: str, identity_id: str) -> str:
        a, b = dm_peers(thread_id)
        return b if identity_id == a else a

    def _check_thread_write(self, identity: Identity, thread_id: str) -> str:
        kind = self.threads.require_member(thread_id, identity.id)
        if kind == "dm":
            other = self._dm_other(thread_id, identity.id)
            if self.moderation.is_blocked(other, identity.id):
                raise Forbidden("This user isn't accepting your messages.", code="blocked")
        return kind

    def send(self, identity: Identity, thread_id: str, content, client_id=None) -> Tuple[Message, bool]:
        """Returns (message, created). A repeated client_id returns the original."""
        thread_id = str(thread_id or "")
        self._check_thread_write(identity, thread_id)
        text = self.log.clean_content(content)

        with self.cooldowns.locked(identity.id):
            dup = self.log.find(thread_id, identity.id, client_id)
            if dup is not None:
                return dup, False
            self.cooldowns.ensure_send_allowed(identity.id)
            self.cooldowns.ensure_link_allowed(identity.id, text)
            stored = self.moderation.apply_hard_filter(text)
            msg = self.log.append(thread_id, identity.id, client_id, stored, "text", identity.username)
            self.cooldowns.record_send(identity.id, identity.guest, text)

        self.presence.activity(identity.id)
        self._fanout("message", msg)
        if stored != HIDDEN_BY_FILTER:
            self._notify_mentions(identity, msg)
        return msg, True

    def edit(self, identity: Identity, message_id: str, content) -> Message:
        current = self.log.get(message_id)
        self.threads.require_member(current.thread_id, identity.id)
        text = self.log.clean_content(content)
        # Editing a link into a linkless message spends the link allowance.
        adds_link = contains_link(text) and not contains_link(current.content)
        with self.cooldowns.locked(identity.id):
            if adds_link:
                self.cooldowns.ensure_link_allowed(identity.id, text)
            msg = self.log.edit(message_id, identity.id, self.moderation.apply_hard_filter(text))
            if adds_link:
                self.cooldowns.record_link(identity.id, text)
        self.presence.activity(identity.id)
        self._fanout("message_edited", msg)
        return msg

    def delete(self, identity: Identity, message_id: str) -> Message:
        current = self.log.get(message_id)
        self.threads.require_member(current.thread_id, identity.id)
        msg = self.log.delete(message_id, identity.id)
        self.presence.activity(identity.id)
        self._fanout("message_deleted", msg)
        return msg

    def history(self, identity: Identity, thread_id: str, limit: int | None = None) -> List[Dict]:
        """The viewer's filtered history of a thread."""
        thread_id = str(thread_id or "")
        self.threads.require_member(thread_id, identity.id)
        return self.view_for(identity, self.log.history(thread_id, limit))

    def view_for(self, viewer: Identity, messages: Iterable[Message]) -> List[Dict]:
        messages = list(messages)
        show_blocked = bool(viewer.settings.get("showBlocked"))
        hidden = self.moderation.blocked_by(viewer.id)
        if not show_blocked:
            messages = self.moderation.visible_to(viewer.id, messages)
        out = []
        for m in messages:
            payload = m.to_public()
            payload["blocked"] = m.sender_id in hidden
            out.append(payload)
        return out

    def _recipients(self, thread_id: str) -> List[str]:
        members = self.threads.members_of(thread_id)
        if members is None:
            return self.identities.connected_identity_ids()
        return members

    def _fanout(self, event: str, msg: Message) -> None:
        payload = msg.to_public()
        kind = thread_kind(msg.thread_id)
        for rid in self._recipients(msg.thread_id):
            viewer = self.identities.get(rid)
            if viewer is None:
                continue
            blocked = rid != msg.sender_id and self.moderation.is_blocked(rid, msg.sender_id)
            if blocked and not viewer.settings.get("showBlocked"):
                continue
            other = self._dm_other(msg.thread_id, rid) if kind == "dm" else None
            muted = rid != msg.sender_id and viewer.is_muted(msg.thread_id, other)
            self.events.deliver(rid, event, {**payload, "muted": muted, "blocked": blocked})

    def _notify_mentions(self, sender: Identity, msg: Message) -> None:
        members = self.threads.members_of(msg.thread_id)
        for name in mentioned_names(msg.content):
            target = self.identities.by_username(name)
            if target is None or target.guest or target.id == sender.id:
                continue
            if members is not None and target.id not in members:
                continue
            if self.moderation.is_blocked(target.id, sender.id):
                continue
            other = sender.id if thread_kind(msg.thread_id) == "dm" else None
            if target.is_muted(msg.thread_id, other):
                continue
            self.social.add_mention(target.id, {
                "message_id": msg.id,
                "thread_id": msg.thread_id,
                "from": sender.username,
                "from_id": sender.id,
                "text": msg.content[:200],
                "ts": msg.created_at,
            })
            self._push_inbox(target.id)

    def _post_system(self, thread_id: str, text: str, kind: str = "system") -> Message:
        msg = self.log.append(thread_id, SYSTEM_SENDER, None, text, kind, SYSTEM_SENDER)
        self._fanout("message", msg)
        return msg

    def open_dm(self, identity: Identity, target_username: str) -> str:
        target = self.identities.require_username(target_username)
        if identity.guest or target.guest:
            raise GuestNotAllowed()
        if self.moderation.is_blocked(target.id, identity.id):
            raise Forbidden("This user isn't accepting your messages.", code="blocked")
        return self.threads.ensure_dm(identity.id, target.id)

    def report(self, identity: Identity, message_id: str, reason: str | None = None) -> Dict:
        if identity.guest:
            raise GuestNotAllowed()
        msg = self.log.get(message_id)
        self.threads.require_member(msg.thread_id, identity.id)
        rep = self.moderation.report(identity.id, identity.username, msg, reason)
        log_audit_event(self.store, identity.username, "report", msg.id, rep.reason)
        return rep.to_public()

    # ──────────────────────────────────────────────────────────────────
    # Groups
    # ──────────────────────────────────────────────────────────────────
    def _people(self, ids: Iterable[str]) -> List[Dict]:
        out = []
        for ident_id in ids:
            ident = self.identities.get(ident_id)
            if ident is not None:
                out.append(ident.to_public())
        return out

    def group_view(self, group: Group) -> Dict:
        out = group.to_public()
        out["members"] = self._people(group.members)
        out["pending"] = self._people(sorted(group.invites))
        return out

    def _group_meta(self, group: Group) -> None:
        view = self.group_view(group)
        for ident_id in list(group.members) + list(group.invites):
            self.events.deliver(ident_id, "group_meta", view)

    def _require_invitable(self, inviter: Identity, username: str) -> Identity:
        target = self.identities.require_username(username)
        if target.guest:
            raise GuestNotAllowed("Guests can't join groups.")
        if self.moderation.either_blocked(inviter.id, target.id):
            raise Forbidden("You can't invite this user.", code="blocked")
        return target

    def _announce_invite(self, group: Group, inviter: Identity, invitee_id: str) -> None:
        invitee = self.identities.get(invitee_id)
        if invitee is None:
            return
        self.events.deliver(invitee_id, "group_invite", {"group": self.group_view(group), "from": inviter.to_public()})
        self._push_inbox(invitee_id)
        self._post_system(group.id, f"{inviter.username} invited {invitee.username}", kind="group_invite")

    def create_group(self, identity: Identity, name: str | None, invitee_usernames) -> Dict:
        if identity.guest:
            raise GuestNotAllowed()
        if isinstance(invitee_usernames, str):
            invitee_usernames = [invitee_usernames]
        if invitee_usernames is None:
            invitee_usernames = []
        if not isinstance(invitee_usernames, (list, tuple)):
            raise InvalidRequest("invitees must be a list of usernames.", code="bad_invitees")
        names = list(dict.fromkeys(str(u) for u in invitee_usernames))
        if len(names) + 1 > self.policy.max_group_members:
            raise InvalidRequest(
                f"A group holds at most {self.policy.max_group_members} people.",
                code="group_full",
                max=self.policy.max_group_members,
            )
        invitees = [self._require_invitable(identity, u).id for u in names]
        group = self.threads.create_group(identity.id, name, invitees)
        log_audit_event(self.store, identity.username, "group_create", group.id, group.name)
        self._post_system(group.id, f"{identity.username} created {group.name}")
        for invitee_id in group.invites:
            self._announce_invite(group, identity, invitee_id)
        self._group_meta(group)
        return self.group_view(group)

    def invite(self, identity: Identity, group_id: str, username: str) -> Dict:
        self.threads.get_group(group_id, identity.id)
        target = self._require_invitable(identity, username)
        group = self.threads.invite(group_id, identity.id, target.id)
        self._announce_invite(group, identity, target.id)
        self._group_meta(group)
        return self.group_view(group)

    def accept_invite(self, identity: Identity, group_id: str) -> Dict:
        group = self.threads.accept_invite(group_id, identity.id)
        self._post_system(group.id, f"{identity.username} joined")
        self._group_meta(group)
        self._push_inbox(identity.id)
        return self.group_view(group)

    def decline_invite(self, identity: Identity, group_id: str) -> None:
        group = self.threads.decline_invite(group_id, identity.id)
        self._group_meta(group)
        self._push_inbox(identity.id)

    def revoke_invite(self, identity: Identity, group_id: str, username: str) -> Dict:
        target = self.identities.require_username(username)
        group = self.threads.revoke_invite(group_id, identity.id, target.id)
        self.events.deliver(target.id, "group_left", {"group_id": group.id, "reason": "invite_revoked"})
        self._push_inbox(target.id)
        self._group_meta(group)
        return self.group_view(group)

    def remove_member(self, identity: Identity, group_id: str, username: str) -> Dict:
        target = self.identities.require_username(username)
        group = self.threads.remove_member(group_id, identity.id, target.id)
        self.events.deliver(target.id, "group_left", {"group_id": group.id, "reason": "removed"})
        self._post_system(group.id, f"{target.username} was removed")
        self._group_meta(group)
        return self.group_view(group)

    def leave_group(self, identity: Identity, group_id: str) -> Dict:
        group, deleted = self.threads.leave(group_id, identity.id)
        self.events.deliver(identity.id, "group_left", {"group_id": group.id, "reason": "left"})
        if deleted:
            self._group_deleted(group, identity)
        else:
            self._post_system(group.id, f"{identity.username} left")
            self._group_meta(group)
        return {"group_id": group.id, "deleted": deleted}

    def rename_group(self, identity: Identity, group_id: str, name: str) -> Dict:
        group = self.threads.rename(group_id, identity.id, name)
        self._post_system(group.id, f"{identity.username} renamed the group to {group.name}")
        self._group_meta(group)
        return self.group_view(group)

    def transfer_group(self, identity: Identity, group_id: str, username: str) -> Dict:
        target = self.identities.require_username(username)
        group = self.threads.transfer_owner(group_id, identity.id, target.id)
        self._post_system(group.id, f"{target.username} is now the owner")
        self._group_meta(group)
        return self.group_view(group)

    def delete_group(self, identity: Identity, group_id: str) -> Dict:
        group = self.threads.delete_group(group_id, identity.id)
        self._group_deleted(group, identity)
        return {"group_id": group.id, "deleted": True}

    def _group_deleted(self, group: Group, actor: Identity | None) -> None:
        log_audit_event(self.store, actor.username if actor else SYSTEM_SENDER, "group_delete", group.id, group.name)
        for ident_id in list(group.members) + list(group.invites):
            self.events.deliver(ident_id, "group_deleted", {"group_id": group.id})
        for ident_id in group.invites:
            self._push_inbox(ident_id)

    def list_groups(self, identity: Identity) -> Dict:
        if identity.guest:
            return {"groups": [], "invites": []}
        return {
            "groups": [self.group_view(g) for g in self.threads.groups_for(identity.id)],
            "invites": [self.group_view(g) for g in self.threads.invites_for(identity.id)],
        }

    # ──────────────────────────────────────────────────────────────────
    # Social graph, blocks, profile, inbox
    # ──────────────────────────────────────────────────────────────────
    def _social_pair(self, identity: Identity, username: str) -> Identity:
        target = self.identities.require_username(username)
        if identity.guest or target.guest:
            raise GuestNotAllowed()
        return target

    def _friend_update(self, *identity_ids: str) -> None:
        for ident_id in identity_ids:
            self.events.deliver(ident_id, "friend_update", self.social.snapshot(ident_id))

    def friend_request(self, identity: Identity, username: str) -> str:
        target = self._social_pair(identity, username)
        status = self.social.request(identity.id, target.id)
        if status == "pending":
            tid = self.threads.ensure_dm(identity.id, target.id)
            msg = self.log.append(tid, identity.id, None, f"{identity.username} sent a friend request",
                                  "friend_request", identity.username)
            self._fanout("message", msg)
            self.events.deliver(target.id, "friend_request", {"from": identity.to_public()})
            self._push_inbox(target.id)
            self._friend_update(identity.id)
        elif status == "accepted":
            self._friend_update(identity.id, target.id)
            self._push_inbox(identity.id)
        return status

    def friend_accept(self, identity: Identity, username: str) -> None:
        target = self._social_pair(identity, username)
        self.social.accept(identity.id, target.id)
        self._friend_update(identity.id, target.id)
        self._push_inbox(identity.id)

    def friend_decline(self, identity: Identity, username: str) -> None:
        target = self._social_pair(identity, username)
        self.social.decline(identity.id, target.id)
        self._friend_update(identity.id, target.id)
        self._push_inbox(identity.id)

    def friend_remove(self, identity: Identity, username: str) -> None:
        target = self._social_pair(identity, username)
        self.social.remove(identity.id, target.id)
        self._friend_update(identity.id, target.id)

    def friends(self, identity: Identity) -> Dict:
        if identity.guest:
            return {"friends": [], "incoming": [], "outgoing": []}
        return self.social.snapshot(identity.id)

    def block(self, identity: Identity, username: str) -> bool:
        target = self.identities.require_username(username)
        added = self.moderation.block(identity.id, target.id)
        if not identity.guest and not target.guest:
            self.social.sever(identity.id, target.id)
            self._friend_update(identity.id, target.id)
        return added

    def unblock(self, identity: Identity, username: str) -> bool:
        target = self.identities.require_username(username)
        return self.moderation.unblock(identity.id, target.id)

    def blocked_list(self, identity: Identity) -> List[Dict]:
        return self._people(sorted(self.moderation.blocked_by(identity.id)))

    def update_profile(self, identity: Identity, **changes) -> Dict:
        updated = self.identities.update_profile(identity.id, **changes)
        return self.whoami(updated)

    def profile(self, username: str) -> Dict:
        ident = self.identities.require_username(username)
        status = self.presence.status_of(ident.id)
        return {
            **ident.to_public(),
            "bio": ident.bio,
            "status": "offline" if status in (None, "invisible") else status,
        }

    def inbox(self, identity_id: str) -> Dict:
        ident = self.identities.get(identity_id)
        if ident is None or ident.guest:
            return {"mentions": [], "friend_requests": [], "group_invites": [], "count": 0}
        mentions = self.social.mentions(identity_id)
        requests = self.social.snapshot(identity_id)["incoming"]
        invites = [self.group_view(g) for g in self.threads.invites_for(identity_id)]
        return {
            "mentions": mentions,
            "friend_requests": requests,
            "group_invites": invites,
            "count": len(mentions) + len(requests) + len(invites),
        }

    def clear_mentions(self, identity: Identity) -> Dict:
        self.social.clear_mentions(identity.id)
        return self.inbox(identity.id)

    def _push_inbox(self, identity_id: str) -> None:
        self.events.deliver(identity_id, "inbox", self.inbox(identity_id))

    # ──────────────────────────────────────────────────────────────────
    # Administrative operations (bot integration)
    # ──────────────────────────────────────────────────────────────────
    def delete_identity(self, username: str, actor: str = "bot") -> Dict:
        """Strike and remove an identity. Returns {strikes, until, permanent}."""
        ident = self.identities.by_username(username)
        if ident is None:
            raise NotFound("User not found.", code="unknown_user")

        result = self.moderation.strike(ident.username, actor=actor)
        self.identities.revoke_identity(ident.id)
        self.events.disconnect_identity(ident.id, {"reason": "deleted", **result})
        for cid in self.identities.connections_of(ident.id):
            self.detach(cid)

        for group, action in self.threads.remove_identity(ident.id):
            if action == "deleted":
                self._group_deleted(group, None)
            else:
                if action == "transferred":
                    owner = self.identities.get(group.owner_id)
                    self._post_system(group.id, f"{owner.username if owner else 'Someone'} is now the owner")
                self._group_meta(group)

        if not ident.guest:
            touched = self.social.forget_identity(ident.id)
            self._friend_update(*touched)
        self.moderation.forget_identity(ident.id)
        self.cooldowns.forget(ident.id)
        self.identities.delete_account(ident.id)

        log_audit_event(self.store, actor, "delete_identity", ident.username, str(result))
        return result

    def post_announcement(self, text, actor: str = "bot") -> Message:
        clean = self.log.clean_content(text)
        msg = self.log.append(GLOBAL_THREAD_ID, SYSTEM_SENDER, None, clean, "announcement", SYSTEM_SENDER)
        self._fanout("message", msg)
        log_audit_event(self.store, actor, "announce", None, clean[:200])
        return msg

    def block_ip(self, ip: str, seconds: int = 3600, actor: str = "bot") -> Dict:
        until = self.moderation.block_ip(ip, seconds, actor=actor)
        addr = str(ip).strip()
        for conn in self.identities.connections_from_ip(addr):
            self.events.disconnect_connection(conn.connection_id, {"reason": "ip_banned", "until": until})
            self.detach(conn.connection_id)
        return {"ok": True, "ip": addr, "until": until}

    def recent_reports(self, limit: int = 10) -> List[Dict]:
        return [r.to_public() for r in self.moderation.recent_reports(limit)]

    # ──────────────────────────────────────────────────────────────────
    # Housekeeping (janitor)
    # ──────────────────────────────────────────────────────────────────
    def sweep(self, now: float | None = None) -> Dict[str, int]:
        now = self.clock() if now is None else now
        idle = self.presence.sweep(now)
        guests = self.identities.purge_guests(now)
        for g in guests:
            self.presence.drop(g.id)
            self.moderation.forget_identity(g.id)
            self.cooldowns.forget(g.id)
        sessions = self.identities.purge_sessions(now)
        ip_bans = self.moderation.purge_expired(now)
        return {"idle": len(idle), "guests": len(guests), "sessions": sessions, "ip_bans": ip_bans}
