#!/usr/bin/env python3
"""models.py

Plain records shared by the chat components.

Records are stored as JSON-compatible dicts (see storage.py), so every model
has a ``to_record``/``from_record`` pair. ``to_public`` is the wire shape sent
to clients and never contains secrets.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_SETTINGS: Dict[str, Any] = {
    "sounds": True,
    "hideMildProfanity": False,
    "showBlocked": False,
}

MESSAGE_KINDS = {"text", "system", "friend_request", "group_invite", "announcement"}


def default_mutes() -> Dict[str, Any]:
    return {"global": False, "dms": [], "groups": []}


@dataclass
class Identity:
    id: str
    username: str
    guest: bool
    created_at: float
    password_hash: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))
    mutes: Dict[str, Any] = field(default_factory=default_mutes)
    bio: str = ""

    @property
    def key(self) -> str:
        return self.username.lower()

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Identity":
        return cls(
            id=rec["id"],
            username=rec["username"],
            guest=bool(rec.get("guest")),
            created_at=float(rec.get("created_at") or 0),
            password_hash=rec.get("password_hash"),
            settings={**DEFAULT_SETTINGS, **(rec.get("settings") or {})},
            mutes={**default_mutes(), **(rec.get("mutes") or {})},
            bio=str(rec.get("bio") or ""),
        )

    def to_public(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "guest": self.guest}

    def is_muted(self, thread_id: str, other_id: str | None = None) -> bool:
        if thread_id == "global":
            return bool(self.mutes.get("global"))
        if thread_id.startswith("dm:"):
            return bool(other_id) and other_id in (self.mutes.get("dms") or [])
        return thread_id in (self.mutes.get("groups") or [])


@dataclass
class Connection:
    connection_id: str
    identity_id: str
    ip: Optional[str]
    connected_at: float
    last_seen: float


@dataclass
class Message:
    id: str
    seq: int
    thread_id: str
    sender_id: str
    sender_name: str
    client_id: Optional[str]
    content: str
    created_at: float
    kind: str = "text"
    edited_at: Optional[float] = None
    deleted_at: Optional[float] = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Message":
        return cls(**{k: rec.get(k) for k in cls.__dataclass_fields__ if k in rec})

    def to_public(self) -> Dict[str, Any]:
        out = asdict(self)
        out["deleted"] = self.deleted
        return out


@dataclass
class Group:
    id: str
    name: str
    owner_id: str
    created_at: float
    # Ordered by join time: index 0 is the longest-tenured member.
    members: List[str] = field(default_factory=list)
    # invitee id -> {"inviter_id": ..., "at": ...}
    invites: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    active: bool = False

    def to_record(self) -> Dict[str, Any]:
        rec = asdict(self)
        rec["kind"] = "group"
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Group":
        return cls(
            id=rec["id"],
            name=rec.get("name") or "",
            owner_id=rec["owner_id"],
            created_at=float(rec.get("created_at") or 0),
            members=list(rec.get("members") or []),
            invites=dict(rec.get("invites") or {}),
            active=bool(rec.get("active")),
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "members": list(self.members),
            "pending": sorted(self.invites),
            "active": self.active,
            "created_at": self.created_at,
        }


@dataclass
class Report:
    id: str
    reporter_id: str
    reporter_name: str
    message_id: str
    thread_id: str
    reason: str
    created_at: float

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.created_at,
            "reporter": {"id": self.reporter_id, "username": self.reporter_name},
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "reason": self.reason,
        }
