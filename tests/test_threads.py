"""Tests for the thread registry: DMs and invite-gated groups."""

import pytest

from errors import (Conflict, Forbidden, GuestNotAllowed, InsufficientInvites, InvalidRequest, NotFound,
                    NotOwner)
from threads import dm_thread_id, thread_kind


def test_dm_thread_is_order_independent(service, make_account):
    a, b = make_account(), make_account()
    t1 = service.threads.ensure_dm(a.id, b.id)
    t2 = service.threads.ensure_dm(b.id, a.id)
    assert t1 == t2 == dm_thread_id(a.id, b.id)
    assert thread_kind(t1) == "dm"


def test_dm_rules(service, make_account, make_guest):
    a, b = make_account(), make_account()
    g = make_guest()
    with pytest.raises(InvalidRequest):
        service.threads.ensure_dm(a.id, a.id)
    with pytest.raises(GuestNotAllowed):
        service.threads.ensure_dm(a.id, g.id)
    c = make_account()
    with pytest.raises(NotFound):
        service.threads.require_member(dm_thread_id(a.id, b.id), c.id)


def test_unknown_thread_ids(service, make_account):
    a = make_account()
    for tid in ("", "lobby", "dm:nope", "g:missing"):
        with pytest.raises(NotFound):
            service.threads.require_member(tid, a.id)


def test_group_needs_an_invitee(service, make_account):
    a = make_account()
    with pytest.raises(InsufficientInvites):
        service.threads.create_group(a.id, "solo", [])
    with pytest.raises(InsufficientInvites):
        service.threads.create_group(a.id, "solo", [a.id])


def test_group_lifecycle(service, make_account):
    owner, b, c = make_account(), make_account(), make_account()
    reg = service.threads
    group = reg.create_group(owner.id, "  Friends  ", [b.id])
    assert group.name == "Friends"
    assert group.members == [owner.id]
    assert not group.active

    # Invitees can see the group but not post in it.
    assert reg.get_group(group.id, b.id).id == group.id
    with pytest.raises(NotFound):
        reg.require_member(group.id, b.id)
    with pytest.raises(NotFound):
        reg.get_group(group.id, c.id)

    group = reg.accept_invite(group.id, b.id)
    assert group.members == [owner.id, b.id]
    assert group.active
    assert reg.require_member(group.id, b.id) == "group"

    with pytest.raises(NotOwner):
        reg.invite(group.id, b.id, c.id)
    reg.invite(group.id, owner.id, c.id)
    with pytest.raises(Conflict):
        reg.invite(group.id, owner.id, c.id)
    with pytest.raises(Conflict):
        reg.invite(group.id, owner.id, b.id)
    group = reg.decline_invite(group.id, c.id)
    assert c.id not in group.invites

    group = reg.remove_member(group.id, owner.id, b.id)
    assert group.members == [owner.id]
    # Once active, a group stays active.
    assert group.active


def test_owner_leave_rules(service, make_account):
    owner, b = make_account(), make_account()
    reg = service.threads
    group = reg.create_group(owner.id, None, [b.id])
    reg.accept_invite(group.id, b.id)
    with pytest.raises(Forbidden) as exc:
        reg.leave(group.id, owner.id)
    assert exc.value.code == "transfer_required"

    reg.transfer_owner(group.id, owner.id, b.id)
    _g, deleted = reg.leave(group.id, owner.id)
    assert not deleted
    _g, deleted = reg.leave(group.id, b.id)
    assert deleted
    with pytest.raises(NotFound):
        reg.get_group(group.id, b.id)


def test_owner_only_mutations(service, make_account):
    owner, b = make_account(), make_account()
    reg = service.threads
    group = reg.create_group(owner.id, "g", [b.id])
    reg.accept_invite(group.id, b.id)
    for call in (
        lambda: reg.rename(group.id, b.id, "mine"),
        lambda: reg.transfer_owner(group.id, b.id, b.id),
        lambda: reg.delete_group(group.id, b.id),
        lambda: reg.remove_member(group.id, b.id, owner.id),
    ):
        with pytest.raises(NotOwner):
            call()
    with pytest.raises(Forbidden):
        reg.remove_member(group.id, owner.id, owner.id)
    with pytest.raises(InvalidRequest):
        reg.rename(group.id, owner.id, "   ")


def test_remove_identity_transfers_to_longest_tenured(service, make_account):
    owner, b, c = make_account(), make_account(), make_account()
    reg = service.threads
    group = reg.create_group(owner.id, "g", [b.id, c.id])
    reg.accept_invite(group.id, c.id)
    reg.accept_invite(group.id, b.id)
    solo = reg.create_group(owner.id, "solo", [b.id])

    actions = {g.id: action for g, action in reg.remove_identity(owner.id)}
    assert actions[group.id] == "transferred"
    assert actions[solo.id] == "deleted"
    assert reg.get_group(group.id, c.id).owner_id == c.id
