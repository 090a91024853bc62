"""Tests for the friend graph and the mention inbox."""

import pytest

from errors import Forbidden, GuestNotAllowed, InvalidRequest, NotFound
from social import mentioned_names


def test_request_accept_remove(service, make_account):
    a, b = make_account(), make_account()
    social = service.social
    assert social.request(a.id, b.id) == "pending"
    assert social.request(a.id, b.id) == "already_pending"
    assert [p["id"] for p in social.snapshot(b.id)["incoming"]] == [a.id]
    assert [p["id"] for p in social.snapshot(a.id)["outgoing"]] == [b.id]

    social.accept(b.id, a.id)
    assert social.are_friends(a.id, b.id) and social.are_friends(b.id, a.id)
    assert social.request(b.id, a.id) == "already_friends"
    snap = social.snapshot(a.id)
    assert snap["incoming"] == [] and snap["outgoing"] == []

    social.remove(a.id, b.id)
    assert not social.are_friends(b.id, a.id)
    with pytest.raises(NotFound):
        social.remove(a.id, b.id)


def test_crossing_requests_become_friends(service, make_account):
    a, b = make_account(), make_account()
    service.social.request(a.id, b.id)
    assert service.social.request(b.id, a.id) == "accepted"
    assert service.social.are_friends(a.id, b.id)


def test_decline(service, make_account):
    a, b = make_account(), make_account()
    service.social.request(a.id, b.id)
    service.social.decline(b.id, a.id)
    assert service.social.snapshot(a.id)["outgoing"] == []
    with pytest.raises(NotFound):
        service.social.accept(b.id, a.id)


def test_guests_and_blocks_are_excluded(service, make_account, make_guest):
    a, b = make_account(), make_account()
    g = make_guest()
    with pytest.raises(GuestNotAllowed):
        service.social.request(a.id, g.id)
    with pytest.raises(InvalidRequest):
        service.social.request(a.id, a.id)
    service.moderation.block(b.id, a.id)
    with pytest.raises(Forbidden):
        service.social.request(a.id, b.id)


def test_forget_identity_touches_everyone(service, make_account):
    a, b, c = make_account(), make_account(), make_account()
    service.social.request(a.id, b.id)
    service.social.accept(b.id, a.id)
    service.social.request(c.id, a.id)
    assert service.social.forget_identity(a.id) == sorted([b.id, c.id])
    assert service.social.snapshot(b.id)["friends"] == []
    assert service.social.snapshot(c.id)["outgoing"] == []


def test_mentioned_names():
    assert mentioned_names("hi @Bob and @bob, @al @carol.x") == ["bob", "carol.x"]


def test_mention_inbox_is_bounded(service, make_account):
    a = make_account()
    limit = service.policy.mention_inbox_limit
    for i in range(limit + 5):
        service.social.add_mention(a.id, {"message_id": f"m{i}", "text": "hi"})
    mentions = service.social.mentions(a.id)
    assert len(mentions) == limit
    assert mentions[-1]["message_id"] == f"m{limit + 4}"
    service.social.clear_mentions(a.id)
    assert service.social.mentions(a.id) == []
