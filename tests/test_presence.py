"""Tests for the presence tracker."""

import pytest

from errors import InvalidRequest
from models import Identity
from policy import ChatPolicy
from presence import PresenceTracker


def _ident(i, name, guest=False):
    return Identity(id=i, username=name, guest=guest, created_at=0.0)


@pytest.fixture
def tracker(clock):
    changes = []
    t = PresenceTracker(ChatPolicy(idle_after_seconds=120), clock, on_change=lambda: changes.append(1))
    t.changes = changes
    return t


def test_online_then_idle_then_back(tracker, clock):
    tracker.online(_ident("a", "alice"))
    assert tracker.status_of("a") == "online"
    clock.advance(119)
    assert tracker.sweep() == []
    clock.advance(1)
    assert tracker.sweep() == ["a"]
    assert tracker.status_of("a") == "idle"
    tracker.activity("a")
    assert tracker.status_of("a") == "online"
    assert len(tracker.changes) == 3


def test_activity_never_overrides_dnd(tracker, clock):
    tracker.online(_ident("a", "alice"))
    tracker.set_status("a", "dnd")
    clock.advance(500)
    tracker.sweep()
    tracker.activity("a")
    assert tracker.status_of("a") == "dnd"


def test_relogin_keeps_dnd_and_wakes_idle(tracker, clock):
    alice, bob = _ident("a", "alice"), _ident("b", "bob")
    tracker.online(alice)
    tracker.online(bob)
    tracker.set_status("a", "dnd")
    clock.advance(200)
    tracker.sweep()
    assert tracker.online(alice) == "dnd"
    assert tracker.online(bob) == "online"


def test_invisible_users_are_hidden_but_counted(tracker):
    tracker.online(_ident("b", "bob"))
    tracker.online(_ident("a", "Alice"))
    tracker.online(_ident("c", "carol"))
    tracker.set_status("c", "invisible")
    snap = tracker.snapshot()
    assert [r["username"] for r in snap] == ["Alice", "bob"]
    assert tracker.online_count() == 3


def test_going_invisible_then_dropping_is_one_visible_change(tracker):
    tracker.online(_ident("a", "alice"))
    tracker.set_status("a", "invisible")
    before = len(tracker.changes)
    tracker.drop("a")
    assert len(tracker.changes) == before
    assert tracker.status_of("a") is None


def test_set_status_validation(tracker):
    with pytest.raises(InvalidRequest):
        tracker.set_status("a", "online")
    tracker.online(_ident("a", "alice"))
    with pytest.raises(InvalidRequest):
        tracker.set_status("a", "away")
    assert tracker.set_status("a", " IDLE ") == "idle"
