"""Tests for blocks, the hard filter, strikes, IP bans and reports."""

import pytest

from errors import BannedError, InvalidRequest
from locks import KeyedLocks
from models import Message
from moderation import HIDDEN_BY_FILTER, ModerationEngine
from policy import ChatPolicy
from storage import MemoryStore


@pytest.fixture
def mod(clock):
    return ModerationEngine(MemoryStore(), ChatPolicy(), KeyedLocks(), clock)


def _message(mid, sender):
    return Message(id=mid, seq=1, thread_id="global", sender_id=sender, sender_name=sender,
                   client_id=None, content="x", created_at=0.0)


def test_blocks_are_one_way(mod):
    assert mod.block("a", "b") is True
    assert mod.block("a", "b") is False
    assert mod.is_blocked("a", "b")
    assert not mod.is_blocked("b", "a")
    assert mod.either_blocked("b", "a")
    with pytest.raises(InvalidRequest):
        mod.block("a", "a")
    assert mod.unblock("a", "b") is True
    assert mod.unblock("a", "b") is False


def test_visible_to_filters_blocked_senders(mod):
    mod.block("viewer", "troll")
    msgs = [_message("1", "troll"), _message("2", "friend")]
    assert [m.id for m in mod.visible_to("viewer", msgs)] == ["2"]
    assert len(mod.visible_to("someone_else", msgs)) == 2


def test_forget_identity_clears_both_directions(mod):
    mod.block("a", "b")
    mod.block("b", "a")
    mod.forget_identity("a")
    assert mod.blocked_by("a") == set()
    assert mod.blocked_by("b") == set()


@pytest.mark.parametrize("text", ["kys", "please send nudes", "what's your phone number"])
def test_hard_filter_hides_disallowed_text(mod, text):
    assert mod.apply_hard_filter(text) == HIDDEN_BY_FILTER


def test_hard_filter_passes_normal_text(mod):
    assert mod.apply_hard_filter("good morning") == "good morning"


def test_strike_escalation(mod, clock):
    first = mod.strike("Alice")
    assert first == {"strikes": 1, "until": None, "permanent": False}
    mod.check_identity("alice")

    second = mod.strike("alice")
    assert second["until"] == clock() + 3600
    with pytest.raises(BannedError) as exc:
        mod.check_identity("ALICE")
    assert exc.value.details["scope"] == "identity"

    clock.advance(3601)
    mod.check_identity("alice")
    for _ in range(3):
        last = mod.strike("alice")
    assert last["strikes"] == 5 and last["permanent"]
    clock.advance(10 * 365 * 86400)
    assert mod.is_banned("alice")


def test_ip_ban_validation_and_expiry(mod, clock):
    with pytest.raises(InvalidRequest):
        mod.block_ip("not-an-ip", 60)
    with pytest.raises(InvalidRequest):
        mod.block_ip("10.0.0.9", 0)

    until = mod.block_ip("10.0.0.9", 60)
    assert until == clock() + 60
    with pytest.raises(BannedError) as exc:
        mod.check_ip("10.0.0.9")
    assert exc.value.details["scope"] == "ip"
    mod.check_ip("10.0.0.10")
    mod.check_ip(None)

    clock.advance(61)
    mod.check_ip("10.0.0.9")
    assert mod.purge_expired() == 1


def test_ip_ban_is_clamped(mod, clock):
    until = mod.block_ip("::1", 10 ** 9)
    assert until == clock() + ChatPolicy().max_ip_ban_seconds


def test_reports_newest_first(mod, clock):
    for i in range(3):
        mod.report("r", "reporter", _message(f"m{i}", "x"), f"reason {i}")
        clock.advance(1)
    rows = mod.recent_reports(2)
    assert [r.message_id for r in rows] == ["m2", "m1"]
    public = rows[0].to_public()
    assert public["reporter"] == {"id": "r", "username": "reporter"}
    assert public["reason"] == "reason 2"
