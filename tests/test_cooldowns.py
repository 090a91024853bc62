"""Tests for send cooldowns and the link limiter."""

import pytest

from cooldowns import CooldownEngine, contains_link
from errors import CooldownActive, LinkCooldownActive
from locks import KeyedLocks
from policy import ChatPolicy
from storage import MemoryStore


@pytest.fixture
def engine(clock):
    return CooldownEngine(MemoryStore(), ChatPolicy(), KeyedLocks(), clock)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("see https://example.org/x", True),
        ("www.example.net", True),
        ("join discord.gg now", True),
        ("no links here", False),
        ("version 1.2.3", False),
    ],
)
def test_contains_link(text, expected):
    assert contains_link(text) is expected


def test_account_cooldown(engine, clock):
    engine.record_send("a", guest=False)
    with pytest.raises(CooldownActive) as exc:
        engine.ensure_send_allowed("a")
    assert exc.value.remaining_ms == 3000
    assert exc.value.to_dict()["remaining_ms"] == 3000
    clock.advance(3)
    engine.ensure_send_allowed("a")


def test_guest_cooldown_is_longer(engine, clock):
    engine.record_send("g", guest=True)
    clock.advance(4)
    with pytest.raises(CooldownActive) as exc:
        engine.ensure_send_allowed("g")
    assert exc.value.remaining_ms == 1000


def test_checks_do_not_move_state(engine, clock):
    """A rejected attempt never extends the window."""
    engine.record_send("a", guest=False)
    clock.advance(1)
    for _ in range(3):
        with pytest.raises(CooldownActive):
            engine.ensure_send_allowed("a")
    clock.advance(2)
    engine.ensure_send_allowed("a")


def test_one_link_per_window(engine, clock):
    engine.ensure_link_allowed("a", "https://a.example.com")
    engine.record_send("a", guest=False, content="https://a.example.com")
    clock.advance(10)
    engine.ensure_link_allowed("a", "plain text is fine")
    with pytest.raises(LinkCooldownActive) as exc:
        engine.ensure_link_allowed("a", "www.example.org")
    assert exc.value.remaining_ms == 290_000
    clock.advance(290)
    engine.ensure_link_allowed("a", "www.example.org")


def test_check_and_reserve(engine, clock):
    engine.check_and_reserve("a", "global", guest=False)
    with pytest.raises(CooldownActive):
        engine.check_and_reserve("a", "dm:x|y", guest=False)
    clock.advance(3)
    engine.check_and_reserve("a", "global", guest=False)
    assert engine.remaining_ms("a") == 3000


def test_check_link_consumes_allowance(engine):
    engine.check_link("a", "no link")
    engine.check_link("a", "https://example.com")
    with pytest.raises(LinkCooldownActive):
        engine.check_link("a", "https://example.com/again")


def test_forget(engine):
    engine.record_send("a", guest=False)
    engine.forget("a")
    engine.ensure_send_allowed("a")
