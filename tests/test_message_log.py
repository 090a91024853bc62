"""Tests for the bounded per-thread message log."""

import pytest

from errors import AlreadyDeleted, EditWindowExpired, InvalidRequest, NotAuthor, NotFound
from locks import KeyedLocks
from message_log import DELETED_MARKER, MessageLog
from policy import ChatPolicy
from storage import MemoryStore


@pytest.fixture
def log(clock):
    policy = ChatPolicy(message_log_caps={"global": 5, "dm": 3, "group": 4})
    return MessageLog(MemoryStore(), policy, KeyedLocks(), clock)


def test_append_and_dedupe(log):
    first = log.append("global", "a", "c-1", "hello", sender_name="alice")
    again = log.append("global", "a", "c-1", "something else")
    assert again.id == first.id
    assert again.content == "hello"
    # Same client id from another sender is a different message.
    other = log.append("global", "b", "c-1", "hi")
    assert other.id != first.id
    assert log.find("global", "a", "c-1").id == first.id
    assert log.find("global", "a", None) is None


def test_log_is_bounded_per_thread(log):
    for i in range(8):
        log.append("global", "a", None, f"m{i}")
    history = log.history("global")
    assert [m.content for m in history] == ["m3", "m4", "m5", "m6", "m7"]
    # The limit is clamped to the cap.
    assert len(log.history("global", 500)) == 5
    assert [m.content for m in log.history("global", 2)] == ["m6", "m7"]
    assert log.history("global", 0) == []
    assert log.history("global", -3) == []


def test_created_at_never_goes_backwards(log, clock):
    first = log.append("global", "a", None, "one")
    clock.advance(-10)
    second = log.append("global", "a", None, "two")
    assert second.created_at >= first.created_at
    assert second.seq > first.seq


def test_clean_content(log):
    assert log.clean_content("  hi  ") == "hi"
    for bad in ("", "   ", None, 42, "x" * 2001):
        with pytest.raises(InvalidRequest):
            log.clean_content(bad)


def test_edit_and_delete_window(log, clock):
    msg = log.append("global", "a", None, "hello")
    with pytest.raises(NotAuthor):
        log.edit(msg.id, "b", "hijack")
    edited = log.edit(msg.id, "a", "hello!")
    assert edited.content == "hello!" and edited.edited_at is not None

    clock.advance(61)
    with pytest.raises(EditWindowExpired):
        log.edit(msg.id, "a", "late")
    with pytest.raises(EditWindowExpired):
        log.delete(msg.id, "a")


def test_delete_is_soft_and_final(log):
    msg = log.append("global", "a", None, "oops")
    deleted = log.delete(msg.id, "a")
    assert deleted.deleted and deleted.content == DELETED_MARKER
    assert log.get(msg.id).deleted_at is not None
    assert [m.id for m in log.history("global")] == [msg.id]
    with pytest.raises(AlreadyDeleted):
        log.delete(msg.id, "a")
    with pytest.raises(AlreadyDeleted):
        log.edit(msg.id, "a", "back")


def test_unknown_message_and_kind(log):
    with pytest.raises(NotFound):
        log.get("nope")
    with pytest.raises(InvalidRequest):
        log.append("global", "a", None, "x", kind="shout")
