"""
Tests for the in-memory channel window.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import FakeClock


def _message(channel, ts, text="hello"):
    from models.message import Message

    return Message(user_id="U1", channel_id=channel, message_text=text, message_ts=ts)


def _window(**kwargs):
    from services.channel_window import ChannelWindow

    clock = FakeClock()
    return ChannelWindow(clock=clock, **kwargs), clock


def test_keeps_last_messages_oldest_first():
    window, _ = _window(max_messages=3)
    for ts in ("1", "2", "3", "4"):
        window.add(_message("C1", ts))

    assert [m.message_ts for m in window.get_recent("C1")] == ["2", "3", "4"]
    assert [m.message_ts for m in window.get_recent("C1", limit=2)] == ["3", "4"]


def test_readding_a_message_is_a_no_op():
    window, _ = _window()
    window.add(_message("C1", "1"))
    window.add(_message("C1", "1", text="duplicate event"))

    recent = window.get_recent("C1")
    assert len(recent) == 1
    assert recent[0].message_text == "hello"


def test_least_recently_active_channel_is_evicted():
    window, _ = _window(max_channels=2)
    window.add(_message("C1", "1"))
    window.add(_message("C2", "1"))
    window.get_recent("C1")
    window.add(_message("C3", "1"))

    assert window.get_recent("C2") == []
    assert len(window.get_recent("C1")) == 1
    assert len(window) == 2
    assert window.get_stats()["evicted_channels"] == 1


def test_old_messages_are_pruned():
    window, clock = _window(max_age_seconds=60)
    window.add(_message("C1", "1"))
    clock.advance(45)
    window.add(_message("C1", "2"))
    clock.advance(30)

    assert [m.message_ts for m in window.get_recent("C1")] == ["2"]
    clock.advance(60)
    assert window.get_recent("C1") == []
    assert len(window) == 0


def test_clear_and_stats():
    window, _ = _window()
    window.add(_message("C1", "1"))
    window.add(_message("C1", "2"))
    window.add(_message("C2", "1"))

    stats = window.get_stats()
    assert stats["channels"] == 2
    assert stats["messages"] == 3

    window.clear("C1")
    assert window.get_recent("C1") == []
    assert window.get_stats()["messages"] == 1
