import asyncio

import pytest

from mqttchat.envelope import PresenceEvent
from mqttchat.typing_timer import TypingDebouncer

TYPING = PresenceEvent.TYPING
STOP = PresenceEvent.STOP_TYPING


@pytest.fixture
def sent():
    return []


@pytest.fixture
def debouncer(sent, fake_loop):
    return TypingDebouncer(sent.append, quiet_interval=1.5, loop=fake_loop)


def test_first_keystroke_sends_typing_once(debouncer, sent):
    debouncer.notify("a")
    debouncer.notify("ab")
    debouncer.notify("abc")
    assert sent == [TYPING]
    assert debouncer.active
    assert debouncer.pending


def test_quiet_interval_sends_stop(debouncer, sent, fake_loop):
    debouncer.notify("a")
    fake_loop.advance(1.49)
    assert sent == [TYPING]
    fake_loop.advance(0.02)
    assert sent == [TYPING, STOP]
    assert not debouncer.active
    assert not debouncer.pending
    fake_loop.advance(10)
    assert sent == [TYPING, STOP]


def test_each_keystroke_restarts_quiet_interval(debouncer, sent, fake_loop):
    debouncer.notify("a")
    fake_loop.advance(1.0)
    debouncer.notify("ab")
    fake_loop.advance(1.0)
    assert sent == [TYPING]
    assert len(fake_loop.live_handles) == 1
    fake_loop.advance(0.6)
    assert sent == [TYPING, STOP]


def test_cleared_input_stops_immediately(debouncer, sent, fake_loop):
    debouncer.notify("a")
    debouncer.notify("")
    assert sent == [TYPING, STOP]
    assert not debouncer.pending
    fake_loop.advance(5)
    assert sent == [TYPING, STOP]


def test_typing_again_after_stop_resends_typing(debouncer, sent, fake_loop):
    debouncer.notify("a")
    fake_loop.advance(2)
    debouncer.notify("b")
    assert sent == [TYPING, STOP, TYPING]


def test_cancel_drops_pending_stop_silently(debouncer, sent, fake_loop):
    debouncer.notify("a")
    debouncer.cancel()
    fake_loop.advance(5)
    assert sent == [TYPING]
    assert not debouncer.active
    assert not debouncer.pending


def test_superseded_callback_has_no_effect(debouncer, sent, fake_loop):
    debouncer.notify("a")
    stale = fake_loop.handles[0]
    debouncer.notify("ab")
    # the loop already picked up the old callback before it was cancelled
    stale.callback(*stale.args)
    assert sent == [TYPING]
    assert debouncer.active


@pytest.mark.asyncio
async def test_stop_fires_on_real_event_loop():
    sent = []
    debouncer = TypingDebouncer(sent.append, quiet_interval=0.05)
    debouncer.notify("h")
    debouncer.notify("he")
    await asyncio.sleep(0.2)
    assert sent == [TYPING, STOP]
