"""
Debounced typing presence.

A burst of local input changes becomes one "typing" signal followed by one
"stop_typing" signal, sent either when the input is cleared or after a
quiet interval without further changes.
"""
import asyncio

from .envelope import PresenceEvent
from .log import debug

DEFAULT_QUIET_INTERVAL = 1.5


class TypingDebouncer:
    """
    Single-slot cancellable "stop typing" timer.

    All methods must be called from the event loop thread. Scheduling a new
    stop always cancels the previous one first, and a superseded callback
    does nothing even if the loop had already dequeued it.

    Attributes:
        quiet_interval (float): Seconds without input before "stop_typing" is sent.
        active (bool): True while a "typing" signal is outstanding.
    """

    def __init__(
        self,
        publish,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        """
        Args:
            publish: Called with a `PresenceEvent` value to send a presence envelope.
            quiet_interval: Seconds of inactivity before the automatic stop.
            loop: Event loop used for the delayed stop. Defaults to the running loop.
        """
        self.publish = publish
        self.quiet_interval = quiet_interval
        self.active = False
        self._loop = loop
        self._handle = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def notify(self, text: str):
        """Handles a change of the local input text."""
        self._cancel_pending()
        if text:
            if not self.active:
                self.active = True
                self.publish(PresenceEvent.TYPING)
            self._schedule_stop()
        else:
            self.active = False
            self.publish(PresenceEvent.STOP_TYPING)

    def cancel(self):
        """Drops the pending stop and clears the typing flag without publishing."""
        self._cancel_pending()
        self.active = False

    def _schedule_stop(self):
        loop = self._loop or asyncio.get_running_loop()
        self._generation += 1
        self._handle = loop.call_later(
            self.quiet_interval, self._fire, self._generation
        )

    def _cancel_pending(self):
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, generation: int):
        if generation != self._generation:
            debug(f"TypingDebouncer: ignoring superseded stop #{generation}")
            return
        self._handle = None
        self.active = False
        self.publish(PresenceEvent.STOP_TYPING)
