"""
Session state observed by the presentation layer.

The session manager is the only writer. Observers register with
`SessionState.add_listener` and are called after every effective change.
"""
from .envelope import ChatEnvelope
from .log import console, log


class ConnectionStatus:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StateChange:
    STATUS = "status"
    MESSAGES = "messages"
    TYPING = "typing"


class SessionState:
    """
    Mutable state of one chat session.

    Attributes:
        connection_status (str): One of the `ConnectionStatus` values.
        message_log (list[ChatEnvelope]): Chat envelopes in arrival order.
        typing_peers (set[str]): Senders currently signalling typing, never
                                 including the local client.
        local_typing (bool): True while a local "typing" signal is outstanding.
    """

    def __init__(self):
        self.connection_status = ConnectionStatus.DISCONNECTED
        self.message_log: list[ChatEnvelope] = []
        self.typing_peers: set[str] = set()
        self.local_typing = False
        self._listeners = []

    @property
    def is_connected(self) -> bool:
        return self.connection_status == ConnectionStatus.CONNECTED

    @property
    def messages(self) -> tuple:
        return tuple(self.message_log)

    @property
    def typing_users(self) -> frozenset:
        return frozenset(self.typing_peers)

    def add_listener(self, callback):
        """
        Registers an observer.

        Args:
            callback: Called as ``callback(state, change)`` where ``change`` is
                      one of the `StateChange` values.

        Returns:
            A function that unregisters the observer.
        """
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def set_status(self, status: str) -> bool:
        if status == self.connection_status:
            return False
        self.connection_status = status
        self._notify(StateChange.STATUS)
        return True

    def append_message(self, envelope: ChatEnvelope):
        self.message_log.append(envelope)
        self._notify(StateChange.MESSAGES)

    def add_typing_peer(self, sender: str) -> bool:
        if sender in self.typing_peers:
            return False
        self.typing_peers.add(sender)
        self._notify(StateChange.TYPING)
        return True

    def remove_typing_peer(self, sender: str) -> bool:
        if sender not in self.typing_peers:
            return False
        self.typing_peers.discard(sender)
        self._notify(StateChange.TYPING)
        return True

    def reset(self):
        """Clears the message log and the typing set."""
        if self.message_log:
            self.message_log.clear()
            self._notify(StateChange.MESSAGES)
        if self.typing_peers:
            self.typing_peers.clear()
            self._notify(StateChange.TYPING)

    def _notify(self, change: str):
        for callback in list(self._listeners):
            try:
                callback(self, change)
            except Exception as e:
                console.print_exception()
                log(f"SessionState: listener error on {change} change: {type(e).__name__}: {e}")
