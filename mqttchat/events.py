"""
Events delivered by a transport to the session, in arrival order.

Connection events may carry the transport's connect generation (see
`Transport.generation`) so the session can tell an outcome of an earlier
connect request from one of the current request. The generation is
bookkeeping only and does not take part in equality.
"""


class TransportEvent:
    __slots__ = ()


class Connected(TransportEvent):
    """The broker accepted the connection."""

    __slots__ = ("generation",)

    def __init__(self, generation: int | None = None):
        self.generation = generation

    def __eq__(self, other) -> bool:
        return isinstance(other, Connected)

    def __hash__(self) -> int:
        return hash(Connected)

    def __repr__(self) -> str:
        return f"Connected(generation={self.generation})"


class Disconnected(TransportEvent):
    """
    The connection is gone or was never established.

    Attributes:
        reason (str | None): None for a client-initiated disconnect, otherwise
                             the refusal or failure cause.
        generation (int | None): Connect generation the event belongs to.
    """

    __slots__ = ("reason", "generation")

    def __init__(self, reason: str | None = None, generation: int | None = None):
        self.reason = reason
        self.generation = generation

    def __eq__(self, other) -> bool:
        return isinstance(other, Disconnected) and other.reason == self.reason

    def __hash__(self) -> int:
        return hash((Disconnected, self.reason))

    def __repr__(self) -> str:
        return f"Disconnected(reason={self.reason!r}, generation={self.generation})"


class MessageReceived(TransportEvent):
    __slots__ = ("topic", "payload")

    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, MessageReceived)
            and other.topic == self.topic
            and other.payload == self.payload
        )

    def __hash__(self) -> int:
        return hash((MessageReceived, self.topic, self.payload))

    def __repr__(self) -> str:
        return f"MessageReceived(topic='{self.topic}', payload={len(self.payload)} bytes)"
