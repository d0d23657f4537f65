"""
Wire representation of chat events.

An envelope is a small JSON object carrying either chat text or a
presence signal, never both:

    {"id": "...", "sender": "...", "text": "hello"}
    {"id": "...", "sender": "...", "event": "typing"}

Unknown keys are ignored on decode so newer producers can add fields.
"""
import json
import uuid

from .errors import DecodingError, EncodingError


class PresenceEvent:
    TYPING = "typing"
    STOP_TYPING = "stop_typing"

    ALL = (TYPING, STOP_TYPING)


class ChatEnvelope:
    """
    A chat message or a presence signal.

    Attributes:
        id (str): Unique identifier used for local list identity.
        sender (str): Client identity of the originator.
        text (str | None): Chat content, None for presence envelopes.
        event (str | None): One of `PresenceEvent.ALL`, None for chat envelopes.
    """

    __slots__ = ("id", "sender", "text", "event")

    def __init__(
        self,
        sender: str,
        text: str | None = None,
        event: str | None = None,
        id: str | None = None,
    ):
        self.id = id or str(uuid.uuid4())
        self.sender = sender
        self.text = text
        self.event = event

    @classmethod
    def chat(cls, sender: str, text: str) -> "ChatEnvelope":
        return cls(sender, text=text)

    @classmethod
    def presence(cls, sender: str, event: str) -> "ChatEnvelope":
        return cls(sender, event=event)

    @property
    def is_chat(self) -> bool:
        return self.text is not None and self.event is None

    @property
    def is_presence(self) -> bool:
        return self.event is not None and self.text is None

    def is_valid(self) -> bool:
        return self.is_chat or self.is_presence

    def __eq__(self, other) -> bool:
        if not isinstance(other, ChatEnvelope):
            return NotImplemented
        return (
            self.id == other.id
            and self.sender == other.sender
            and self.text == other.text
            and self.event == other.event
        )

    def __hash__(self) -> int:
        return hash((self.id, self.sender, self.text, self.event))

    def __repr__(self) -> str:
        if self.is_presence:
            return f"ChatEnvelope(sender='{self.sender}', event='{self.event}')"
        return f"ChatEnvelope(sender='{self.sender}', text={self.text!r})"


def encode(envelope: ChatEnvelope) -> bytes:
    """
    Serializes an envelope to compact UTF-8 JSON.

    Raises:
        EncodingError: If the envelope carries neither or both payload kinds,
                       has fields the decoder would reject, or the
                       serializer fails.
    """
    if not envelope.is_valid():
        raise EncodingError(
            f"Envelope must carry exactly one of text or event: {envelope!r}"
        )
    if not isinstance(envelope.id, str) or not envelope.id:
        raise EncodingError(f"Envelope id must be a non-empty string: {envelope.id!r}")
    if not isinstance(envelope.sender, str):
        raise EncodingError(f"Envelope sender must be a string: {envelope.sender!r}")
    if envelope.text is not None and not isinstance(envelope.text, str):
        raise EncodingError(f"Envelope text must be a string: {envelope.text!r}")
    if envelope.event is not None and envelope.event not in PresenceEvent.ALL:
        raise EncodingError(f"Unknown presence event: {envelope.event!r}")
    message = {"id": envelope.id, "sender": envelope.sender}
    if envelope.text is not None:
        message["text"] = envelope.text
    else:
        message["event"] = envelope.event
    try:
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Failed to serialize envelope: {e}") from e


def decode(data: bytes | str) -> ChatEnvelope:
    """
    Parses an envelope from its wire form.

    JSON null is treated the same as an absent key.

    Raises:
        DecodingError: If the payload is not a JSON object, required fields are
                       missing or mistyped, or it carries neither or both of
                       ``text`` and ``event``.
    """
    try:
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data).decode("utf-8")
        message = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodingError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(message, dict):
        raise DecodingError(f"Expected a JSON object, got {type(message).__name__}")

    id_ = message.get("id")
    sender = message.get("sender")
    text = message.get("text")
    event = message.get("event")

    if not isinstance(id_, str) or not id_:
        raise DecodingError("Missing or invalid 'id'")
    if not isinstance(sender, str):
        raise DecodingError("Missing or invalid 'sender'")
    if text is not None and not isinstance(text, str):
        raise DecodingError("'text' must be a string")
    if event is not None and event not in PresenceEvent.ALL:
        raise DecodingError(f"Unknown presence event: {event!r}")
    if (text is None) == (event is None):
        raise DecodingError("Envelope must carry exactly one of 'text' or 'event'")

    return ChatEnvelope(sender, text=text, event=event, id=id_)
