class ChatError(Exception):
    """Base class for chat client errors."""


class EncodingError(ChatError):
    """An envelope could not be serialized."""


class DecodingError(ChatError):
    """An inbound payload is not a valid envelope."""


class TransportError(ChatError):
    """The broker connection failed or was lost."""
