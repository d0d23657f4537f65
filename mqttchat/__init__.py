"""
Publish/subscribe chat session over an MQTT broker.

Connects to a broker, subscribes to one shared topic, publishes chat text
and debounced typing presence, and keeps an observable session state.
"""
from .config import BrokerEndpoint, ChatConfig, KNOWN_BROKERS, generate_client_id, resolve_endpoint
from .envelope import ChatEnvelope, PresenceEvent, decode, encode
from .errors import ChatError, DecodingError, EncodingError, TransportError
from .events import Connected, Disconnected, MessageReceived
from .session import SessionManager
from .state import ConnectionStatus, SessionState, StateChange
from .transport import MqttTransport, Transport
from .typing_timer import TypingDebouncer

__version__ = "0.1.0"

__all__ = [
    "BrokerEndpoint",
    "ChatConfig",
    "ChatEnvelope",
    "ChatError",
    "Connected",
    "ConnectionStatus",
    "DecodingError",
    "Disconnected",
    "EncodingError",
    "KNOWN_BROKERS",
    "MessageReceived",
    "MqttTransport",
    "PresenceEvent",
    "SessionManager",
    "SessionState",
    "StateChange",
    "Transport",
    "TransportError",
    "TypingDebouncer",
    "decode",
    "encode",
    "generate_client_id",
    "resolve_endpoint",
]
