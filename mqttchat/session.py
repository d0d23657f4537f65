"""
Chat session over a single broker topic.

`SessionManager` owns the connection status, the chat log and the set of
typing peers. Commands (`connect`, `disconnect`, `send_message`,
`notify_local_typing`) and transport events are applied on one event loop,
so state is never mutated concurrently. Code running on another thread (a
UI toolkit, for instance) hands commands over with
`SessionManager.threadsafe`.
"""
import asyncio

from .config import DEFAULT_BROKER, DEFAULT_TOPIC, generate_client_id, resolve_endpoint
from .envelope import ChatEnvelope, PresenceEvent, decode, encode
from .errors import DecodingError, EncodingError
from .events import Connected, Disconnected, MessageReceived
from .log import console, debug, log
from .state import ConnectionStatus, SessionState
from .typing_timer import DEFAULT_QUIET_INTERVAL, TypingDebouncer


class SessionManager:
    """
    Manages one conversation on a broker topic.

    Every method must be called on the event loop thread that runs `run`;
    use `threadsafe` from any other thread.

    Outgoing chat messages are not appended to the log directly: the client
    is subscribed to its own topic, so its messages come back through the
    inbound path like any other and the log keeps broker order.

    Attributes:
        transport: Adapter offering connect/disconnect/subscribe/publish and
                   an ``events`` queue of transport events.
        client_id (str): Identity of this client, fixed for the session.
        topic (str): The shared chat topic.
        endpoint (BrokerEndpoint): Broker to connect to.
        state (SessionState): Observable session state.
        typing (TypingDebouncer): Local typing presence timer.
    """

    def __init__(
        self,
        transport,
        client_id: str | None = None,
        topic: str = DEFAULT_TOPIC,
        endpoint=None,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self.transport = transport
        self.client_id = client_id or generate_client_id()
        self.topic = topic
        self.endpoint = endpoint or resolve_endpoint(DEFAULT_BROKER)
        self.state = SessionState()
        self.typing = TypingDebouncer(self._publish_presence, quiet_interval, loop)
        self._wants_connection = False
        self._connect_generation = 0
        self._owner_loop: asyncio.AbstractEventLoop | None = None

    def __repr__(self) -> str:
        return f"SessionManager(client_id='{self.client_id}', topic='{self.topic}')"

    @property
    def messages(self) -> tuple:
        return self.state.messages

    @property
    def typing_users(self) -> frozenset:
        return self.state.typing_users

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    def add_listener(self, callback):
        return self.state.add_listener(callback)

    def connect(self):
        """Starts connecting. Does nothing while connecting or connected."""
        if self.state.connection_status != ConnectionStatus.DISCONNECTED:
            debug(f"SessionManager:connect - already {self.state.connection_status}.")
            return
        self._wants_connection = True
        self.state.set_status(ConnectionStatus.CONNECTING)
        log(f"SessionManager:connect. {self.client_id} -> {self.endpoint}")
        self.transport.connect(self.client_id, self.endpoint)
        self._connect_generation = getattr(self.transport, "generation", 0)

    def disconnect(self):
        """Disconnects and drops any pending typing stop. The chat log and typing peers are kept."""
        self._wants_connection = False
        self._stop_local_typing()
        self.transport.disconnect()
        self.state.set_status(ConnectionStatus.DISCONNECTED)

    def send_message(self, text: str):
        if not self.state.is_connected or not text:
            return
        self._publish(ChatEnvelope.chat(self.client_id, text))

    def notify_local_typing(self, text: str):
        """Feeds the current input text to the typing debouncer."""
        if not self.state.is_connected:
            return
        self.typing.notify(text)
        self.state.local_typing = self.typing.active

    def on_inbound_payload(self, payload: bytes):
        try:
            envelope = decode(payload)
        except DecodingError as e:
            debug(f"SessionManager: discarded inbound payload ({len(payload)} bytes): {e}")
            return

        if envelope.is_presence:
            if envelope.event == PresenceEvent.TYPING:
                if envelope.sender != self.client_id:
                    self.state.add_typing_peer(envelope.sender)
            else:
                self.state.remove_typing_peer(envelope.sender)
        else:
            self.state.append_message(envelope)

    def dispatch(self, event):
        """Applies one transport event to the session."""
        if isinstance(event, MessageReceived):
            if event.topic != self.topic:
                debug(f"SessionManager: ignoring message on foreign topic '{event.topic}'")
                return
            self.on_inbound_payload(event.payload)
        elif isinstance(event, Connected):
            if self._is_stale(event):
                debug(f"SessionManager: ignoring {event!r} from an earlier connect.")
                return
            if not self._wants_connection:
                log("SessionManager: connection acknowledged after disconnect, ignoring.")
                return
            self.transport.subscribe(self.topic)
            self.state.set_status(ConnectionStatus.CONNECTED)
            log(f"SessionManager: connected, subscribed to '{self.topic}'.")
        elif isinstance(event, Disconnected):
            if event.reason is None:
                # Confirms our own disconnect(), which already updated the state.
                debug("SessionManager: transport closed.")
                return
            if self._is_stale(event):
                debug(f"SessionManager: ignoring {event!r} from an earlier connect.")
                return
            self._stop_local_typing()
            self.state.set_status(ConnectionStatus.DISCONNECTED)
            log(f"SessionManager: disconnected ({event.reason}).")
        else:
            log(f"SessionManager: unknown transport event {event!r}")

    def threadsafe(self, command, *args):
        """
        Schedules a session command from another thread.

        Example: ``session.threadsafe(session.send_message, "hi")``.

        Raises:
            RuntimeError: If `run` has not been started yet.
        """
        if self._owner_loop is None:
            raise RuntimeError("SessionManager.run() is not running, no loop to hand the command to.")
        self._owner_loop.call_soon_threadsafe(command, *args)

    async def run(self):
        """Consumes transport events in delivery order until cancelled."""
        self._owner_loop = asyncio.get_running_loop()
        while True:
            event = await self.transport.events.get()
            try:
                self.dispatch(event)
            except Exception as e:
                console.print_exception()
                log(f"SessionManager:run - error handling {event!r}: {type(e).__name__}: {e}")

    def _is_stale(self, event) -> bool:
        return event.generation is not None and event.generation < self._connect_generation

    def _stop_local_typing(self):
        self.typing.cancel()
        self.state.local_typing = False

    def _publish_presence(self, event: str):
        self.state.local_typing = self.typing.active
        if not self.state.is_connected:
            debug(f"SessionManager: not connected, dropping '{event}' signal.")
            return
        self._publish(ChatEnvelope.presence(self.client_id, event))

    def _publish(self, envelope: ChatEnvelope):
        try:
            payload = encode(envelope)
        except EncodingError as e:
            console.print_exception()
            log(f"SessionManager: publish abandoned: {e}")
            return
        self.transport.publish(self.topic, payload)
