import pytest

from mqttchat.config import BrokerEndpoint
from mqttchat.envelope import decode
from mqttchat.events import Connected
from mqttchat.session import SessionManager
from mqttchat.transport import Transport


class FakeTimerHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Deterministic stand-in for the event loop's call_later."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def time(self):
        return self.now

    def call_later(self, delay, callback, *args):
        handle = FakeTimerHandle(self.now + delay, callback, args)
        self.handles.append(handle)
        return handle

    def advance(self, seconds):
        self.now += seconds
        due = sorted(
            (h for h in self.handles if h.when <= self.now), key=lambda h: h.when
        )
        for handle in due:
            self.handles.remove(handle)
            if not handle.cancelled:
                handle.callback(*handle.args)

    @property
    def live_handles(self):
        return [h for h in self.handles if not h.cancelled]


class FakeTransport(Transport):
    def __init__(self):
        super().__init__()
        self.calls = []
        self.published = []

    def connect(self, client_id, endpoint):
        self.generation += 1
        self.calls.append(("connect", client_id, endpoint))

    def disconnect(self):
        self.calls.append(("disconnect",))

    def subscribe(self, topic):
        self.calls.append(("subscribe", topic))

    def publish(self, topic, payload):
        self.calls.append(("publish", topic))
        self.published.append((topic, payload))

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def envelopes(self):
        return [decode(payload) for _, payload in self.published]

    def presence_events(self):
        return [e.event for e in self.envelopes() if e.is_presence]


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def endpoint():
    return BrokerEndpoint("broker.test", 1883)


@pytest.fixture
def session(transport, fake_loop, endpoint):
    return SessionManager(
        transport,
        client_id="me",
        topic="chat/demo",
        endpoint=endpoint,
        quiet_interval=1.5,
        loop=fake_loop,
    )


@pytest.fixture
def connected_session(session):
    session.connect()
    session.dispatch(Connected())
    return session
