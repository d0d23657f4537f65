"""
Broker transport for the chat session.

`Transport` is the capability the session manager drives: non-blocking
connect/disconnect/subscribe/publish commands, with results delivered later
as `Connected`, `Disconnected` and `MessageReceived` events on the
``events`` queue.

`MqttTransport` implements it with a small MQTT 3.1.1 client over asyncio
streams: QoS 0 publish and subscribe, keep-alive pings, and automatic
reconnection with exponential backoff after an unexpected drop.
"""
import asyncio
import random
import struct
from time import monotonic

from .errors import TransportError
from .events import Connected, Disconnected, MessageReceived
from .log import console, debug, dump_array, get_verbose, log


def ticks_ms() -> int:
    return int(monotonic() * 1000)


class Transport:
    """
    Interface between the session manager and a message broker.

    Every command returns immediately. Outcomes arrive on ``events`` in the
    order they happened.

    Attributes:
        events (asyncio.Queue): Transport events in delivery order.
        generation (int): Incremented by every `connect` that starts a new
                          connection; connection events are tagged with it.
    """

    def __init__(self):
        self.events: asyncio.Queue = asyncio.Queue()
        self.generation = 0

    def connect(self, client_id: str, endpoint):
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError

    def subscribe(self, topic: str):
        raise NotImplementedError

    def publish(self, topic: str, payload: bytes):
        raise NotImplementedError

    def _emit(self, event):
        self.events.put_nowait(event)


class StreamConnection:
    """
    A TCP (optionally TLS) connection to the broker.

    All failures are raised as `TransportError`.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        timeout: float | None = None,
    ):
        self.reader = reader
        self.writer = writer
        self._timeout = timeout

    @classmethod
    async def open(
        cls, host: str, port: int, ssl: bool = False, timeout: float | None = None
    ) -> "StreamConnection":
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=ssl), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to connect to {host}:{port}: {e or type(e).__name__}") from e
        return cls(reader, writer, timeout)

    async def write(self, data: bytes):
        if self.writer is None:
            raise TransportError("Cannot write, stream is closed.")
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), self._timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"Write failed: {e or type(e).__name__}") from e

    async def read_exactly(self, n: int) -> bytes:
        if self.reader is None:
            raise TransportError("Cannot read, stream is closed.")
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise TransportError("Connection closed by broker") from e
        except OSError as e:
            raise TransportError(f"Read failed: {e}") from e

    async def close(self):
        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except OSError as e:
                debug(f"StreamConnection:close error: {e}")
        self.reader = None
        self.writer = None


class MQTTProtocol:
    """
    MQTT 3.1.1 packet construction and parsing on top of a `StreamConnection`.
    """

    CONNECT = 0x10
    CONNACK = 0x20
    PUBLISH = 0x30
    PUBACK = 0x40
    SUBSCRIBE = 0x82
    SUBACK = 0x90
    PINGREQ = 0xC0
    PINGRESP = 0xD0
    DISCONNECT = 0xE0

    CONNACK_CODES = {
        0: "Connection accepted",
        1: "Connection refused: unacceptable protocol version",
        2: "Connection refused: identifier rejected",
        3: "Connection refused: server unavailable",
        4: "Connection refused: bad username or password",
        5: "Connection refused: not authorized",
    }

    def __init__(self, timeout_sec: float = 10):
        self.timeout_sec = timeout_sec
        self.stream: StreamConnection | None = None
        self.pid = 0

    async def connect(
        self, host: str, port: int, client_id: str, keepalive: int, ssl: bool = False
    ) -> bool:
        """
        Opens the stream, sends CONNECT and waits for CONNACK.

        Returns:
            The broker's session-present flag.

        Raises:
            TransportError: On network failure, timeout or a refused connection.
        """
        self.stream = await StreamConnection.open(
            host, port, ssl=ssl, timeout=self.timeout_sec
        )
        await self.send_packet(self.CONNECT, self.build_connect(client_id, keepalive))
        try:
            packet_type, payload = await asyncio.wait_for(
                self.read_packet(), timeout=self.timeout_sec
            )
        except asyncio.TimeoutError as e:
            raise TransportError("Timeout waiting for CONNACK") from e

        if packet_type != self.CONNACK or len(payload) < 2:
            raise TransportError(f"Expected CONNACK but received {packet_type:#04x}")
        return_code = payload[1]
        if return_code != 0:
            raise TransportError(self.get_error_message(return_code))
        return bool(payload[0] & 0x01)

    async def send_packet(self, packet_type: int, payload: bytes):
        if self.stream is None:
            raise TransportError("Cannot send packet, stream is not available.")
        packet = bytes([packet_type]) + self.encode_remaining_length(len(payload)) + payload
        if get_verbose() >= 2:
            dump_array(packet, header=f"Sending packet type: {packet_type:#04x}")
        await self.stream.write(packet)

    async def read_packet(self) -> tuple[int, bytes]:
        if self.stream is None:
            raise TransportError("Cannot read packet, stream is not available.")
        packet_type = (await self.stream.read_exactly(1))[0]
        remaining_length = 0
        multiplier = 1
        for _ in range(4):
            byte = (await self.stream.read_exactly(1))[0]
            remaining_length += (byte & 0x7F) * multiplier
            if not byte & 0x80:
                break
            multiplier *= 128
        else:
            raise TransportError("Malformed remaining length")

        payload = b""
        if remaining_length:
            payload = await self.stream.read_exactly(remaining_length)
        if get_verbose() >= 2:
            dump_array(payload, header=f"Received packet type: {packet_type:#04x}")
        return packet_type, payload

    def build_connect(self, client_id: str, keepalive: int) -> bytes:
        packet = bytearray()
        packet.extend(self.encode_string("MQTT"))
        packet.append(4)  # protocol level 3.1.1
        packet.append(0x02)  # clean session
        packet.extend(struct.pack("!H", keepalive))
        packet.extend(self.encode_string(client_id))
        return bytes(packet)

    def build_subscribe(self, topic: str, qos: int = 0) -> tuple[int, bytes]:
        pid = self.next_packet_id()
        return pid, struct.pack("!H", pid) + self.encode_string(topic) + bytes([qos])

    def build_publish(self, topic: str, message: bytes) -> bytes:
        return self.encode_string(topic) + message

    def parse_publish(self, packet_type: int, payload: bytes) -> tuple[str, bytes, int, int]:
        """
        Splits a PUBLISH packet.

        Returns:
            (topic, message, qos, packet id). The packet id is 0 for QoS 0.
        """
        try:
            qos = (packet_type & 0x06) >> 1
            topic_len = struct.unpack("!H", payload[:2])[0]
            topic = payload[2 : 2 + topic_len].decode("utf-8")
            offset = 2 + topic_len
            pid = 0
            if qos > 0:
                pid = struct.unpack("!H", payload[offset : offset + 2])[0]
                offset += 2
        except (struct.error, UnicodeDecodeError) as e:
            raise TransportError(f"Malformed PUBLISH packet: {e}") from e
        return topic, payload[offset:], qos, pid

    def encode_string(self, s: str | bytes) -> bytes:
        if isinstance(s, str):
            s = s.encode("utf-8")
        return struct.pack("!H", len(s)) + s

    def encode_remaining_length(self, length: int) -> bytes:
        encoded = bytearray()
        while True:
            byte = length % 128
            length //= 128
            if length > 0:
                byte |= 0x80
            encoded.append(byte)
            if length == 0:
                return bytes(encoded)

    def next_packet_id(self) -> int:
        self.pid = (self.pid % 65535) + 1
        return self.pid

    def get_error_message(self, error_code: int) -> str:
        return self.CONNACK_CODES.get(error_code, f"Unknown error code: {error_code}")

    async def close(self):
        if self.stream:
            await self.stream.close()
            self.stream = None


class MqttTransport(Transport):
    """
    `Transport` backed by an MQTT 3.1.1 broker connection.

    Outbound packets go through one queue drained by a single writer task,
    so publishes reach the broker in call order.

    Attributes:
        reconnect_delay (float): Base reconnect delay in seconds. 0 disables
                                 automatic reconnection.
        reconnect_max_delay (float): Upper bound of the backoff delay.
        timeout_sec (float): Network and CONNACK timeout.
        connected (bool): True while the broker connection is up.
        reconnect_attempt (int): Consecutive reconnect attempts since the last success.
    """

    def __init__(
        self,
        reconnect_delay: float = 1,
        reconnect_max_delay: float = 60,
        timeout_sec: float = 10,
    ):
        super().__init__()
        self.reconnect_delay = reconnect_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.timeout_sec = timeout_sec
        self.client_id = None
        self.endpoint = None
        self.connected = False
        self.reconnect_attempt = 0
        self.subscriptions = {}  # pid -> topic awaiting SUBACK
        self.protocol: MQTTProtocol | None = None
        self.last_rx = 0
        self.last_ping = 0
        self._task = None
        self._outbox: asyncio.Queue | None = None
        self._closed_generation = 0
        self._active_generation = 0

    def __repr__(self) -> str:
        return f"MqttTransport(client_id='{self.client_id}', endpoint={self.endpoint!r})"

    def connect(self, client_id: str, endpoint):
        """
        Starts a connection task. A task still shutting down after
        `disconnect` is allowed to finish before the new one connects.
        """
        previous = None
        if self._task is not None and not self._task.done():
            if not self._is_closed(self.generation):
                log("MqttTransport:connect - connection already running.")
                return
            previous = self._task
        self.client_id = client_id
        self.endpoint = endpoint
        self.reconnect_attempt = 0
        self.generation += 1
        generation = self.generation
        self._task = asyncio.get_running_loop().create_task(self._run(generation, previous))
        self._task.add_done_callback(lambda task: self._run_done(generation, task))

    def disconnect(self):
        self._closed_generation = self.generation
        if self._task is None or self._task.done():
            return
        if self.connected and self._outbox is not None:
            # Sent after anything already queued.
            self._outbox.put_nowait(None)
        else:
            self._task.cancel()

    def subscribe(self, topic: str, qos: int = 0):
        if not self.connected or self._outbox is None:
            log(f"MqttTransport:subscribe - not connected, skipping '{topic}'.")
            return
        pid, packet = self.protocol.build_subscribe(topic, qos)
        self.subscriptions[pid] = topic
        self._outbox.put_nowait((MQTTProtocol.SUBSCRIBE, packet))

    def publish(self, topic: str, payload: bytes):
        if not self.connected or self._outbox is None:
            log(f"MqttTransport:publish - not connected, dropping {len(payload)} bytes for '{topic}'.")
            return
        self._outbox.put_nowait((MQTTProtocol.PUBLISH, self.protocol.build_publish(topic, payload)))

    async def wait_closed(self):
        """Waits for the connection task to finish."""
        if self._task is not None:
            await asyncio.wait([self._task])

    def _is_closed(self, generation: int) -> bool:
        return self._closed_generation >= generation

    def _run_done(self, generation: int, task: asyncio.Task):
        if self._is_closed(generation):
            self._emit(Disconnected(None, generation))
            return
        exc = None if task.cancelled() else task.exception()
        if exc is not None:
            log(f"MqttTransport: connection task failed: {type(exc).__name__}: {exc}")
            self._emit(Disconnected(str(exc) or type(exc).__name__, generation))

    async def _run(self, generation: int, previous=None):
        if previous is not None:
            await asyncio.wait([previous])
        self._active_generation = generation
        while not self._is_closed(generation):
            was_connected, reason = await self._session()
            if self._is_closed(generation):
                break
            self._emit(Disconnected(reason, generation))
            if not self._should_reconnect(was_connected):
                break
            self.reconnect_attempt += 1
            delay = self._next_delay()
            log(f"MqttTransport: reconnect attempt {self.reconnect_attempt} in {delay:.2f}s...")
            await asyncio.sleep(delay)

    def _should_reconnect(self, was_connected: bool) -> bool:
        if self.reconnect_delay <= 0 or self.reconnect_max_delay <= 0:
            return False
        return was_connected or self.reconnect_attempt > 0

    def _next_delay(self) -> float:
        delay = min(
            self.reconnect_delay * (2 ** (self.reconnect_attempt - 1)),
            self.reconnect_max_delay,
        )
        return delay + random.uniform(0, delay * 0.1)

    async def _session(self) -> tuple[bool, str | None]:
        """
        Runs one broker connection from CONNECT until it ends.

        Returns:
            (whether the broker accepted the connection, reason it ended).
        """
        endpoint = self.endpoint
        self.protocol = MQTTProtocol(self.timeout_sec)
        tasks = []
        try:
            try:
                log(f"MqttTransport:connect. Connecting to {endpoint.host}:{endpoint.port}")
                session_present = await self.protocol.connect(
                    endpoint.host,
                    endpoint.port,
                    self.client_id,
                    endpoint.keepalive,
                    ssl=endpoint.ssl,
                )
            except TransportError as e:
                log(f"MqttTransport:connect failed: {e}")
                return False, str(e)
            except Exception as e:
                console.print_exception()
                log(f"MqttTransport:connect failed: {type(e).__name__}: {e}")
                return False, str(e) or type(e).__name__

            log(f"MqttTransport: connected (session_present={session_present})")
            self.connected = True
            self.reconnect_attempt = 0
            self.subscriptions.clear()
            self.last_rx = self.last_ping = ticks_ms()
            self._outbox = asyncio.Queue()
            self._emit(Connected(self._active_generation))

            loop = asyncio.get_running_loop()
            tasks.append(loop.create_task(self._receive_loop()))
            tasks.append(loop.create_task(self._send_loop()))
            if endpoint.keepalive > 0:
                tasks.append(loop.create_task(self._keep_alive(endpoint.keepalive)))

            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            reason = "Connection closed"
            for task in done:
                exc = task.exception()
                if exc is not None:
                    reason = str(exc)
                    if not isinstance(exc, TransportError):
                        log(f"MqttTransport: unexpected error: {type(exc).__name__}: {exc}")
            return True, reason
        finally:
            self.connected = False
            self._outbox = None
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await self.protocol.close()

    async def _send_loop(self):
        outbox = self._outbox
        while True:
            item = await outbox.get()
            if item is None:
                log("MqttTransport:disconnect. Disconnecting...")
                await self.protocol.send_packet(MQTTProtocol.DISCONNECT, b"")
                return
            packet_type, payload = item
            await self.protocol.send_packet(packet_type, payload)

    async def _receive_loop(self):
        outbox = self._outbox
        while True:
            packet_type, payload = await self.protocol.read_packet()
            self.last_rx = ticks_ms()

            if packet_type & 0xF0 == MQTTProtocol.PUBLISH:
                topic, message, qos, pid = self.protocol.parse_publish(packet_type, payload)
                if qos == 1:
                    outbox.put_nowait((MQTTProtocol.PUBACK, struct.pack("!H", pid)))
                self._emit(MessageReceived(topic, message))

            elif packet_type == MQTTProtocol.PINGRESP:
                debug(f"MqttTransport: PINGRESP in {ticks_ms() - self.last_ping} ms")

            elif packet_type == MQTTProtocol.SUBACK:
                if len(payload) < 3:
                    log("MqttTransport: malformed SUBACK")
                    continue
                pid = struct.unpack("!H", payload[:2])[0]
                granted_qos = payload[2]
                topic = self.subscriptions.pop(pid, None)
                if granted_qos & 0x80:
                    log(f"MqttTransport: subscription to '{topic}' refused by broker")
                else:
                    log(f"MqttTransport: subscribed to '{topic}' with QoS {granted_qos}")

            else:
                debug(f"MqttTransport: ignoring packet type {packet_type:#04x}")

    async def _keep_alive(self, keepalive: int):
        ping_interval_s = keepalive / 2.0
        server_timeout_s = keepalive * 1.5
        outbox = self._outbox
        while True:
            await asyncio.sleep(ping_interval_s)
            now = ticks_ms()
            if now - self.last_rx > server_timeout_s * 1000:
                raise TransportError(
                    f"Server timeout (no packet received for > {server_timeout_s}s)"
                )
            self.last_ping = now
            outbox.put_nowait((MQTTProtocol.PINGREQ, b""))
