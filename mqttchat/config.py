import binascii
import json
import random

from .log import log

DEFAULT_TOPIC = "chat/demo"
DEFAULT_CLIENT_PREFIX = "py-chat-client"


class BrokerEndpoint:
    def __init__(self, host: str, port: int = 1883, ssl: bool = False, keepalive: int = 60):
        self.host = host
        self.port = port
        self.ssl = ssl
        self.keepalive = keepalive

    def __eq__(self, other) -> bool:
        if not isinstance(other, BrokerEndpoint):
            return NotImplemented
        return (self.host, self.port, self.ssl, self.keepalive) == (
            other.host,
            other.port,
            other.ssl,
            other.keepalive,
        )

    def __repr__(self) -> str:
        scheme = "mqtts" if self.ssl else "mqtt"
        return f"BrokerEndpoint('{scheme}://{self.host}:{self.port}')"


# Public test brokers: name -> (host, tcp port, tls port)
KNOWN_BROKERS = {
    "emqx": ("broker.emqx.io", 1883, 8883),
    "mosquitto": ("test.mosquitto.org", 1883, 8883),
    "hivemq": ("broker.hivemq.com", 1883, 8883),
}

DEFAULT_BROKER = "emqx"


def resolve_endpoint(
    broker: str, port: int = 0, tls: bool = False, keepalive: int = 60
) -> BrokerEndpoint:
    """
    Builds an endpoint from a known broker name or a plain host name.

    Args:
        broker: Key of `KNOWN_BROKERS` or a host name.
        port: Explicit port. 0 selects the broker's default for the transport.
        tls: True to connect with TLS.
        keepalive: MQTT keep-alive interval in seconds.
    """
    if broker in KNOWN_BROKERS:
        host, tcp_port, tls_port = KNOWN_BROKERS[broker]
        default_port = tls_port if tls else tcp_port
    else:
        host = broker
        default_port = 8883 if tls else 1883
    return BrokerEndpoint(host, port or default_port, ssl=tls, keepalive=keepalive)


def generate_client_id(prefix: str = DEFAULT_CLIENT_PREFIX) -> str:
    rnd = random.getrandbits(24)
    return f"{prefix}-{binascii.hexlify(rnd.to_bytes(3, 'big')).decode()}"


class ChatConfig:
    def __init__(self, path: str = "chat_config.json"):
        self.path = path
        self.mqtt_broker = DEFAULT_BROKER
        self.mqtt_port = 0
        self.mqtt_tls = False
        self.mqtt_keepalive = 60
        self.reconnect_delay = 1
        self.reconnect_max_delay = 60
        self.topic = DEFAULT_TOPIC
        self.client_prefix = DEFAULT_CLIENT_PREFIX
        self.typing_quiet_interval = 1.5
        self.verbose = 0

    def endpoint(self) -> BrokerEndpoint:
        return resolve_endpoint(
            self.mqtt_broker, self.mqtt_port, self.mqtt_tls, self.mqtt_keepalive
        )

    def load(self):
        try:
            with open(self.path, "r") as config_file:
                config = json.load(config_file)
            mqtt = config.get("mqtt", {})
            chat = config.get("chat", {})
            self.mqtt_broker = mqtt.get("broker", self.mqtt_broker)
            self.mqtt_port = mqtt.get("port", self.mqtt_port)
            self.mqtt_tls = mqtt.get("tls", self.mqtt_tls)
            self.mqtt_keepalive = mqtt.get("keepalive", self.mqtt_keepalive)
            self.reconnect_delay = mqtt.get("reconnect_delay", self.reconnect_delay)
            self.reconnect_max_delay = mqtt.get("reconnect_max_delay", self.reconnect_max_delay)
            self.topic = chat.get("topic", self.topic)
            self.client_prefix = chat.get("client_prefix", self.client_prefix)
            self.typing_quiet_interval = chat.get(
                "typing_quiet_interval", self.typing_quiet_interval
            )
            self.verbose = config.get("verbose", self.verbose)
            log(f"Config loaded from {self.path}.")
        except (OSError, ValueError, AttributeError) as e:
            log(f"Error reading config file {self.path}: {e}")
            self.save()

    def save(self) -> dict:
        config = {
            "mqtt": {
                "broker": self.mqtt_broker,
                "port": self.mqtt_port,
                "tls": self.mqtt_tls,
                "keepalive": self.mqtt_keepalive,
                "reconnect_delay": self.reconnect_delay,
                "reconnect_max_delay": self.reconnect_max_delay,
            },
            "chat": {
                "topic": self.topic,
                "client_prefix": self.client_prefix,
                "typing_quiet_interval": self.typing_quiet_interval,
            },
            "verbose": self.verbose,
        }
        with open(self.path, "w") as config_file:
            json.dump(config, config_file, indent=4)
        log(f"Config file {self.path} created with current values.")
        return config
