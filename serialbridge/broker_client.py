"""MQTT broker client abstraction."""
from __future__ import annotations

import logging
import queue
import ssl
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

QOS_AT_MOST_ONCE = 0
QOS_AT_LEAST_ONCE = 1
QOS_EXACTLY_ONCE = 2

# Longest uninterrupted wait for a CONNACK before re-checking for a stop request
CONNACK_SLICE = 0.25

# scheme -> (paho transport, tls, default port)
SCHEMES: dict[str, tuple[str, bool, int]] = {
    'tcp': ('tcp', False, 1883),
    'mqtt': ('tcp', False, 1883),
    'ssl': ('tcp', True, 8883),
    'mqtts': ('tcp', True, 8883),
    'ws': ('websockets', False, 80),
    'wss': ('websockets', True, 443),
}


class BrokerError(Exception):
    """Base class for broker transport failures."""


class ConnectError(BrokerError):
    """The broker could not be reached or refused the session."""


@dataclass(frozen=True)
class BrokerAddress:
    transport: str
    host: str
    port: int
    tls: bool
    path: str = '/'


@dataclass(frozen=True)
class ConnectOptions:
    """Everything the broker needs to open a session."""

    will_topic: str
    will_payload: str
    will_qos: int = QOS_AT_LEAST_ONCE
    will_retain: bool = True
    username: str = ''
    password: str = ''
    clean_session: bool = True
    keepalive: int = 60
    timeout: float = 10.0
    retry_min_delay: int = 1
    retry_max_delay: int = 5


@dataclass(frozen=True)
class SessionInfo:
    session_present: bool = False


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    payload: bytes


@dataclass(frozen=True)
class ConnectionLost:
    """Emitted on the consume stream when an established connection drops."""

    reason: str = ''


_STOP = object()


def parse_broker_address(address: str) -> BrokerAddress:
    """Parse ``tcp://host:port`` style broker URIs (bare ``host[:port]`` means tcp)."""
    if '://' not in address:
        address = f"tcp://{address}"

    parts = urlsplit(address)
    scheme = parts.scheme.lower()
    if scheme not in SCHEMES:
        raise ValueError(f"Unsupported broker scheme {parts.scheme!r} in {address!r}")
    if not parts.hostname:
        raise ValueError(f"No host in broker address {address!r}")

    transport, tls, default_port = SCHEMES[scheme]
    try:
        port = parts.port or default_port
    except ValueError as e:
        raise ValueError(f"Invalid port in broker address {address!r}") from e

    return BrokerAddress(transport=transport, host=parts.hostname, port=port, tls=tls, path=parts.path or '/')


class BrokerClient(ABC):
    """Abstract interface for the single MQTT broker connection."""

    @abstractmethod
    def connect(self, options: ConnectOptions) -> SessionInfo: ...

    @abstractmethod
    def reconnect(self) -> None: ...

    @abstractmethod
    def disconnect(self) -> None: ...

    @abstractmethod
    def publish(self, topic: str, payload: bytes | str, qos: int = 0, retain: bool = False) -> bool: ...

    @abstractmethod
    def subscribe(self, topic: str, qos: int = 0) -> None: ...

    @abstractmethod
    def consume(self) -> Iterator[InboundMessage | ConnectionLost]:
        """Yield inbound messages and loss events until stop_consuming() is called."""
        ...

    @abstractmethod
    def stop_consuming(self) -> None:
        """End the consume stream and abort any pending (re)connect wait.

        Must be safe to call from a signal handler.
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...


class PahoBrokerClient(BrokerClient):
    """Concrete implementation wrapping paho.mqtt.client.Client.

    paho's network thread only feeds a SimpleQueue; the bridge loop drains it
    through consume(). Reconnect socket work also happens on the network
    thread, so the calling thread only ever waits on the CONNACK.
    """

    def __init__(self, address: str, client_id: str, tls_verify: bool = True) -> None:
        self._address = parse_broker_address(address)
        self._client_id = client_id
        self._tls_verify = tls_verify
        self._client: mqtt.Client | None = None
        self._timeout = 10.0
        self._keepalive = 60

        self._events: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._connected = threading.Event()
        self._connack = threading.Event()
        self._connack_rc: object = None
        self._session_present = False
        self._disconnecting = False
        self._loop_running = False
        # plain flag: written from signal handlers
        self._stopping = False

    def _create_client(self, options: ConnectOptions) -> mqtt.Client:
        address = self._address
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            clean_session=options.clean_session,
            transport=address.transport,
        )

        if options.username:
            client.username_pw_set(options.username, options.password or None)

        client.will_set(options.will_topic, options.will_payload, qos=options.will_qos, retain=options.will_retain)
        client.reconnect_delay_set(min_delay=options.retry_min_delay, max_delay=options.retry_max_delay)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        if address.tls:
            if self._tls_verify:
                client.tls_set(cert_reqs=ssl.CERT_REQUIRED)
                client.tls_insecure_set(False)
            else:
                logger.warning("[MQTT] TLS verification disabled")
                client.tls_set(cert_reqs=ssl.CERT_NONE)
                client.tls_insecure_set(True)

        if address.transport == "websockets":
            client.ws_set_options(path=address.path, headers=None)

        return client

    def _start_loop(self) -> None:
        self._client.loop_start()
        self._loop_running = True

    def _stop_loop(self) -> None:
        self._client.loop_stop()
        self._loop_running = False

    def _wait_for_connack(self) -> None:
        deadline = time.monotonic() + self._timeout
        while not self._connack.wait(CONNACK_SLICE):
            if self._stopping:
                raise ConnectError("Stop requested while waiting for CONNACK")
            if time.monotonic() >= deadline:
                raise ConnectError(
                    f"No CONNACK from {self._address.host}:{self._address.port} within {self._timeout:g}s"
                )
        if not self._connected.is_set():
            raise ConnectError(f"Broker refused connection: {self._connack_rc}")

    def connect(self, options: ConnectOptions) -> SessionInfo:
        self._timeout = options.timeout
        self._keepalive = options.keepalive
        self._disconnecting = False
        self._client = self._create_client(options)
        self._connected.clear()
        self._connack.clear()

        address = self._address
        try:
            self._client.connect(address.host, address.port, keepalive=options.keepalive)
        except (OSError, ValueError) as e:
            raise ConnectError(f"Cannot reach broker at {address.host}:{address.port}: {e}") from e

        self._start_loop()
        try:
            self._wait_for_connack()
        except ConnectError:
            self._stop_loop()
            raise

        return SessionInfo(session_present=self._session_present)

    def reconnect(self) -> None:
        """Wait for the network thread to restore the session.

        While its loop runs, paho retries on its own reconnect delay; only a
        stopped loop is restarted here, with the connect itself deferred to
        the network thread.
        """
        if self._client is None:
            raise ConnectError("reconnect() called before connect()")

        self._connack.clear()
        if self._connected.is_set():
            logger.debug("[MQTT] Transport already reconnected on its own")
            return

        if not self._loop_running:
            address = self._address
            try:
                self._client.connect_async(address.host, address.port, keepalive=self._keepalive)
            except ValueError as e:
                raise ConnectError(f"Cannot reach broker at {address.host}:{address.port}: {e}") from e
            self._start_loop()

        self._wait_for_connack()

    def disconnect(self) -> None:
        if self._client is None:
            return
        self._disconnecting = True
        self._client.disconnect()
        self._stop_loop()
        self._connected.clear()

    def publish(self, topic: str, payload: bytes | str, qos: int = 0, retain: bool = False) -> bool:
        if self._client is None:
            return False

        result = self._client.publish(topic, payload, qos=qos, retain=retain)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"[MQTT] Publish to {topic} rejected: {mqtt.error_string(result.rc)}")
            return False
        if qos > 0:
            result.wait_for_publish(timeout=self._timeout)
            return result.is_published()
        return True

    def subscribe(self, topic: str, qos: int = 0) -> None:
        if self._client is None:
            raise BrokerError(f"Cannot subscribe to {topic}: not connected")
        result = self._client.subscribe(topic, qos=qos)
        if result[0] != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerError(f"Subscribe to {topic} failed: {mqtt.error_string(result[0])}")

    def consume(self) -> Iterator[InboundMessage | ConnectionLost]:
        while True:
            item = self._events.get()
            if item is _STOP:
                return
            yield item  # type: ignore[misc]

    def stop_consuming(self) -> None:
        self._stopping = True
        self._events.put(_STOP)

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client: mqtt.Client, userdata: object, flags: object, reason_code: object, properties: object = None) -> None:
        self._connack_rc = reason_code
        if reason_code == 0:
            self._session_present = bool(getattr(flags, 'session_present', False))
            self._connected.set()
            logger.debug(f"[MQTT] CONNACK received (session present: {self._session_present})")
        else:
            logger.error(f"[MQTT] Connection refused: {reason_code}")
        self._connack.set()

    def _on_disconnect(self, client: mqtt.Client, userdata: object, disconnect_flags: object, reason_code: object, properties: object = None) -> None:
        was_connected = self._connected.is_set()
        self._connected.clear()

        if self._disconnecting:
            logger.debug("[MQTT] Disconnected (shutdown)")
            return

        if was_connected:
            logger.warning(f"[MQTT] Connection lost (code: {reason_code})")
            self._events.put(ConnectionLost(str(reason_code)))

    def _on_message(self, client: mqtt.Client, userdata: object, msg: mqtt.MQTTMessage) -> None:
        self._events.put(InboundMessage(msg.topic, bytes(msg.payload)))
