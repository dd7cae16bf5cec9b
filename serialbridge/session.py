"""MQTT session controller: connect, liveness beacons, bounded reconnect, shutdown."""
from __future__ import annotations

import enum
import logging
import time
from typing import Callable, TYPE_CHECKING

from .broker_client import (
    QOS_AT_LEAST_ONCE,
    QOS_EXACTLY_ONCE,
    BrokerError,
    ConnectError,
    ConnectionLost,
    ConnectOptions,
    SessionInfo,
)
from .mqtt_publish import safe_publish

if TYPE_CHECKING:
    from .state import BridgeState

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"

# Longest uninterrupted sleep while waiting between reconnect attempts
WAIT_SLICE = 0.25


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SessionController:
    """Owns the broker session lifecycle for the bridge.

    Subscriptions and the "online" beacon are reissued after every successful
    (re)connect, so the bridge never relies on the broker keeping a session.
    """

    def __init__(
        self,
        state: BridgeState,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.connection_state = ConnectionState.DISCONNECTED
        self._sleep = sleep
        self._clock = clock
        self._finished = False

    @property
    def shutdown_requested(self) -> bool:
        return self.state.should_exit

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect_options(self) -> ConnectOptions:
        broker = self.state.config.broker
        return ConnectOptions(
            will_topic=self.state.config.topics.availability,
            will_payload=OFFLINE,
            will_qos=QOS_AT_LEAST_ONCE,
            will_retain=broker.retain_availability,
            username=broker.username,
            password=broker.password,
            clean_session=True,
            keepalive=broker.keepalive,
            timeout=broker.connect_timeout,
            retry_min_delay=1,
            retry_max_delay=5,
        )

    def connect(self) -> SessionInfo:
        """Initial connection. Raises ConnectError; the caller treats it as fatal."""
        self.connection_state = ConnectionState.CONNECTING
        address = self.state.config.broker.address
        logger.info(f"[MQTT] Connecting to {address}")

        try:
            info = self.state.broker.connect(self.connect_options())
        except ConnectError:
            self.connection_state = ConnectionState.DISCONNECTED
            raise

        try:
            self._establish()
        except BrokerError as e:
            self.connection_state = ConnectionState.DISCONNECTED
            logger.debug("[MQTT] Closing half-established session")
            try:
                self.state.broker.disconnect()
            except (BrokerError, OSError) as close_error:
                logger.warning(f"[MQTT] Error during disconnect: {close_error}")
            if isinstance(e, ConnectError):
                raise
            raise ConnectError(str(e)) from e

        self.connection_state = ConnectionState.CONNECTED
        logger.info(f"[MQTT] Connected to {address} (session present: {info.session_present})")
        return info

    def detect_loss(self, event: ConnectionLost) -> None:
        """The consume stream reported that the connection dropped."""
        logger.warning(f"[MQTT] Connection to broker lost ({event.reason or 'no reason given'})")
        self.connection_state = ConnectionState.RECONNECTING
        self.state.stats['reconnects'].append(time.time())

    def reconnect(self) -> bool:
        """Retry the broker connection on a fixed interval, a bounded number of times.

        Returns True once connected again; False when the attempts are
        exhausted or a shutdown was requested while retrying.
        """
        policy = self.state.config.reconnect
        self.connection_state = ConnectionState.RECONNECTING

        for attempt in range(1, policy.attempts + 1):
            if self.shutdown_requested:
                logger.info("[MQTT] Shutdown requested - abandoning reconnect")
                self.connection_state = ConnectionState.DISCONNECTED
                return False

            logger.info(f"[MQTT] Reconnecting (attempt {attempt}/{policy.attempts})")
            try:
                self.state.broker.reconnect()
                self._establish()
            except BrokerError as e:
                logger.warning(f"[MQTT] Reconnect attempt {attempt}/{policy.attempts} failed: {e}")
                if attempt < policy.attempts:
                    self._wait(policy.interval)
                continue

            self.connection_state = ConnectionState.CONNECTED
            logger.info(f"[MQTT] Reconnected to broker after {attempt} attempt(s)")
            return True

        if self.shutdown_requested:
            logger.info("[MQTT] Shutdown requested - abandoning reconnect")
            self.connection_state = ConnectionState.DISCONNECTED
            return False

        logger.critical(f"[MQTT] {policy.attempts} consecutive reconnect failures - giving up")
        self.connection_state = ConnectionState.DISCONNECTED
        return False

    def shutdown(self) -> None:
        """Request a graceful stop. Safe to call from a signal handler, and more than once."""
        if self.state.should_exit:
            return
        self.state.should_exit = True
        self.state.broker.stop_consuming()

    def finish(self) -> None:
        """Publish the offline beacon and disconnect, if still connected. Runs once."""
        if self._finished:
            return
        self._finished = True

        broker = self.state.broker
        if self.connection_state is ConnectionState.CONNECTED and broker.is_connected:
            self.publish_availability(OFFLINE)
            logger.info("[MQTT] Disconnecting from MQTT broker")
            try:
                broker.disconnect()
            except (BrokerError, OSError) as e:
                logger.warning(f"[MQTT] Error during disconnect: {e}")
        else:
            logger.debug("[MQTT] Not connected - skipping offline beacon and disconnect")
        self.connection_state = ConnectionState.DISCONNECTED

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def publish_availability(self, payload: str) -> bool:
        return safe_publish(
            self.state,
            self.state.config.topics.availability,
            payload,
            qos=QOS_AT_LEAST_ONCE,
            retain=self.state.config.broker.retain_availability,
        )

    def _establish(self) -> None:
        """Subscribe to the inbound topics, then announce the bridge online."""
        topics = self.state.config.topics
        for topic in (topics.transmit, topics.receive_control):
            self.state.broker.subscribe(topic, qos=QOS_EXACTLY_ONCE)
            logger.info(f"[MQTT] Subscribed to {topic}")

        if not self.publish_availability(ONLINE):
            logger.warning("[MQTT] Failed to publish online beacon")

    def _wait(self, seconds: float) -> None:
        deadline = self._clock() + seconds
        while not self.shutdown_requested:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self._sleep(min(remaining, WAIT_SLICE))
