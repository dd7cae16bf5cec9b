"""Dispatch of inbound broker messages to the serial device."""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from .broker_client import QOS_AT_LEAST_ONCE, InboundMessage
from .mqtt_publish import safe_publish
from .serial_connection import SerialError

if TYPE_CHECKING:
    from .state import BridgeState

logger = logging.getLogger(__name__)

READ_REQUEST_PATTERN = re.compile(r"\+?([0-9]+)")


class ReadRequestError(ValueError):
    """A receive-control payload is not a usable byte count."""


def parse_read_request(payload: bytes, max_read: int) -> int:
    """Parse a receive-control payload into a byte count in [0, max_read]."""
    try:
        text = payload.decode('ascii')
    except UnicodeDecodeError as e:
        raise ReadRequestError(f"payload is not ASCII: {payload[:16]!r}") from e

    match = READ_REQUEST_PATTERN.fullmatch(text)
    if not match:
        raise ReadRequestError(f"not an unsigned integer: {text[:32]!r}")

    # length first: int() rejects very long digit strings with a plain ValueError
    digits = match.group(1).lstrip("0") or "0"
    if len(digits) > len(str(max_read)):
        raise ReadRequestError(f"requested {len(digits)}-digit byte count, limit is {max_read}")

    count = int(digits)
    if count > max_read:
        raise ReadRequestError(f"requested {count} bytes, limit is {max_read}")
    return count


class MessageRouter:
    """Routes transmit and receive-control messages; everything else is ignored.

    Every failure here is local to the message: it is logged, counted and
    dropped, and never touches the connection.
    """

    def __init__(self, state: BridgeState) -> None:
        self.state = state

    def dispatch(self, message: InboundMessage) -> None:
        topics = self.state.config.topics
        if message.topic == topics.transmit:
            self.handle_transmit(message.payload)
        elif message.topic == topics.receive_control:
            self.handle_receive_control(message.payload)
        else:
            logger.debug(f"Ignoring message on unexpected topic {message.topic}")

    def handle_transmit(self, payload: bytes) -> None:
        state = self.state
        logger.info(f"[SERIAL] Tx message: {len(payload)} bytes")
        try:
            written = state.device.write(payload)
        except SerialError as e:
            logger.error(f"[SERIAL] Failed to write to serial port: {e}")
            state.stats['serial_errors'] += 1
            return

        state.stats['tx_messages'] += 1
        state.stats['tx_bytes'] += written

    def handle_receive_control(self, payload: bytes) -> None:
        state = self.state
        try:
            count = parse_read_request(payload, state.config.serial.max_read)
        except ReadRequestError as e:
            logger.error(f"[SERIAL] Failed to parse requested receive byte count: {e}")
            state.stats['rejected_requests'] += 1
            return

        logger.info(f"[SERIAL] Requested read of {count} bytes")
        state.stats['rx_requests'] += 1
        try:
            data = state.device.read(count)
        except SerialError as e:
            logger.error(f"[SERIAL] Failed to read from serial port: {e}")
            state.stats['serial_errors'] += 1
            return

        logger.info(f"[SERIAL] Received {len(data)} bytes from serial port")
        state.stats['rx_bytes'] += len(data)

        if not safe_publish(state, state.config.topics.receive, data, qos=QOS_AT_LEAST_ONCE):
            logger.error("[MQTT] Failed to publish received bytes")
