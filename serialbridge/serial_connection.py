"""Serial connection abstraction for the bridged device."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import serial

if TYPE_CHECKING:
    from config_loader import SerialConfig

logger = logging.getLogger(__name__)


class SerialError(Exception):
    """A read or write on the serial device failed."""


class SerialConnection(ABC):
    """Abstract byte-level interface to the serial device.

    Implementations own their own locking; callers never manage threading.
    Reads honor the configured timeout, so a short read is a normal outcome.
    """

    @abstractmethod
    def write(self, data: bytes) -> int: ...

    @abstractmethod
    def read(self, max_len: int) -> bytes: ...

    @abstractmethod
    def close(self) -> None: ...

    @property
    @abstractmethod
    def is_open(self) -> bool: ...


class RealSerialConnection(SerialConnection):
    """Concrete implementation wrapping serial.Serial with internal locking."""

    def __init__(self, port: serial.SerialBase) -> None:
        self._port = port
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            try:
                written = self._port.write(data)
                self._port.flush()
            except (serial.SerialException, OSError) as e:
                raise SerialError(f"Write of {len(data)} bytes failed: {e}") from e

        if written is None:
            written = len(data)
        if written < len(data):
            logger.warning(f"[SERIAL] Short write: {written}/{len(data)} bytes")
        return written

    def read(self, max_len: int) -> bytes:
        if max_len < 0:
            raise ValueError(f"max_len must not be negative, got {max_len}")
        with self._lock:
            try:
                return bytes(self._port.read(max_len))
            except (serial.SerialException, OSError) as e:
                raise SerialError(f"Read of up to {max_len} bytes failed: {e}") from e

    def close(self) -> None:
        try:
            with self._lock:
                if self._port and getattr(self._port, 'is_open', False):
                    logger.debug("Closing serial connection")
                    self._port.close()
        except (serial.SerialException, OSError) as e:
            logger.warning(f"[SERIAL] Error while closing port: {e}")

    @property
    def is_open(self) -> bool:
        return getattr(self._port, 'is_open', False)


def connect(serial_cfg: SerialConfig) -> RealSerialConnection | None:
    """Open the configured serial device (path or pyserial URL such as loop://)."""
    try:
        port = serial.serial_for_url(
            serial_cfg.device,
            baudrate=serial_cfg.baud,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            bytesize=serial.EIGHTBITS,
            timeout=serial_cfg.timeout,
            rtscts=False,
        )
    except (serial.SerialException, OSError, ValueError) as e:
        logger.error(f"Failed to open serial device {serial_cfg.device}: {e}")
        return None

    logger.info(f"Connected to {serial_cfg.device} at {serial_cfg.baud} baud")
    return RealSerialConnection(port)
