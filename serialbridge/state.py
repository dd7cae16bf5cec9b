"""Shared mutable state container for the serial bridge."""
from __future__ import annotations

import logging
import time
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from config_loader import BridgeConfig
    from .broker_client import BrokerClient
    from .serial_connection import SerialConnection

logger = logging.getLogger(__name__)


def new_stats() -> dict[str, Any]:
    """Fresh statistics counters."""
    now = time.time()
    return {
        'start_time': now,
        'last_stats_log': now,
        'tx_messages': 0,
        'tx_bytes': 0,
        'rx_requests': 0,
        'rx_bytes': 0,
        'rejected_requests': 0,
        'serial_errors': 0,
        'publish_failures': 0,
        'reconnects': [],
    }


class BridgeState:
    """All shared state for the bridge.

    The broker client and serial handle live here and nowhere else; the
    session controller and router reach them through this object.
    """

    def __init__(self, config: BridgeConfig, debug: bool = False) -> None:
        self.config = config
        self.debug = debug
        self.client_version: str = ""

        # Transports (broker set by the facade, device opened by the runner)
        self.broker: BrokerClient | None = None
        self.device: SerialConnection | None = None

        # Set by serialbridge.__init__
        self.session: Any = None
        self.router: Any = None

        # Lifecycle; written by the signal handler, read by the main loop
        self.should_exit: bool = False

        self.stats: dict[str, Any] = new_stats()
