"""Serial device to MQTT bridge package."""
from __future__ import annotations

from typing import Any, TYPE_CHECKING

from .state import BridgeState
from .broker_client import BrokerClient, PahoBrokerClient
from .router import MessageRouter
from .session import SessionController
from . import runner

if TYPE_CHECKING:
    from config_loader import BridgeConfig


class SerialBridge:
    """Facade: creates BridgeState, wires up the session and router, exposes run() and handle_signal()."""

    def __init__(
        self,
        config: BridgeConfig,
        debug: bool = False,
        version: str = "0.0.0",
        broker: BrokerClient | None = None,
    ) -> None:
        self.state = BridgeState(config, debug)
        self.state.client_version = runner.load_client_version(version)
        self.state.broker = broker or PahoBrokerClient(
            config.broker.address,
            config.broker.client_id,
            tls_verify=config.broker.tls_verify,
        )
        self.state.session = SessionController(self.state)
        self.state.router = MessageRouter(self.state)

    def run(self) -> int:
        return runner.run(self.state)

    def handle_signal(self, signum: int, frame: Any) -> None:
        runner.handle_signal(self.state, signum, frame)
