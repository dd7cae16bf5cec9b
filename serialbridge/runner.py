"""Main run loop and startup orchestration."""
from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, TYPE_CHECKING

from config_loader import log_config_sources

from . import serial_connection
from . import background
from .broker_client import ConnectError, ConnectionLost

if TYPE_CHECKING:
    from .state import BridgeState

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


def load_client_version(version: str) -> str:
    """Load client version from provided version string, optionally append git hash."""
    try:
        script_dir = os.path.dirname(os.path.abspath(__file__))
        parent_dir = os.path.dirname(script_dir)  # serialbridge/ → project root
        version_file = os.path.join(parent_dir, '.version_info')
        if os.path.exists(version_file):
            with open(version_file, 'r') as f:
                version_data = json.load(f)
                git_hash = version_data.get('git_hash', '')
                if git_hash and git_hash != 'unknown':
                    return f"serialtomqtt/{version}-{git_hash}"
    except (OSError, ValueError) as e:
        logger.debug(f"Could not load version info: {e}")
    return f"serialtomqtt/{version}"


def handle_signal(state: BridgeState, signum: int, frame: Any) -> None:
    """Signal handler to trigger graceful shutdown."""
    logger.info(f"Received signal {signum}, shutting down...")
    if state.session is not None:
        state.session.shutdown()
    else:
        state.should_exit = True


def serve(state: BridgeState) -> int:
    """Route inbound messages until shutdown or reconnect exhaustion."""
    session = state.session
    router = state.router

    for event in state.broker.consume():
        if isinstance(event, ConnectionLost):
            session.detect_loss(event)
            if session.reconnect():
                continue
            if session.shutdown_requested:
                break
            logger.error("[MQTT] Broker connection could not be re-established")
            return EXIT_FATAL

        router.dispatch(event)

    logger.info("Inbound message stream closed")
    return EXIT_OK


def run(state: BridgeState) -> int:
    """Main orchestration: open serial, connect MQTT, route messages, clean up."""
    log_config_sources(state.config)
    logger.info(f"Client version: {state.client_version}")

    state.device = serial_connection.connect(state.config.serial)
    if not state.device:
        return EXIT_FATAL

    try:
        state.session.connect()
    except ConnectError as e:
        state.device.close()
        if state.should_exit:
            logger.info(f"[MQTT] Shutdown requested during initial connection ({e})")
            return EXIT_OK
        logger.error(f"[MQTT] Failed to establish initial connection: {e}")
        return EXIT_FATAL

    stats_thread = None
    if state.config.stats_interval > 0:
        stats_thread = threading.Thread(
            target=background.stats_logging_loop,
            args=(state, state.config.stats_interval),
            daemon=True,
            name="Stats-Logger"
        )
        stats_thread.start()
        logger.debug("[STATS] Started statistics logging thread")

    exit_code = EXIT_FATAL
    try:
        exit_code = serve(state)
    except KeyboardInterrupt:
        logger.info("Exiting...")
        exit_code = EXIT_OK
    except Exception as e:
        logger.exception(f"Unhandled error in main loop: {e}")
    finally:
        _cleanup(state)

    return exit_code


def _cleanup(state: BridgeState) -> None:
    """Publish offline status, disconnect, and close the serial device."""
    logger.info("Cleaning up...")
    state.should_exit = True

    state.session.finish()

    if state.device:
        state.device.close()

    background.log_stats(state)
