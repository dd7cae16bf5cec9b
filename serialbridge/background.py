"""Background statistics logging."""
from __future__ import annotations

import logging
import time
from time import sleep
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import BridgeState

logger = logging.getLogger(__name__)


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_bytes(count: int) -> str:
    if count < 1024:
        return f"{count}B"
    elif count < 1024 * 1024:
        return f"{count / 1024:.1f}KB"
    elif count < 1024 * 1024 * 1024:
        return f"{count / (1024 * 1024):.1f}MB"
    return f"{count / (1024 * 1024 * 1024):.2f}GB"


def log_stats(state: BridgeState) -> None:
    """Log one summary line of service statistics."""
    stats = state.stats
    now = time.time()

    # Only reconnects within the last 24 hours are reported. Timestamps are
    # appended in order from the main thread, so only a stale prefix is dropped.
    cutoff_time = now - 86400
    reconnects = stats['reconnects']
    stale = 0
    while stale < len(reconnects) and reconnects[stale] <= cutoff_time:
        stale += 1
    del reconnects[:stale]

    connected = state.broker is not None and state.broker.is_connected
    logger.info(
        f"[SERVICE] Uptime: {format_uptime(now - stats['start_time'])} | "
        f"Tx: {stats['tx_messages']} msg / {format_bytes(stats['tx_bytes'])} | "
        f"Rx: {stats['rx_requests']} req / {format_bytes(stats['rx_bytes'])} | "
        f"MQTT: {'connected' if connected else 'disconnected'} | "
        f"Reconnects/24h: {len(stats['reconnects'])} | "
        f"Failures: serial={stats['serial_errors']} publish={stats['publish_failures']} "
        f"rejected={stats['rejected_requests']}"
    )
    stats['last_stats_log'] = now


def stats_logging_loop(state: BridgeState, interval: float) -> None:
    """Log statistics every ``interval`` seconds until the bridge exits."""
    while not state.should_exit:
        sleep(interval)

        if state.should_exit:
            break

        log_stats(state)
