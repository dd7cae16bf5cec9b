"""MQTT publishing helpers."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import BridgeState

logger = logging.getLogger(__name__)


def safe_publish(
    state: BridgeState,
    topic: str,
    payload: bytes | str,
    qos: int = 0,
    retain: bool = False,
) -> bool:
    """Publish to the broker; failures are logged and counted, never raised."""
    broker = state.broker
    if broker is None or not broker.is_connected:
        logger.warning(f"[MQTT] Not connected - skipping publish to {topic}")
        state.stats['publish_failures'] += 1
        return False

    try:
        result = broker.publish(topic, payload, qos=qos, retain=retain)
    except Exception as e:
        logger.error(f"[MQTT] Publish error to {topic}: {e}")
        state.stats['publish_failures'] += 1
        return False

    if not result:
        logger.error(f"[MQTT] Publish failed to {topic}")
        state.stats['publish_failures'] += 1
        return False

    logger.debug(f"[MQTT] Published {len(payload)} bytes to {topic}")
    return True
