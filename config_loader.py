"""Configuration loading: TOML parsing, overlay merging, and validation."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    'general': {
        'log_level': 'INFO',
        'stats_interval': 300,
    },
    'broker': {
        'username': '',
        'password': '',
        'keepalive': 60,
        'connect_timeout': '10s',
        'retain_availability': True,
        'tls_verify': True,
    },
    'serial': {
        'timeout': '1s',
        'max_read': 4096,
    },
    'reconnect': {
        'attempts': 12,
        'interval': '5s',
    },
}

DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h)", re.ASCII)
DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


class ConfigError(Exception):
    """Raised when the configuration is missing, unreadable, or invalid."""


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts. override values take precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def parse_duration(value: Any, field: str) -> float:
    """Parse a duration given as seconds or as a string like "1m 30s" / "500ms"."""
    if isinstance(value, bool):
        raise ConfigError(f"{field}: expected a duration, got {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"{field}: duration must not be negative")
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"{field}: expected a duration, got {value!r}")

    text = value.strip()
    parts = DURATION_PART.findall(text)
    if not parts or DURATION_PART.sub('', text).strip():
        raise ConfigError(f"{field}: cannot parse duration {value!r}")
    return sum(float(amount) * DURATION_UNITS[unit] for amount, unit in parts)


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    section = config.get(name)
    if not isinstance(section, dict):
        raise ConfigError(f"Missing [{name}] section")
    return section


def _require_str(section: dict[str, Any], key: str, field: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{field}: a non-empty string is required")
    return value


def _require_int(section: dict[str, Any], key: str, field: str, minimum: int) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{field}: an integer is required, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{field}: must be at least {minimum}, got {value}")
    return value


def _require_bool(section: dict[str, Any], key: str, field: str) -> bool:
    value = section.get(key)
    if not isinstance(value, bool):
        raise ConfigError(f"{field}: true or false is required, got {value!r}")
    return value


@dataclass(frozen=True)
class BrokerConfig:
    address: str
    client_id: str
    username: str = ''
    password: str = ''
    keepalive: int = 60
    connect_timeout: float = 10.0
    retain_availability: bool = True
    tls_verify: bool = True


@dataclass(frozen=True)
class TopicsConfig:
    transmit: str
    receive: str
    receive_control: str
    availability: str


@dataclass(frozen=True)
class SerialConfig:
    device: str
    baud: int
    timeout: float
    max_read: int = 4096


@dataclass(frozen=True)
class ReconnectConfig:
    attempts: int = 12
    interval: float = 5.0


@dataclass(frozen=True)
class BridgeConfig:
    """Immutable bridge configuration, built once at startup."""

    broker: BrokerConfig
    topics: TopicsConfig
    serial: SerialConfig
    reconnect: ReconnectConfig
    log_level: str = 'INFO'
    stats_interval: float = 300.0

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> BridgeConfig:
        """Validate a merged config dict and build the immutable config."""
        config = deep_merge(DEFAULT_CONFIG, config)

        broker = _section(config, 'broker')
        topics = _section(config, 'topics')
        serial_cfg = _section(config, 'serial')
        reconnect = _section(config, 'reconnect')
        general = _section(config, 'general')

        topic_names = {}
        for key in ('transmit', 'receive', 'receive_control', 'availability'):
            name = _require_str(topics, key, f"topics.{key}")
            if '+' in name or '#' in name:
                raise ConfigError(f"topics.{key}: wildcards are not allowed ({name})")
            topic_names[key] = name

        username = broker.get('username') or ''
        password = broker.get('password') or ''
        if not isinstance(username, str) or not isinstance(password, str):
            raise ConfigError("broker.username and broker.password must be strings")

        log_level = str(general.get('log_level', 'INFO')).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigError(f"general.log_level: unknown level {log_level!r}")

        return cls(
            broker=BrokerConfig(
                address=_require_str(broker, 'address', 'broker.address'),
                client_id=_require_str(broker, 'client_id', 'broker.client_id'),
                username=username,
                password=password,
                keepalive=_require_int(broker, 'keepalive', 'broker.keepalive', 1),
                connect_timeout=parse_duration(broker['connect_timeout'], 'broker.connect_timeout'),
                retain_availability=_require_bool(broker, 'retain_availability', 'broker.retain_availability'),
                tls_verify=_require_bool(broker, 'tls_verify', 'broker.tls_verify'),
            ),
            topics=TopicsConfig(**topic_names),
            serial=SerialConfig(
                device=_require_str(serial_cfg, 'device', 'serial.device'),
                baud=_require_int(serial_cfg, 'baud', 'serial.baud', 1),
                timeout=parse_duration(serial_cfg.get('timeout'), 'serial.timeout'),
                max_read=_require_int(serial_cfg, 'max_read', 'serial.max_read', 1),
            ),
            reconnect=ReconnectConfig(
                attempts=_require_int(reconnect, 'attempts', 'reconnect.attempts', 0),
                interval=parse_duration(reconnect.get('interval'), 'reconnect.interval'),
            ),
            log_level=log_level,
            stats_interval=parse_duration(general.get('stats_interval', 0), 'general.stats_interval'),
        )


def _load_toml(path: str | Path) -> dict[str, Any]:
    """Load a single TOML file and return its contents as a dict."""
    try:
        with open(path, 'rb') as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{path}: cannot read config: {e}") from e


def load_config(config_paths: list[str]) -> dict[str, Any]:
    """Load and merge TOML configuration files.

    Files are loaded in order, each overlaying the previous one. Every path
    must exist; a bridge with a partial configuration is never started.
    """
    if not config_paths:
        raise ConfigError("No configuration file given")

    config: dict[str, Any] = {}
    for path in config_paths:
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        logger.info(f"Loading config: {path}")
        config = deep_merge(config, _load_toml(path))
    return config


def log_config_sources(config: BridgeConfig) -> None:
    """Log configuration summary."""
    logger.info(f"Broker: {config.broker.address} (client_id={config.broker.client_id})")
    logger.info(f"Serial device: {config.serial.device} @ {config.serial.baud} baud")
    logger.info(
        f"Reconnect policy: {config.reconnect.attempts} attempt(s) every {config.reconnect.interval:g}s"
    )

    topics = config.topics
    logger.debug(f"  transmit={topics.transmit} receive={topics.receive}")
    logger.debug(f"  receive_control={topics.receive_control} availability={topics.availability}")
    logger.debug(f"  serial timeout={config.serial.timeout:g}s max_read={config.serial.max_read}")
