#!/usr/bin/env python3
from __future__ import annotations

__version__ = "0.3.0"

import argparse
import logging
import signal
import sys

from config_loader import BridgeConfig, ConfigError, load_config
from serialbridge import SerialBridge

EXIT_CONFIG_ERROR = 2

# Initialize logging (console only) - level is adjusted after config load
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serialtomqtt",
        description="A bridge between a serial port and MQTT",
    )
    parser.add_argument("config", nargs="+", help="TOML configuration file (later files override earlier ones)")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = BridgeConfig.from_dict(load_config(args.config))
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    log_level = logging.DEBUG if args.debug else getattr(logging, config.log_level, logging.INFO)
    logging.getLogger().setLevel(log_level)

    try:
        bridge = SerialBridge(config, debug=args.debug, version=__version__)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    # Ensure signals from systemd (SIGTERM) and ctrl-c (SIGINT) are handled
    signal.signal(signal.SIGTERM, bridge.handle_signal)
    signal.signal(signal.SIGINT, bridge.handle_signal)

    return bridge.run()


if __name__ == "__main__":
    sys.exit(main())
