#!/usr/bin/env python3
"""
Relay main entry point.

Allows the relay to be run as a module: python3 -m relay SOURCE FALLBACK DEST
"""

import logging
import os
import sys

from relay.config import ConfigError, load_config
from relay.fallback.asset import FallbackAssetError
from relay.service import RelayService

# 128 + SIGINT, same convention as stage exit statuses
EXIT_INTERRUPTED = 130


def _setup_logging(level_name: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


def main(argv=None) -> int:
    # Set default log level from environment, or INFO if not set
    _setup_logging(os.getenv("RELAY_LOG_LEVEL", "INFO"))

    try:
        config = load_config(argv)
    except ConfigError:
        return 1
    logging.getLogger().setLevel(getattr(logging, config.log_level, logging.INFO))

    try:
        relay = RelayService(config)
    except FallbackAssetError as e:
        logging.error(f"Relay failed to start: {e}")
        return 1

    try:
        relay.start()
        code = relay.run()
    except KeyboardInterrupt:
        logging.info("Relay shutdown requested")
        relay.stop()
        return EXIT_INTERRUPTED
    except Exception as e:
        logging.error(f"Relay failed: {e}", exc_info=True)
        relay.stop()
        return 1
    return code if code is not None else 1


if __name__ == "__main__":
    sys.exit(main())
