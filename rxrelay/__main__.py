#!/usr/bin/env python3
"""
rxrelay main entry point.

Allows rxrelay to be run as a module: python3 -m rxrelay
"""

import logging
import logging.handlers
import os
import sys

# Set default log level from environment, or INFO if not set
log_level = os.getenv("RELAY_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)

# rx output is echoed at DEBUG; keep it out of the service log unless asked for
if os.getenv("RELAY_ECHO_RX", "0") != "1":
    logging.getLogger("rxrelay.logs.rx").setLevel(logging.INFO)

from rxrelay.config import RelayConfig
from rxrelay.errors import ConfigError
from rxrelay.service import RelayService


def _add_file_handler(path: str) -> None:
    """Attach a rotation-tolerant file handler whose write failures are ignored."""
    try:
        handler = logging.handlers.WatchedFileHandler(path, mode="a")
    except OSError as e:
        logging.warning(f"Cannot open log file {path}: {e}")
        return
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    original_emit = handler.emit

    def safe_emit(record):
        try:
            original_emit(record)
        except OSError:
            # Logging failures degrade silently
            pass

    handler.emit = safe_emit
    logging.getLogger().addHandler(handler)


def main() -> int:
    try:
        config = RelayConfig.load_config()
        config.validate()
    except (ConfigError, ValueError) as e:
        logging.error(f"Invalid configuration: {e}")
        return 1

    # The .env file may carry a different level than the process environment
    logging.getLogger().setLevel(config.log_level)
    if config.log_file:
        _add_file_handler(config.log_file)

    service = RelayService(config)
    try:
        service.start()
        service.run_forever()
    except KeyboardInterrupt:
        logging.info("rxrelay shutdown requested")
        service.stop()
    except Exception as e:
        logging.error(f"rxrelay failed to start: {e}", exc_info=True)
        service.stop()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
