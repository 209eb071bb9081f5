"""
Configuration management for rxrelay.

Reads configuration from an optional .env file and environment variables with
sensible defaults. Values already present in the environment win over the
.env file.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from rxrelay.errors import ConfigError

# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/rxrelay/relay.env")

# Arguments passed to rx.py when a start request does not supply any
DEFAULT_RX_ARGS = [
    "--args", "rtl",
    "-N", "LNA:47",
    "-S", "1400000",
    "-T", "trunk.tsv",
    "-X",
    "-V",
    "-v", "9",
    "-l", "http:0.0.0.0:8080",
    "-w",
    "-W", "127.0.0.1",
]

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("RELAY_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)


def _get_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _get_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    """Like _get_int, but an explicitly empty value means None."""
    raw = os.getenv(name)
    if raw is None:
        return default
    if raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


@dataclass
class RelayConfig:
    """rxrelay configuration loaded from .env file and environment variables."""

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 9000

    # rx process
    rx_path: Optional[str] = None
    rx_program: str = "rx.py"
    python: str = "python3"
    niceness: Optional[int] = -15
    default_args: List[str] = field(default_factory=lambda: list(DEFAULT_RX_ARGS))
    stop_timeout_sec: float = 5.0

    # Audio datagrams from rx
    audio_addr: str = "127.0.0.1:23456"
    sample_rate: int = 8000
    channels: int = 1

    # Trunk file, relative to rx_path unless absolute
    trunk_file: str = "trunk.tsv"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def load_config(cls) -> "RelayConfig":
        """
        Load configuration from .env file and environment variables.

        Returns:
            RelayConfig instance
        """
        _load_env_file()

        default_args_raw = os.getenv("RELAY_DEFAULT_ARGS")
        default_args = (
            shlex.split(default_args_raw) if default_args_raw else list(DEFAULT_RX_ARGS)
        )

        return cls(
            host=os.getenv("RELAY_HOST", "0.0.0.0"),
            port=_get_int("RELAY_PORT", 9000),
            rx_path=os.getenv("RELAY_RX_PATH") or None,
            rx_program=os.getenv("RELAY_RX_PROGRAM", "rx.py"),
            python=os.getenv("RELAY_PYTHON", "python3"),
            niceness=_get_optional_int("RELAY_NICE", -15),
            default_args=default_args,
            audio_addr=os.getenv("RELAY_AUDIO_ADDR", "127.0.0.1:23456"),
            sample_rate=_get_int("RELAY_SAMPLE_RATE", 8000),
            channels=_get_int("RELAY_CHANNELS", 1),
            trunk_file=os.getenv("RELAY_TRUNK_FILE", "trunk.tsv"),
            log_level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("RELAY_LOG_FILE") or None,
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If rx_path is missing or not a directory
            ValueError: If any value is out of range
        """
        if not self.rx_path:
            raise ConfigError("RELAY_RX_PATH is not set")
        if not Path(self.rx_path).is_dir():
            raise ConfigError(f"RELAY_RX_PATH is not a directory: {self.rx_path}")
        if not 0 < self.port <= 65535:
            raise ValueError(f"port must be in 1..65535, got {self.port}")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels <= 0:
            raise ValueError(f"channels must be positive, got {self.channels}")
        if self.stop_timeout_sec <= 0:
            raise ValueError(f"stop_timeout_sec must be positive, got {self.stop_timeout_sec}")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @property
    def trunk_path(self) -> Path:
        """Trunk file location, resolved against rx_path."""
        path = Path(self.trunk_file)
        if path.is_absolute() or not self.rx_path:
            return path
        return Path(self.rx_path) / path
