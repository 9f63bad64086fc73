"""
Configuration management for the relay.

Values come from, in increasing priority: built-in defaults, a .env file
(RELAY_ENV_FILE, default /etc/relay/relay.env), environment variables, and
command-line arguments.
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

DEFAULT_ENV_FILE = Path("/etc/relay/relay.env")

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_LOG_DIR = "/tmp"
DEFAULT_READ_CHUNK_SIZE = 65536
DEFAULT_DISPATCH_QUEUE_SIZE = 64
DEFAULT_PROBE_TIMEOUT_SEC = 30.0

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Invalid relay configuration."""


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(os.getenv("RELAY_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        load_dotenv(env_path, override=False)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {value} (must be an integer)")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {value} (must be a number)")


@dataclass
class RelayConfig:
    """Relay configuration loaded from environment and command line."""

    source: str
    fallback_file: str
    destination: str

    force_start: bool = False
    logging_enabled: bool = False
    persistent_logging: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    fallback_duration_ms: Optional[int] = None

    log_dir: str = DEFAULT_LOG_DIR
    log_level: str = "INFO"

    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE
    dispatch_queue_size: int = DEFAULT_DISPATCH_QUEUE_SIZE
    probe_timeout_sec: float = DEFAULT_PROBE_TIMEOUT_SEC

    @property
    def diagnostics_enabled(self) -> bool:
        return self.logging_enabled or self.persistent_logging

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If configuration is invalid
        """
        for field_name in ("source", "fallback_file", "destination"):
            if not getattr(self, field_name):
                raise ConfigError(f"Missing required argument: {field_name}")

        if self.timeout_ms <= 0:
            raise ConfigError(f"Invalid timeout: {self.timeout_ms}ms (must be > 0)")

        if self.fallback_duration_ms is not None and self.fallback_duration_ms <= 0:
            raise ConfigError(
                f"Invalid fallback duration: {self.fallback_duration_ms}ms (must be > 0)"
            )

        if self.read_chunk_size <= 0:
            raise ConfigError(f"Invalid read chunk size: {self.read_chunk_size} (must be > 0)")

        if self.dispatch_queue_size <= 0:
            raise ConfigError(f"Invalid dispatch queue size: {self.dispatch_queue_size} (must be > 0)")

        if self.probe_timeout_sec <= 0:
            raise ConfigError(f"Invalid probe timeout: {self.probe_timeout_sec}s (must be > 0)")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )

        if not Path(self.fallback_file).is_file():
            raise ConfigError(f"Fallback file does not exist: {self.fallback_file}")

        if self.diagnostics_enabled and not Path(self.log_dir).is_dir():
            raise ConfigError(f"Log directory does not exist: {self.log_dir}")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Relay a live RTMP feed, looping a fallback clip whenever the feed stalls.",
        epilog="The fallback file MUST be an MPEG-TS (.ts) file.",
    )
    parser.add_argument("source", help="Live input URL (RTMP)")
    parser.add_argument("fallback_file", help="Fallback clip, MPEG-TS")
    parser.add_argument("destination", help="Output URL (RTMP)")
    parser.add_argument(
        "-f", "--force-start",
        action="store_true",
        default=None,
        help="Force start output with the fallback loop",
    )
    parser.add_argument(
        "-l", "--log",
        dest="logging_enabled",
        action="store_true",
        default=None,
        help="Log rtmpdump/ffmpeg output to files in the log directory",
    )
    parser.add_argument(
        "-p", "--persistent-log",
        dest="persistent_logging",
        action="store_true",
        default=None,
        help="Like -l, with a timestamp in each file name so runs do not overwrite each other",
    )
    parser.add_argument(
        "-t", "--timeout",
        dest="timeout_ms",
        type=int,
        metavar="MS",
        help=f"Milliseconds without data before switching to fallback (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument(
        "-d", "--duration",
        dest="fallback_duration_ms",
        type=int,
        metavar="MS",
        help="Fallback clip duration in ms (default: probed with ffprobe)",
    )
    parser.add_argument("--log-dir", dest="log_dir", help=f"Directory for stage logs (default: {DEFAULT_LOG_DIR})")
    parser.add_argument("--log-level", dest="log_level", choices=VALID_LOG_LEVELS, help="Relay log level")
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> RelayConfig:
    """
    Load and validate configuration from .env, environment and argv.

    Raises:
        ConfigError: If configuration is invalid
        SystemExit: On argparse usage errors or --help
    """
    _load_env_file()
    args = build_arg_parser().parse_args(argv)

    def pick(arg_value, env_value):
        return env_value if arg_value is None else arg_value

    config = RelayConfig(
        source=args.source,
        fallback_file=args.fallback_file,
        destination=args.destination,
        force_start=pick(args.force_start, _env_bool("RELAY_FORCE_START")),
        logging_enabled=pick(args.logging_enabled, _env_bool("RELAY_STAGE_LOGGING")),
        persistent_logging=pick(args.persistent_logging, _env_bool("RELAY_PERSISTENT_LOGGING")),
        timeout_ms=pick(args.timeout_ms, _env_int("RELAY_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)),
        fallback_duration_ms=pick(args.fallback_duration_ms, _env_int("RELAY_FALLBACK_DURATION_MS", None)),
        log_dir=pick(args.log_dir, os.getenv("RELAY_LOG_DIR", DEFAULT_LOG_DIR)),
        log_level=pick(args.log_level, os.getenv("RELAY_LOG_LEVEL", "INFO")).upper(),
        read_chunk_size=_env_int("RELAY_READ_CHUNK_SIZE", DEFAULT_READ_CHUNK_SIZE),
        dispatch_queue_size=_env_int("RELAY_DISPATCH_QUEUE_SIZE", DEFAULT_DISPATCH_QUEUE_SIZE),
        probe_timeout_sec=_env_float("RELAY_PROBE_TIMEOUT_SEC", DEFAULT_PROBE_TIMEOUT_SEC),
    )

    try:
        config.validate()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        raise
    return config


def describe(config: RelayConfig) -> List[str]:
    """Human-readable summary lines for the startup banner."""
    return [
        f"Source: {config.source}",
        f"Fallback: {config.fallback_file}",
        f"Destination: {config.destination}",
        f"Stall timeout: {config.timeout_ms}ms",
        "Fallback duration: "
        + (f"{config.fallback_duration_ms}ms" if config.fallback_duration_ms else "probe"),
        f"Force start: {'yes' if config.force_start else 'no'}",
        "Stage logging: "
        + ("off" if not config.diagnostics_enabled else
           f"{config.log_dir} ({'persistent' if config.persistent_logging else 'overwrite'})"),
    ]
