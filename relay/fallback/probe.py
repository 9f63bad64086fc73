"""Fallback clip duration probe (ffprobe)."""

from __future__ import annotations

import logging
import math
import os
import subprocess

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_SEC = 30.0


class ProbeError(RuntimeError):
    """Duration could not be determined."""


def _ffprobe_bin() -> str:
    return os.getenv("RELAY_FFPROBE_BIN", "ffprobe")


def probe_duration_ms(file_path: str, timeout: float = DEFAULT_PROBE_TIMEOUT_SEC) -> int:
    """
    Get the playable duration of a media file in milliseconds using ffprobe.

    Raises:
        ProbeError: ffprobe missing, failed, timed out, or returned no usable duration
    """
    cmd = [
        _ffprobe_bin(),
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        file_path,
    ]
    logger.debug("Probing duration: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise ProbeError(f"ffprobe not found: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise ProbeError(f"ffprobe timed out after {timeout}s on {file_path}") from e
    except OSError as e:
        raise ProbeError(f"ffprobe could not be started ({cmd[0]}): {e}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise ProbeError(f"ffprobe exited with code {result.returncode}: {stderr or '<no output>'}")

    output = (result.stdout or "").strip()
    try:
        seconds = float(output.splitlines()[0]) if output else None
    except ValueError:
        seconds = None
    if seconds is None or not math.isfinite(seconds):
        raise ProbeError(f"ffprobe returned no duration for {file_path}: {output!r}")

    duration_ms = int(round(seconds * 1000))
    if duration_ms <= 0:
        raise ProbeError(f"ffprobe returned non-positive duration for {file_path}: {seconds}")
    return duration_ms
