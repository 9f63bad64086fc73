"""
Fallback clip loading and duration resolution.

The whole clip is read into memory once at startup, before any stage is
spawned, so the payload is ready before the first stall can fire. The clip
duration is either given explicitly or probed in the background by
DurationResolver; the controller is told when it arrives.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from relay.fallback.probe import ProbeError, probe_duration_ms

logger = logging.getLogger(__name__)


class FallbackAssetError(RuntimeError):
    """Fallback clip cannot be used (missing, unreadable, empty, bad duration)."""


class FallbackAsset:
    """
    Fallback clip payload plus its playback duration.

    The payload is immutable and may be read from any thread. duration_ms is
    set at most once after construction, via resolve_duration().
    """

    def __init__(self, path: str, payload: bytes, duration_ms: Optional[int] = None) -> None:
        if duration_ms is not None and duration_ms <= 0:
            raise FallbackAssetError(f"Fallback duration must be positive, got {duration_ms}ms")
        self.path = path
        self._payload = bytes(payload)
        self._duration_ms = duration_ms

    @property
    def payload(self) -> bytes:
        return self._payload

    @property
    def duration_ms(self) -> Optional[int]:
        return self._duration_ms

    @property
    def duration_known(self) -> bool:
        return self._duration_ms is not None

    def resolve_duration(self, duration_ms: int) -> None:
        if duration_ms <= 0:
            raise FallbackAssetError(f"Fallback duration must be positive, got {duration_ms}ms")
        if self._duration_ms is not None:
            if self._duration_ms != duration_ms:
                logger.debug(
                    f"Ignoring resolved duration {duration_ms}ms, already set to {self._duration_ms}ms"
                )
            return
        self._duration_ms = duration_ms

    def __repr__(self) -> str:
        return f"<FallbackAsset {self.path!r} {len(self._payload)} bytes duration={self._duration_ms}ms>"


def load_fallback_asset(path: str, duration_ms: Optional[int] = None) -> FallbackAsset:
    """
    Read the fallback clip fully into memory.

    Args:
        path: Fallback clip (MPEG-TS)
        duration_ms: Explicit duration; used verbatim when given

    Raises:
        FallbackAssetError: File missing, unreadable or empty, or bad duration
    """
    if not path:
        raise FallbackAssetError("Fallback file path cannot be empty")
    if not os.path.isfile(path):
        raise FallbackAssetError(f"Fallback file not found: {path}")

    try:
        with open(path, "rb") as f:
            payload = f.read()
    except OSError as e:
        raise FallbackAssetError(f"Fallback file not readable: {path} ({e})") from e

    if not payload:
        raise FallbackAssetError(f"Fallback file is empty: {path}")

    asset = FallbackAsset(path, payload, duration_ms)
    logger.info(
        "Loaded fallback file '%s' (%d bytes, duration %s)",
        path,
        len(payload),
        f"{duration_ms}ms" if duration_ms is not None else "pending probe",
    )
    return asset


class DurationResolver:
    """
    Probes the clip duration on a background thread.

    Exactly one of on_resolved(duration_ms) or on_failed(error) is called,
    from the resolver thread. Callers hand the result over to the dispatcher
    themselves.
    """

    def __init__(
        self,
        path: str,
        on_resolved: Callable[[int], None],
        on_failed: Callable[[Exception], None],
        probe: Callable[[str], int] = probe_duration_ms,
    ) -> None:
        self.path = path
        self._on_resolved = on_resolved
        self._on_failed = on_failed
        self._probe = probe
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("DurationResolver already started")
        self._thread = threading.Thread(target=self._run, daemon=True, name="DurationProbe")
        self._thread.start()
        logger.debug(f"Probing fallback duration for '{self.path}'")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        try:
            duration_ms = self._probe(self.path)
        except ProbeError as e:
            logger.error(f"An error occurred while probing duration for fallback file: {e}")
            self._on_failed(e)
            return
        except Exception as e:
            logger.error(f"Unexpected error while probing duration for fallback file: {e}", exc_info=True)
            self._on_failed(e)
            return
        logger.info(f"Probed fallback duration: {duration_ms}ms")
        self._on_resolved(duration_ms)
