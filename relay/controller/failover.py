"""
Failover controller: live/fallback state machine with a self-correcting timer.

The controller sits between the ingest stage's output and the output stage's
input. Live bytes are forwarded unchanged. When nothing arrives for
timeout_ms, the fallback clip is written instead, and then written again
once per clip duration until live data comes back.

Re-injection delays are recomputed from a fresh clock read every time a
timer is armed, so write latency and scheduler jitter do not add up over
many loops:

    delay = duration_ms                                      first tick in FALLBACK
    delay = max(0, duration_ms - (now - last_injection_at))  afterwards

All methods run on the Dispatcher thread. Nothing here locks.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from relay.controller.dispatcher import Dispatcher, TimerHandle
from relay.fallback.asset import FallbackAsset

logger = logging.getLogger(__name__)


class Mode(enum.Enum):
    LIVE = "LIVE"
    FALLBACK = "FALLBACK"


@dataclass
class ControllerState:
    """
    Mutable controller record. Owned by one FailoverController, never shared.

    Attributes:
        timeout_ms: Stall threshold, constant for the session
        mode: Current mode
        pending_timer: The single armed timer, if any
        last_injection_at: Clock reading (ms) taken right before the most
            recent injection; None after live data
        injections: Injections since the last live data (for logging)
        awaiting_duration: Stall injection happened before the clip duration
            was known; the loop starts when it resolves
    """
    timeout_ms: int
    mode: Mode = Mode.LIVE
    pending_timer: Optional[TimerHandle] = None
    last_injection_at: Optional[float] = None
    injections: int = 0
    awaiting_duration: bool = False


class FailoverController:
    """
    Forwards live bytes and splices in the fallback clip on stall.

    Args:
        asset: Fallback clip; duration_ms may still be unresolved
        sink: Writes bytes into the output stage (blocking write)
        dispatcher: Scheduling domain providing call_later() and clock
        timeout_ms: Stall threshold
        force_start: Arm a one-shot stall timer at start() even with no data
    """

    def __init__(
        self,
        asset: FallbackAsset,
        sink: Callable[[bytes], object],
        dispatcher: Dispatcher,
        timeout_ms: int,
        force_start: bool = False,
    ) -> None:
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {timeout_ms}")
        self._asset = asset
        self._sink = sink
        self._dispatcher = dispatcher
        self._force_start = force_start
        self.state = ControllerState(timeout_ms=timeout_ms)

    @property
    def mode(self) -> Mode:
        return self.state.mode

    def start(self) -> None:
        """Arm the forced-start timer if configured. Call on the dispatcher thread."""
        if self._force_start:
            logger.info(f"Forced start: fallback in {self.state.timeout_ms}ms unless live data arrives")
            self._arm(self.state.timeout_ms, self._on_stall)

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def on_data(self, data: bytes) -> None:
        """Live bytes from the ingest stage."""
        state = self.state
        self._cancel_pending()
        if state.mode is Mode.FALLBACK:
            logger.info(f"Live data resumed after {state.injections} fallback injection(s)")
        state.mode = Mode.LIVE
        state.last_injection_at = None
        state.injections = 0
        state.awaiting_duration = False
        self._sink(data)
        self._arm(state.timeout_ms, self._on_stall)

    def on_duration_resolved(self, duration_ms: int) -> None:
        """Probe finished. Starts the re-injection loop if it was waiting on this."""
        self._asset.resolve_duration(duration_ms)
        state = self.state
        if not state.awaiting_duration:
            return
        state.awaiting_duration = False
        if state.mode is not Mode.FALLBACK or state.pending_timer is not None:
            return
        elapsed = self._dispatcher.clock() - state.last_injection_at
        delay = max(0.0, duration_ms - elapsed)
        logger.info(f"Fallback duration resolved ({duration_ms}ms), next injection in {delay:.0f}ms")
        self._arm(delay, self._on_tick)

    def _on_stall(self) -> None:
        state = self.state
        state.pending_timer = None
        logger.warning("Timeout reached! Switching to fallback file...")
        state.mode = Mode.FALLBACK
        self._inject()
        duration_ms = self._asset.duration_ms
        if duration_ms is None:
            logger.info("Fallback duration not known yet, holding re-injection until probe completes")
            state.awaiting_duration = True
            return
        self._arm(duration_ms, self._on_tick)

    def _on_tick(self) -> None:
        state = self.state
        if state.mode is not Mode.FALLBACK:
            return
        state.pending_timer = None
        self._inject()
        self._arm(self._next_tick_delay(), self._on_tick)

    # ------------------------------------------------------------------ #
    # Timer discipline
    # ------------------------------------------------------------------ #

    def _next_tick_delay(self) -> float:
        duration_ms = self._asset.duration_ms
        elapsed = self._dispatcher.clock() - self.state.last_injection_at
        delay = duration_ms - elapsed
        if delay < 0:
            logger.warning(
                f"Fallback injection overran clip duration by {-delay:.0f}ms, re-injecting immediately"
            )
            return 0.0
        return delay

    def _inject(self) -> None:
        state = self.state
        state.last_injection_at = self._dispatcher.clock()
        state.injections += 1
        logger.debug(f"Injecting fallback payload ({len(self._asset.payload)} bytes, #{state.injections})")
        self._sink(self._asset.payload)

    def _cancel_pending(self) -> None:
        if self.state.pending_timer is not None:
            self.state.pending_timer.cancel()
            self.state.pending_timer = None

    def _arm(self, delay_ms: float, callback: Callable[[], None]) -> None:
        self._cancel_pending()
        self.state.pending_timer = self._dispatcher.call_later(delay_ms, callback)
