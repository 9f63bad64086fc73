"""
Single-threaded event dispatcher for the failover controller.

The Dispatcher is the one scheduling domain the controller runs in. It owns
a bounded queue of posted callables and a heap of one-shot timers, and runs
both from a single thread, so every controller event is handled start to
finish without interleaving.

Posting blocks when the queue is full. This is how the ingest reader thread
is paused when the output stage cannot keep up.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 64

# Upper bound on a single blocking wait so stop() is noticed promptly
_MAX_WAIT_SEC = 0.5

_STOP = object()


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


class TimerHandle:
    """
    Cancellation handle for one scheduled callback.

    A cancelled handle never fires, even if its deadline has already passed
    and it is sitting at the top of the heap.
    """

    __slots__ = ("deadline_ms", "callback", "args", "cancelled", "fired")

    def __init__(self, deadline_ms: float, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.deadline_ms = deadline_ms
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else ("fired" if self.fired else "pending")
        return f"<TimerHandle deadline={self.deadline_ms:.1f}ms {state}>"


class Dispatcher:
    """
    Bounded event queue plus timer heap, drained by one thread.

    Callbacks run on the dispatcher thread only. call_later() is meant to be
    called from that thread (the controller arms its timers from inside event
    handlers); post() is the thread-safe way in from the outside.

    Attributes:
        clock: Millisecond clock used for deadlines (default: monotonic_ms)
    """

    def __init__(
        self,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], float] = monotonic_ms,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError(f"queue_size must be > 0, got {queue_size}")
        self.clock = clock
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._timers: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._on_error = on_error
        self._running = False
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ #
    # Scheduling
    # ------------------------------------------------------------------ #

    def call_later(self, delay_ms: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Schedule callback(*args) to run delay_ms from now. Negative delays run as 0."""
        deadline = self.clock() + max(0.0, delay_ms)
        handle = TimerHandle(deadline, callback, args)
        heapq.heappush(self._timers, (deadline, next(self._seq), handle))
        return handle

    def post(self, callback: Callable[..., Any], *args: Any, timeout: Optional[float] = None) -> bool:
        """
        Queue callback(*args) for the dispatcher thread.

        Blocks while the queue is full. Returns False if the dispatcher has
        been stopped, or if timeout (seconds) elapsed before space freed up.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if not self._running and self._thread is not None:
                return False
            wait = _MAX_WAIT_SEC
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    return False
            try:
                self._queue.put((callback, args), timeout=wait)
                return True
            except queue.Full:
                continue

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True, name="RelayDispatcher")
        self._thread.start()
        logger.debug("Dispatcher thread started")

    def stop(self, timeout: float = 1.0) -> None:
        if not self._running:
            return
        self._running = False
        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            pass
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Dispatcher thread did not terminate within timeout")
        logger.debug("Dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_timers(self) -> int:
        """Number of armed, not-yet-fired, not-cancelled timers."""
        return sum(1 for _, _, h in self._timers if h.active)

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def _next_wait_sec(self) -> float:
        while self._timers and not self._timers[0][2].active:
            heapq.heappop(self._timers)
        if not self._timers:
            return _MAX_WAIT_SEC
        remaining_ms = self._timers[0][0] - self.clock()
        return min(_MAX_WAIT_SEC, max(0.0, remaining_ms / 1000.0))

    def _run_due_timers(self) -> None:
        now = self.clock()
        while self._timers and self._timers[0][0] <= now:
            # Posted events already waiting are handled before any due timer
            if not self._queue.empty():
                return
            _, _, handle = heapq.heappop(self._timers)
            if not handle.active:
                continue
            handle.fired = True
            self._invoke(handle.callback, handle.args)

    def _invoke(self, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Dispatcher callback {getattr(callback, '__name__', callback)!r} failed: {e}", exc_info=True)
            if self._on_error is not None:
                self._on_error(e)

    def _run(self) -> None:
        while self._running:
            try:
                item = self._queue.get(timeout=self._next_wait_sec())
            except queue.Empty:
                item = None
            if item is _STOP:
                break
            if item is not None:
                callback, args = item
                self._invoke(callback, args)
            if not self._running:
                break
            self._run_due_timers()
        logger.debug("Dispatcher loop exited")
