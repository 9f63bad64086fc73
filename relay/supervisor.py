"""
Supervisor: termination policy for the relay pipeline.

Stages and the controller publish termination events onto the Supervisor's
bus. The first event decides the session: every other stage is torn down and
that event's exit status becomes the process exit status. There is no
per-stage restart; an operator-level supervisor restarts the whole relay.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageExited:
    """A stage process terminated (any reason, including success)."""
    stage: str
    exit_code: int


@dataclass(frozen=True)
class FatalError:
    """A non-stage condition that ends the session (e.g. duration probe failure)."""
    reason: str
    exit_code: int = 1


TerminationEvent = Union[StageExited, FatalError]


class Supervisor:
    """
    Waits for the first termination event and tears the pipeline down.

    publish() is thread-safe and may be called from stage watcher threads,
    the probe thread or the dispatcher. Teardown callbacks registered with
    add_teardown() run in reverse registration order, once.
    """

    def __init__(self) -> None:
        self._events: "queue.Queue[TerminationEvent]" = queue.Queue()
        self._teardowns: List[Callable[[], None]] = []
        self._terminal: Optional[TerminationEvent] = None

    @property
    def terminal_event(self) -> Optional[TerminationEvent]:
        return self._terminal

    def add_teardown(self, teardown: Callable[[], None]) -> None:
        self._teardowns.append(teardown)

    def publish(self, event: TerminationEvent) -> None:
        self._events.put(event)

    def stage_exited(self, stage: str, exit_code: int) -> None:
        """on_exit callback for StageProcess."""
        self.publish(StageExited(stage, exit_code))

    def fail(self, reason: str, exit_code: int = 1) -> None:
        self.publish(FatalError(reason, exit_code))

    def wait(self, timeout: Optional[float] = None) -> Optional[TerminationEvent]:
        """Block until the first termination event. Returns None on timeout."""
        if self._terminal is not None:
            return self._terminal
        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        self._terminal = event
        return event

    def run(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Wait for the first termination event, tear down, return the exit status.

        Returns None only if timeout elapsed with no event (nothing is torn down).
        """
        event = self.wait(timeout)
        if event is None:
            return None
        if isinstance(event, StageExited):
            logger.error(f"{event.stage} exited with code {event.exit_code}! Exiting...")
        else:
            logger.error(f"Fatal: {event.reason}. Exiting...")
        self.teardown()
        self._drain_late_events()
        return event.exit_code

    def teardown(self) -> None:
        teardowns, self._teardowns = self._teardowns, []
        for teardown in reversed(teardowns):
            try:
                teardown()
            except Exception as e:
                logger.error(f"Teardown step {getattr(teardown, '__name__', teardown)!r} failed: {e}", exc_info=True)

    def _drain_late_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            logger.debug(f"Ignoring termination event after shutdown: {event}")
