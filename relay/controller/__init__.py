"""
Relay failover controller.

The controller decides, from the arrival pattern of live bytes, when to
splice the fallback clip into the output stage, and runs inside a single
Dispatcher thread.
"""

from relay.controller.dispatcher import Dispatcher, TimerHandle, monotonic_ms
from relay.controller.failover import ControllerState, FailoverController, Mode

__all__ = [
    "ControllerState",
    "Dispatcher",
    "FailoverController",
    "Mode",
    "TimerHandle",
    "monotonic_ms",
]
