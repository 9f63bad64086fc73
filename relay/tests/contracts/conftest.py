"""
Shared pytest fixtures for relay contract tests.
"""
import threading

import pytest

from relay.controller.failover import FailoverController
from relay.tests.contracts.test_doubles import (
    RecordingSink,
    VirtualClock,
    VirtualDispatcher,
    make_asset,
)


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def dispatcher(clock):
    return VirtualDispatcher(clock)


@pytest.fixture
def sink(clock):
    return RecordingSink(clock)


@pytest.fixture
def make_controller(dispatcher, sink):
    """
    Build a FailoverController on virtual time.

    Returns:
        callable(timeout_ms=5000, duration_ms=10000, force_start=False, asset=None)
    """
    def _make(timeout_ms=5000, duration_ms=10000, force_start=False, asset=None):
        asset = asset or make_asset(duration_ms)
        controller = FailoverController(
            asset=asset,
            sink=sink,
            dispatcher=dispatcher,
            timeout_ms=timeout_ms,
            force_start=force_start,
        )
        controller.start()
        return controller
    return _make


@pytest.fixture
def fallback_file(tmp_path):
    path = tmp_path / "fallback.ts"
    path.write_bytes(b"\x47" + b"\x11" * 187)
    return path


@pytest.fixture(autouse=False)  # Request explicitly in threaded tests
def thread_leak_guard():
    """
    Detect threads leaked by a test.

    Ensures stop()/teardown contracts are actually respected.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate() if t.is_alive())
    leaked = after - before
    if leaked:
        leaked_threads = [t for t in threading.enumerate() if t.ident in leaked]
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
