"""
Contract tests for the relay entry point exit statuses.
"""

import pytest

from relay import __main__ as entry


@pytest.fixture(autouse=True)
def no_env_file(monkeypatch, tmp_path):
    monkeypatch.setenv("RELAY_ENV_FILE", str(tmp_path / "absent.env"))


class FakeService:
    instances = []

    def __init__(self, config, run_result=7, run_error=None):
        self.config = config
        self.run_result = run_result
        self.run_error = run_error
        self.started = False
        self.stopped = False
        FakeService.instances.append(self)

    def start(self):
        self.started = True

    def run(self):
        if self.run_error is not None:
            raise self.run_error
        return self.run_result

    def stop(self):
        self.stopped = True


def _args(fallback_file):
    return ["rtmp://in", str(fallback_file), "rtmp://out"]


def test_missing_fallback_file_exits_one(tmp_path):
    assert entry.main(["rtmp://in", str(tmp_path / "missing.ts"), "rtmp://out"]) == 1


def test_empty_fallback_file_exits_one(tmp_path):
    empty = tmp_path / "empty.ts"
    empty.write_bytes(b"")
    assert entry.main(["rtmp://in", str(empty), "rtmp://out"]) == 1


def test_session_exit_status_returned(monkeypatch, fallback_file):
    monkeypatch.setattr(entry, "RelayService", lambda config: FakeService(config, run_result=7))
    assert entry.main(_args(fallback_file)) == 7


def test_keyboard_interrupt_stops_cleanly(monkeypatch, fallback_file):
    FakeService.instances.clear()
    monkeypatch.setattr(
        entry, "RelayService", lambda config: FakeService(config, run_error=KeyboardInterrupt())
    )
    assert entry.main(_args(fallback_file)) == entry.EXIT_INTERRUPTED == 130
    assert FakeService.instances[-1].stopped


def test_unexpected_error_exits_one(monkeypatch, fallback_file):
    FakeService.instances.clear()
    monkeypatch.setattr(
        entry, "RelayService", lambda config: FakeService(config, run_error=RuntimeError("boom"))
    )
    assert entry.main(_args(fallback_file)) == 1
    assert FakeService.instances[-1].stopped
