"""
Contract tests for fallback clip loading and duration resolution.

Covers: synchronous full read, explicit duration override, startup errors
for missing/empty files, one-shot duration resolution, the ffprobe wrapper,
and the background DurationResolver.
"""

import subprocess
import threading

import pytest

from relay.fallback import asset as asset_module
from relay.fallback import probe as probe_module
from relay.fallback.asset import (
    DurationResolver,
    FallbackAsset,
    FallbackAssetError,
    load_fallback_asset,
)
from relay.fallback.probe import ProbeError, probe_duration_ms


class TestLoadFallbackAsset:

    def test_reads_whole_file(self, fallback_file):
        asset = load_fallback_asset(str(fallback_file))
        assert asset.payload == fallback_file.read_bytes()
        assert asset.path == str(fallback_file)

    def test_explicit_duration_used_verbatim(self, fallback_file):
        asset = load_fallback_asset(str(fallback_file), duration_ms=12345)
        assert asset.duration_ms == 12345
        assert asset.duration_known

    def test_duration_pending_without_override(self, fallback_file):
        asset = load_fallback_asset(str(fallback_file))
        assert asset.duration_ms is None
        assert not asset.duration_known

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(FallbackAssetError, match="not found"):
            load_fallback_asset(str(tmp_path / "nope.ts"))

    def test_empty_file_is_fatal(self, tmp_path):
        empty = tmp_path / "empty.ts"
        empty.write_bytes(b"")
        with pytest.raises(FallbackAssetError, match="empty"):
            load_fallback_asset(str(empty))

    def test_empty_path_is_fatal(self):
        with pytest.raises(FallbackAssetError):
            load_fallback_asset("")

    def test_unreadable_file_is_fatal(self, fallback_file, monkeypatch):
        def deny(*args, **kwargs):
            raise PermissionError("denied")

        monkeypatch.setattr(asset_module, "open", deny, raising=False)
        with pytest.raises(FallbackAssetError, match="not readable"):
            load_fallback_asset(str(fallback_file))

    def test_non_positive_override_rejected(self, fallback_file):
        with pytest.raises(FallbackAssetError):
            load_fallback_asset(str(fallback_file), duration_ms=0)


class TestFallbackAsset:

    def test_payload_is_immutable_bytes(self):
        source = bytearray(b"abc")
        asset = FallbackAsset("/x.ts", source)
        source[0] = ord("z")
        assert asset.payload == b"abc"
        assert isinstance(asset.payload, bytes)

    def test_resolve_duration_sets_once(self):
        asset = FallbackAsset("/x.ts", b"abc")
        asset.resolve_duration(5000)
        asset.resolve_duration(7000)
        assert asset.duration_ms == 5000

    def test_resolve_does_not_override_explicit(self):
        asset = FallbackAsset("/x.ts", b"abc", duration_ms=3000)
        asset.resolve_duration(9000)
        assert asset.duration_ms == 3000

    def test_resolve_rejects_non_positive(self):
        asset = FallbackAsset("/x.ts", b"abc")
        with pytest.raises(FallbackAssetError):
            asset.resolve_duration(-1)


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=["ffprobe"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestProbeDuration:

    def test_seconds_converted_to_ms(self, monkeypatch):
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            return _completed(stdout="10.5\n")

        monkeypatch.setattr(probe_module.subprocess, "run", fake_run)
        assert probe_duration_ms("/clip.ts") == 10500
        assert calls[0][0] == "ffprobe"
        assert calls[0][-1] == "/clip.ts"
        assert "format=duration" in calls[0]

    def test_binary_overridable(self, monkeypatch):
        seen = []
        monkeypatch.setenv("RELAY_FFPROBE_BIN", "/opt/ffmpeg/bin/ffprobe")
        monkeypatch.setattr(
            probe_module.subprocess, "run", lambda cmd, **kw: seen.append(cmd[0]) or _completed(stdout="1\n")
        )
        probe_duration_ms("/clip.ts")
        assert seen == ["/opt/ffmpeg/bin/ffprobe"]

    @pytest.mark.parametrize("stdout", ["", "N/A\n", "nan\n", "inf\n", "-inf\n", "0.0\n", "-3\n"])
    def test_unusable_output_raises(self, monkeypatch, stdout):
        monkeypatch.setattr(probe_module.subprocess, "run", lambda cmd, **kw: _completed(stdout=stdout))
        with pytest.raises(ProbeError):
            probe_duration_ms("/clip.ts")

    def test_nonzero_exit_raises_with_stderr(self, monkeypatch):
        monkeypatch.setattr(
            probe_module.subprocess, "run",
            lambda cmd, **kw: _completed(returncode=1, stderr="Invalid data found when processing input"),
        )
        with pytest.raises(ProbeError, match="Invalid data"):
            probe_duration_ms("/clip.ts")

    def test_missing_binary_raises(self, monkeypatch):
        def missing(cmd, **kw):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(probe_module.subprocess, "run", missing)
        with pytest.raises(ProbeError, match="not found"):
            probe_duration_ms("/clip.ts")

    def test_non_executable_binary_raises(self, monkeypatch, tmp_path):
        script = tmp_path / "ffprobe"
        script.write_text("#!/bin/sh\necho 10.0\n")
        script.chmod(0o644)
        monkeypatch.setenv("RELAY_FFPROBE_BIN", str(script))
        with pytest.raises(ProbeError, match="could not be started"):
            probe_duration_ms("/clip.ts")

    def test_timeout_raises(self, monkeypatch):
        def slow(cmd, **kw):
            raise subprocess.TimeoutExpired(cmd, kw.get("timeout"))

        monkeypatch.setattr(probe_module.subprocess, "run", slow)
        with pytest.raises(ProbeError, match="timed out"):
            probe_duration_ms("/clip.ts", timeout=0.5)


class TestDurationResolver:

    @pytest.mark.timeout(5)
    def test_success_calls_on_resolved_only(self):
        resolved, failed = [], []
        done = threading.Event()
        resolver = DurationResolver(
            "/clip.ts",
            on_resolved=lambda ms: (resolved.append(ms), done.set()),
            on_failed=failed.append,
            probe=lambda path: 8000,
        )
        resolver.start()
        assert done.wait(2.0)
        resolver.join(1.0)
        assert resolved == [8000]
        assert failed == []

    @pytest.mark.timeout(5)
    def test_probe_error_calls_on_failed_only(self):
        resolved, failed = [], []

        def broken(path):
            raise ProbeError("no duration")

        resolver = DurationResolver("/clip.ts", on_resolved=resolved.append, on_failed=failed.append, probe=broken)
        resolver.start()
        resolver.join(2.0)
        assert resolved == []
        assert len(failed) == 1 and "no duration" in str(failed[0])

    def test_cannot_start_twice(self):
        resolver = DurationResolver("/clip.ts", on_resolved=lambda ms: None, on_failed=lambda e: None,
                                    probe=lambda path: 1)
        resolver.start()
        resolver.join(1.0)
        with pytest.raises(RuntimeError):
            resolver.start()

    @pytest.mark.timeout(5)
    def test_unstartable_ffprobe_reported_as_failure(self, monkeypatch, tmp_path):
        script = tmp_path / "ffprobe"
        script.write_text("#!/bin/sh\necho 10.0\n")
        script.chmod(0o644)
        monkeypatch.setenv("RELAY_FFPROBE_BIN", str(script))
        resolved, failed = [], []
        resolver = DurationResolver("/clip.ts", on_resolved=resolved.append, on_failed=failed.append)
        resolver.start()
        resolver.join(2.0)
        assert resolved == []
        assert len(failed) == 1 and isinstance(failed[0], ProbeError)

    @pytest.mark.timeout(5)
    def test_unexpected_error_reported_as_failure(self):
        resolved, failed = [], []

        def broken(path):
            raise OverflowError("cannot convert float infinity to integer")

        resolver = DurationResolver("/clip.ts", on_resolved=resolved.append, on_failed=failed.append, probe=broken)
        resolver.start()
        resolver.join(2.0)
        assert resolved == []
        assert len(failed) == 1 and isinstance(failed[0], OverflowError)
