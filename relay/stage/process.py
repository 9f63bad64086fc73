"""
Stage process wrapper.

A StageProcess owns one external byte-stream process (rtmpdump or ffmpeg):
its stdin, a stdout drain thread feeding the next hop, a stderr drain thread
feeding diagnostics, and an exit watcher that reports the exit status exactly
once. It never decides what an exit means; it only reports it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from typing import BinaryIO, Callable, List, Optional

from relay.stage.diagnostics import DiagnosticSink

logger = logging.getLogger(__name__)

DEFAULT_READ_CHUNK_SIZE = 65536
STDERR_CHUNK_SIZE = 4096


def normalize_exit_code(returncode: int) -> int:
    """Map Popen's negative 'killed by signal N' to the shell's 128 + N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class StageProcess:
    """
    One external pipeline stage.

    Args:
        name: Stage name used in logs and exit events
        cmd: Command line
        on_exit: Called once as on_exit(name, exit_code) from the watcher thread
        on_stdout: Receives each stdout chunk from the drain thread; stdout is
            discarded when None
        pipe_stdin: Give the process a writable stdin
        diagnostics: Copy stderr here; stderr is logged at DEBUG when None
        read_chunk_size: Max bytes per stdout read
    """

    def __init__(
        self,
        name: str,
        cmd: List[str],
        on_exit: Callable[[str, int], None],
        on_stdout: Optional[Callable[[bytes], None]] = None,
        pipe_stdin: bool = True,
        diagnostics: Optional[DiagnosticSink] = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.name = name
        self.cmd = list(cmd)
        self._on_exit = on_exit
        self._on_stdout = on_stdout
        self._pipe_stdin = pipe_stdin
        self._diagnostics = diagnostics
        self._read_chunk_size = read_chunk_size
        self._popen = popen

        self._process: Optional[subprocess.Popen] = None
        self._stdin: Optional[BinaryIO] = None
        self._exit_code: Optional[int] = None
        self._exit_lock = threading.Lock()
        self._stopping = threading.Event()

        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._wait_thread: Optional[threading.Thread] = None

        self.bytes_written = 0
        self.bytes_read = 0

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def running(self) -> bool:
        return self._process is not None and self._exit_code is None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """
        Spawn the process and its drain threads.

        Raises:
            RuntimeError: Already started
            OSError: Executable missing or not runnable
        """
        if self._process is not None:
            raise RuntimeError(f"Stage {self.name} already started")

        logger.debug(
            f"Starting {self.name}: {' '.join(self.cmd)}",
            extra={"resolved_path": shutil.which(self.cmd[0]) if self.cmd else None},
        )
        self._process = self._popen(
            self.cmd,
            stdin=subprocess.PIPE if self._pipe_stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE if self._on_stdout is not None else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        self._stdin = self._process.stdin if self._pipe_stdin else None
        logger.info(f"Started {self.name} PID={self._process.pid}")

        if self._on_stdout is not None and self._process.stdout is not None:
            self._stdout_thread = threading.Thread(
                target=self._stdout_drain, daemon=True, name=f"{self.name}-stdout"
            )
            self._stdout_thread.start()

        if self._process.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._stderr_drain, daemon=True, name=f"{self.name}-stderr"
            )
            self._stderr_thread.start()

        self._wait_thread = threading.Thread(
            target=self._wait_for_exit, daemon=True, name=f"{self.name}-wait"
        )
        self._wait_thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Terminate the process (kill after timeout) and close its pipes."""
        self._stopping.set()
        proc = self._process
        if proc is None:
            return

        self._close_stdin()
        if proc.poll() is None:
            try:
                proc.terminate()
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"{self.name} did not terminate, killing")
                proc.kill()
                proc.wait()
            except ProcessLookupError:
                pass

        for thread in (self._stdout_thread, self._stderr_thread, self._wait_thread):
            if thread is not None and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=0.5)
                if thread.is_alive():
                    logger.debug(f"{thread.name} did not terminate within timeout")

        if self._diagnostics is not None:
            self._diagnostics.close()

    # ------------------------------------------------------------------ #
    # Data
    # ------------------------------------------------------------------ #

    def write(self, data: bytes) -> bool:
        """
        Blocking write to the stage's stdin.

        A full pipe blocks the caller, which is the backpressure the relay
        relies on. Returns False if the stage has exited or stdin is gone;
        the exit itself is reported through on_exit.
        """
        stdin = self._stdin
        if stdin is None or self._exit_code is not None:
            logger.debug(f"Dropping {len(data)} bytes for {self.name}: stdin closed")
            return False
        try:
            view = memoryview(data)
            while view:
                written = stdin.write(view)
                if written is None:
                    written = 0
                view = view[written:]
            self.bytes_written += len(data)
            return True
        except (BrokenPipeError, ValueError, OSError) as e:
            logger.debug(f"Write to {self.name} stdin failed: {e}")
            return False

    def _close_stdin(self) -> None:
        stdin, self._stdin = self._stdin, None
        if stdin is None:
            return
        try:
            stdin.close()
        except (BrokenPipeError, OSError) as e:
            logger.debug(f"Error closing {self.name} stdin: {e}")

    # ------------------------------------------------------------------ #
    # Threads
    # ------------------------------------------------------------------ #

    def _stdout_drain(self) -> None:
        proc = self._process
        stdout = proc.stdout
        try:
            while True:
                chunk = stdout.read(self._read_chunk_size)
                if not chunk:
                    break
                self.bytes_read += len(chunk)
                self._on_stdout(chunk)
        except (OSError, ValueError) as e:
            if not self._stopping.is_set():
                logger.warning(f"{self.name} stdout read failed: {e}")
        logger.debug(f"{self.name} stdout drain stopped")

    def _stderr_drain(self) -> None:
        proc = self._process
        stderr = proc.stderr
        try:
            while True:
                chunk = stderr.read(STDERR_CHUNK_SIZE)
                if not chunk:
                    break
                if self._diagnostics is not None:
                    self._diagnostics.write(chunk)
                elif logger.isEnabledFor(logging.DEBUG):
                    for line in chunk.decode(errors="ignore").splitlines():
                        if line.strip():
                            logger.debug(f"[{self.name}] {line.rstrip()}")
        except (OSError, ValueError) as e:
            if not self._stopping.is_set():
                logger.debug(f"{self.name} stderr read failed: {e}")

    def _wait_for_exit(self) -> None:
        returncode = self._process.wait()
        with self._exit_lock:
            if self._exit_code is not None:
                return
            self._exit_code = normalize_exit_code(returncode)
        self._close_stdin()
        self._on_exit(self.name, self._exit_code)
