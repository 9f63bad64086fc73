"""
Diagnostic capture for stage stderr.

Each stage's stderr can be copied verbatim into a log file under log_dir,
named either <stage>.log or, in persistent mode, <stage>.<timestamp>.log so
that every run keeps its own file. File I/O happens on a writer thread fed
through a bounded queue: a slow or stuck log disk costs dropped log chunks,
never a blocked stderr drain. Sink failures are reported once and then
ignored; they never reach the data path.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from datetime import datetime
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = "/tmp"

# Chunks buffered between the stderr drain and the writer thread
DEFAULT_QUEUE_SIZE = 256

# 2026-10-19_18-32-05
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

_CLOSE = object()


def diagnostic_log_path(
    log_dir: str,
    stage_name: str,
    persistent: bool = False,
    now: Optional[datetime] = None,
) -> str:
    """Build the log file path for one stage."""
    if persistent:
        stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        filename = f"{stage_name}.{stamp}.log"
    else:
        filename = f"{stage_name}.log"
    return os.path.join(log_dir, filename)


class DiagnosticSink:
    """
    Append-only byte sink for one stage's stderr.

    write() never blocks: chunks go onto a bounded queue and a writer thread
    appends them to the file, which is opened on the first chunk. When the
    queue is full the chunk is dropped. Any OSError disables the sink after a
    single warning.
    """

    def __init__(self, path: str, stage_name: str = "", queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.path = path
        self.stage_name = stage_name or os.path.basename(path)
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._writer: Optional[threading.Thread] = None
        self._file: Optional[BinaryIO] = None
        self._failed = False
        self._closed = False
        self._dropped = 0

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def dropped(self) -> int:
        """Chunks discarded because the writer fell behind."""
        return self._dropped

    def write(self, data: bytes) -> None:
        """Queue a chunk for the log file. Called from the stage's stderr drain thread."""
        if self._failed or self._closed or not data:
            return
        if self._writer is None:
            self._writer = threading.Thread(
                target=self._run, daemon=True, name=f"{self.stage_name}-diagnostics"
            )
            self._writer.start()
        try:
            self._queue.put_nowait(data)
        except queue.Full:
            self._dropped += 1
            if self._dropped == 1:
                logger.warning(f"Diagnostic log for {self.stage_name} is falling behind, dropping output")

    def close(self, timeout: float = 2.0) -> None:
        """Flush queued chunks and close the file, waiting up to timeout for the writer."""
        if self._closed:
            return
        self._closed = True
        if self._writer is None:
            return
        try:
            self._queue.put(_CLOSE, timeout=timeout)
        except queue.Full:
            logger.warning(f"Diagnostic log for {self.stage_name} still busy, closing without flushing")
            return
        self._writer.join(timeout=timeout)
        if self._writer.is_alive():
            logger.debug(f"{self._writer.name} did not terminate within timeout")

    # ------------------------------------------------------------------ #
    # Writer thread
    # ------------------------------------------------------------------ #

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                break
            if not self._failed:
                self._append(item)
        self._close_file()

    def _append(self, data: bytes) -> None:
        try:
            if self._file is None:
                self._file = open(self.path, "ab")
            self._file.write(data)
            self._file.flush()
        except OSError as e:
            self._failed = True
            logger.warning(f"Diagnostic log for {self.stage_name} disabled, cannot write {self.path}: {e}")
            self._close_file()

    def _close_file(self) -> None:
        if self._file is None:
            return
        try:
            self._file.close()
        except OSError as e:
            logger.debug(f"Error closing diagnostic log {self.path}: {e}")
        self._file = None


def create_diagnostic_sink(
    log_dir: str,
    stage_name: str,
    persistent: bool = False,
    now: Optional[datetime] = None,
) -> DiagnosticSink:
    path = diagnostic_log_path(log_dir, stage_name, persistent=persistent, now=now)
    logger.info(f"Logging {stage_name} output to {path}")
    return DiagnosticSink(path, stage_name=stage_name)
