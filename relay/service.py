# relay/service.py

import logging
from typing import Callable, Dict, List, Optional

from relay.config import RelayConfig, describe
from relay.controller.dispatcher import Dispatcher
from relay.controller.failover import FailoverController
from relay.fallback.asset import DurationResolver, FallbackAsset, load_fallback_asset
from relay.fallback.probe import probe_duration_ms
from relay.stage.commands import (
    CAPTURE_STAGE,
    INGEST_STAGE,
    OUTPUT_STAGE,
    capture_cmd,
    ingest_cmd,
    output_cmd,
)
from relay.stage.diagnostics import DiagnosticSink, create_diagnostic_sink
from relay.stage.process import StageProcess
from relay.supervisor import Supervisor

logger = logging.getLogger(__name__)

StageFactory = Callable[..., StageProcess]


class RelayService:
    """
    Builds and runs one relay session.

    Pipeline: capture -> ingest -> FailoverController -> output.

    - capture stdout is written straight into ingest stdin from the capture
      drain thread (a full pipe pauses the read)
    - ingest stdout is posted into the Dispatcher (a full queue pauses the read)
    - the controller writes live or fallback bytes into output stdin from the
      dispatcher thread

    Every stage exit, and a failed duration probe, ends up on the Supervisor.
    """

    def __init__(
        self,
        config: RelayConfig,
        asset: Optional[FallbackAsset] = None,
        stage_factory: StageFactory = StageProcess,
        probe: Optional[Callable[[str], int]] = None,
    ):
        """
        Args:
            config: Validated configuration
            asset: Preloaded fallback asset (default: loaded from config.fallback_file)
            stage_factory: StageProcess constructor (tests substitute fakes)
            probe: Duration probe (default: ffprobe with config.probe_timeout_sec)
        """
        self.config = config
        # Loaded before anything is spawned: an unreadable clip is a startup error
        self.asset = asset or load_fallback_asset(config.fallback_file, config.fallback_duration_ms)
        self._stage_factory = stage_factory
        self._probe = probe or (lambda path: probe_duration_ms(path, timeout=config.probe_timeout_sec))

        self.supervisor = Supervisor()
        self.dispatcher = Dispatcher(
            queue_size=config.dispatch_queue_size,
            on_error=lambda e: self.supervisor.fail(f"Failover controller error: {e}"),
        )

        self._diagnostics: Dict[str, DiagnosticSink] = {}
        if config.diagnostics_enabled:
            for name in (OUTPUT_STAGE, INGEST_STAGE, CAPTURE_STAGE):
                self._diagnostics[name] = create_diagnostic_sink(
                    config.log_dir, name, persistent=config.persistent_logging
                )

        # Spawn order follows the data direction backwards so each stage's
        # consumer already exists when it starts producing
        self.output = self._make_stage(OUTPUT_STAGE, output_cmd(config.destination), on_stdout=None)
        self.controller = FailoverController(
            asset=self.asset,
            sink=self.output.write,
            dispatcher=self.dispatcher,
            timeout_ms=config.timeout_ms,
            force_start=config.force_start,
        )
        self.ingest = self._make_stage(INGEST_STAGE, ingest_cmd(), on_stdout=self._on_ingest_data)
        self.capture = self._make_stage(
            CAPTURE_STAGE, capture_cmd(config.source), on_stdout=self.ingest.write, pipe_stdin=False
        )

        self.resolver: Optional[DurationResolver] = None
        if not self.asset.duration_known:
            self.resolver = DurationResolver(
                self.asset.path,
                on_resolved=self._on_duration_resolved,
                on_failed=self._on_probe_failed,
                probe=self._probe,
            )

        self.running = False

    @property
    def stages(self) -> List[StageProcess]:
        return [self.capture, self.ingest, self.output]

    def _make_stage(self, name, cmd, on_stdout, pipe_stdin=True) -> StageProcess:
        return self._stage_factory(
            name=name,
            cmd=cmd,
            on_exit=self.supervisor.stage_exited,
            on_stdout=on_stdout,
            pipe_stdin=pipe_stdin,
            diagnostics=self._diagnostics.get(name),
            read_chunk_size=self.config.read_chunk_size,
        )

    # ------------------------------------------------------------------ #
    # Cross-thread hand-offs into the dispatcher
    # ------------------------------------------------------------------ #

    def _on_ingest_data(self, chunk: bytes) -> None:
        self.dispatcher.post(self.controller.on_data, chunk)

    def _on_duration_resolved(self, duration_ms: int) -> None:
        self.dispatcher.post(self.controller.on_duration_resolved, duration_ms)

    def _on_probe_failed(self, error: Exception) -> None:
        self.supervisor.fail(f"An error occurred while probing duration for fallback file: {error}")

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start dispatcher, stages and duration probe."""
        logger.info("=== Relay starting ===")
        for line in describe(self.config):
            logger.info(line)

        self.supervisor.add_teardown(self.dispatcher.stop)
        self.dispatcher.start()
        self.dispatcher.post(self.controller.start)

        for stage in (self.output, self.ingest, self.capture):
            self.supervisor.add_teardown(stage.stop)
            try:
                stage.start()
            except OSError as e:
                logger.error(f"Failed to start {stage.name}: {e}")
                self.supervisor.fail(f"Failed to start {stage.name}: {e}", exit_code=1)
                return

        if self.resolver is not None:
            self.resolver.start()

        self.running = True
        logger.info("Relay successfully initialized")

    def run(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the session ends; returns the exit status."""
        code = self.supervisor.run(timeout=timeout)
        if code is not None:
            self.running = False
            logger.info("=== Relay stopped ===")
        return code

    def stop(self) -> None:
        """Tear everything down without waiting for a stage to exit."""
        self.supervisor.teardown()
        self.running = False
