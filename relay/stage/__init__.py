"""
Relay stage subsystem.

Wraps the external processes of the pipeline (capture, ingest, output) and
their diagnostic output.
"""

from relay.stage.commands import CAPTURE_STAGE, INGEST_STAGE, OUTPUT_STAGE
from relay.stage.diagnostics import DiagnosticSink, create_diagnostic_sink, diagnostic_log_path
from relay.stage.process import StageProcess, normalize_exit_code

__all__ = [
    "CAPTURE_STAGE",
    "INGEST_STAGE",
    "OUTPUT_STAGE",
    "DiagnosticSink",
    "StageProcess",
    "create_diagnostic_sink",
    "diagnostic_log_path",
    "normalize_exit_code",
]
