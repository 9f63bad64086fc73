"""
Command lines for the three external pipeline stages.

capture  : rtmpdump pulls the live feed and writes raw FLV to stdout
ingest   : ffmpeg repackages FLV into MPEG-TS, the splice-friendly format
output   : ffmpeg reads MPEG-TS (live and fallback interleaved) at native
           rate and publishes FLV to the destination
"""

from __future__ import annotations

import os
from typing import List

CAPTURE_STAGE = "rtmpdump"
INGEST_STAGE = "ffmpegin"
OUTPUT_STAGE = "ffmpegout"


def _rtmpdump_bin() -> str:
    return os.getenv("RELAY_RTMPDUMP_BIN", "rtmpdump")


def _ffmpeg_bin() -> str:
    return os.getenv("RELAY_FFMPEG_BIN", "ffmpeg")


def capture_cmd(source: str) -> List[str]:
    return [_rtmpdump_bin(), "-m", "0", "-v", "-r", source]


def ingest_cmd() -> List[str]:
    return [
        _ffmpeg_bin(),
        "-f", "live_flv",
        "-i", "-",
        "-c", "copy",
        "-f", "mpegts",
        "-",
    ]


def output_cmd(destination: str) -> List[str]:
    return [
        _ffmpeg_bin(),
        "-fflags", "+genpts",
        "-re",
        "-f", "mpegts",
        "-i", "-",
        "-c", "copy",
        "-bsf:a", "aac_adtstoasc",
        "-f", "flv",
        destination,
    ]
