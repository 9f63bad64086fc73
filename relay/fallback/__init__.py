"""
Relay fallback subsystem.

Loads the fallback clip that is spliced into the output when the live feed
stalls, and resolves its playback duration.
"""

from relay.fallback.asset import (
    DurationResolver,
    FallbackAsset,
    FallbackAssetError,
    load_fallback_asset,
)
from relay.fallback.probe import ProbeError, probe_duration_ms

__all__ = [
    "DurationResolver",
    "FallbackAsset",
    "FallbackAssetError",
    "ProbeError",
    "load_fallback_asset",
    "probe_duration_ms",
]
