"""
Relay: live RTMP relay with seamless fallback failover.

A live feed is captured, repackaged to MPEG-TS and forwarded to an output
encoder. When the feed stalls, a fallback clip is spliced in and looped on a
drift-free timer until live data returns.
"""

__version__ = "1.0.0"
