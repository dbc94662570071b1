"""Prometheus metrics for the media process manager.

Provides metrics for:
- Live sessions (active count, viewers, starts, stops, failures)
- FFmpeg processes (currently alive across all kinds)
- Recordings (active count, outcomes)
- Utility operations (probe and snapshot outcomes)

Exposure is left to the embedding process. The CLI offers --metrics-port,
which serves the default registry with prometheus_client's HTTP server.
"""
from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

# ============================================================================
# Live Session Metrics
# ============================================================================

streams_active = Gauge("cctv_streams_active", "Live sessions in starting or running state")

stream_viewers = Gauge("cctv_stream_viewers", "Viewers attached to a live session", ["stream_id"])

streams_start_total = Counter(
    "cctv_streams_start_total",
    "Live session start attempts",
    ["status"]  # spawned, shared, ready, timeout, failed, spawn_error
)

streams_stop_total = Counter("cctv_streams_stop_total", "Live sessions stopped by release")

stream_errors_total = Counter(
    "cctv_stream_errors_total",
    "Live sessions that ended in failed state",
    ["stream_id"]
)

# ============================================================================
# FFmpeg Process Metrics
# ============================================================================

ffmpeg_processes_active = Gauge(
    "cctv_ffmpeg_processes_active",
    "FFmpeg processes currently alive",
    ["kind"]  # live-transcode, record, snapshot, probe
)

# ============================================================================
# Recording Metrics
# ============================================================================

recordings_active = Gauge("cctv_recordings_active", "Recordings in flight")

recordings_total = Counter(
    "cctv_recordings_total",
    "Finished recordings by outcome",
    ["result"]  # finished, errored
)

# ============================================================================
# Utility Metrics
# ============================================================================

probes_total = Counter("cctv_probes_total", "Connectivity probes by outcome", ["result"])

snapshots_total = Counter("cctv_snapshots_total", "Snapshots by outcome", ["result"])


logger.debug("Prometheus metrics initialized")
