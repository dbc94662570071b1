"""FFmpeg default parameter configuration.

Single source of truth for the flag groups used by the command builder.
Groups are kept separate so the builder can place each one at its fixed
position in the argument vector.
"""
from typing import Final

# ============================================================================
# Global / Input Parameters
# ============================================================================

GLOBAL_FFMPEG_PARAMS: Final[list[str]] = [
    '-hide_banner',
    '-nostats',
    '-nostdin',
]
"""Flags applied to every invocation. -nostats keeps stderr line-oriented."""

RTSP_INPUT_SCHEMES: Final[tuple[str, ...]] = ('rtsp://', 'rtsps://')
"""Sources that accept -rtsp_transport."""

# ============================================================================
# Live Transcode Parameters
# ============================================================================

LIVE_VIDEO_CODEC: Final[str] = 'libx264'

LIVE_TUNING_PARAMS: Final[list[str]] = [
    '-tune', 'zerolatency',
    '-g', '30',
    '-sc_threshold', '0',
]
"""Low-latency tuning: fixed GOP, no scene-cut keyframes."""

HLS_FLAGS: Final[str] = 'delete_segments+split_by_time'

HLS_PLAYLIST_NAME: Final[str] = 'playlist.m3u8'

HLS_SEGMENT_PATTERN: Final[str] = 'segment_%03d.ts'

# ============================================================================
# Recording Parameters
# ============================================================================

RECORDING_VIDEO_CODEC: Final[str] = 'libx264'
RECORDING_AUDIO_CODEC: Final[str] = 'aac'
RECORDING_PRESET: Final[str] = 'faster'

QUALITY_CRF: Final[dict[str, str]] = {
    'low': '28',
    'medium': '23',
    'high': '18',
    'uhd': '15',
}
"""Recording quality level to x264 CRF."""

DEFAULT_CRF: Final[str] = '23'

RECORDING_MUXERS: Final[dict[str, str]] = {
    'mp4': 'mp4',
    'mkv': 'matroska',
    'avi': 'avi',
}
"""Recording container to FFmpeg muxer name (-f)."""

# ============================================================================
# Utility Parameters
# ============================================================================

SNAPSHOT_SIZE: Final[str] = '320x240'

PROBE_DURATION_SECONDS: Final[str] = '1'

# ============================================================================
# Helper Functions
# ============================================================================

def get_input_params(source_uri: str, rtsp_transport: str | None = 'tcp') -> list[str]:
    """Get input-side flags for a source.

    Args:
        source_uri: Source address
        rtsp_transport: RTSP lower transport (tcp/udp) or None to leave default

    Returns:
        Flags that must precede ``-i``
    """
    if rtsp_transport and source_uri.lower().startswith(RTSP_INPUT_SCHEMES):
        return ['-rtsp_transport', rtsp_transport]
    return []


def get_quality_crf(quality: str) -> str:
    """Map a recording quality level to a CRF value (medium if unknown)."""
    return QUALITY_CRF.get(quality, DEFAULT_CRF)
