"""Input validation utilities.

Provides validation for:
- Stream / recording identifiers (used as directory and file names)
- Source URI format and structure

Note on Logging:
    Pure validation functions returning (bool, error_message). Callers turn
    failures into InvalidRequestError.
"""
from __future__ import annotations

import logging
import re
from typing import Final
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

VALID_SOURCE_SCHEMES: Final[set[str]] = {"rtsp", "rtsps", "rtmp", "http", "https", "srt"}
"""Source schemes FFmpeg is allowed to open."""

FORBIDDEN_CHARS: Final[set[str]] = {";", "&", "|", ">", "<", "`", "$", "\n", "\r", "\x00"}
"""Characters rejected in sources even though no shell is involved."""

MEDIA_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$')
"""Ids become path components: letters, digits, '_', '.', '-' only."""

ValidationResult = tuple[bool, str | None]
"""Validation result: (is_valid, error_message)"""

# ============================================================================
# Identifier Validation
# ============================================================================

def validate_media_id(media_id: str) -> ValidationResult:
    """Validate a stream or recording id.

    Ids name output directories, so anything that could escape the output
    root ("..", "/", absolute paths) is rejected.

    Examples:
        >>> validate_media_id("cam1")
        (True, None)

        >>> validate_media_id("../etc")
        (False, "Id may only contain letters, digits, '_', '.', '-'")
    """
    if not media_id or not isinstance(media_id, str):
        return False, "Id is required and must be a string"

    if not MEDIA_ID_PATTERN.match(media_id):
        return False, "Id may only contain letters, digits, '_', '.', '-'"

    if ".." in media_id:
        return False, "Id may not contain '..'"

    return True, None


# ============================================================================
# Source Validation
# ============================================================================

def validate_source_uri(uri: str) -> ValidationResult:
    """Validate a source URI format and structure.

    Checks:
    - Scheme is one of VALID_SOURCE_SCHEMES
    - Host is present
    - No forbidden characters
    - Port is in range if specified

    Examples:
        >>> validate_source_uri("rtsp://192.168.1.100/stream")
        (True, None)

        >>> validate_source_uri("ftp://example.com")
        (False, "Unsupported source scheme 'ftp'")
    """
    if not uri or not isinstance(uri, str):
        return False, "Source URI is required and must be a string"

    if any(char in uri for char in FORBIDDEN_CHARS):
        return False, "Source URI contains forbidden characters"

    try:
        parsed = urlparse(uri)
        port = parsed.port
    except ValueError as e:
        logger.warning(f"Source URI parse error: {e}")
        return False, f"Invalid source URI: {e}"

    scheme = parsed.scheme.lower()
    if scheme not in VALID_SOURCE_SCHEMES:
        return False, f"Unsupported source scheme '{scheme}'"

    if not parsed.hostname:
        return False, "Host cannot be empty"

    if port is not None and not (1 <= port <= 65535):
        return False, "Port must be 1-65535"

    return True, None
