"""Input validation utilities.

Provides validation functions for:
- Stream source/destination URL format and structure
- Hostname/IP validation
- Port range validation
- FFmpeg argument safety (shell metacharacters)

Note on Logging:
    These are pure validation functions that return (bool, error_message).
    Only logs when URL parsing fails (unexpected). Most validation failures
    return descriptive error messages to the caller who decides how to log.

Note on Pydantic:
    StreamConfig field validators call into this module so that the same
    rules apply to API bodies and to configs loaded from config.yml.
"""
from __future__ import annotations

import re
import logging
from typing import Final, Iterable
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

INPUT_URL_SCHEMES: Final[frozenset[str]] = frozenset(
    {"rtsp", "rtsps", "rtmp", "rtmps", "http", "https", "file"}
)
"""Schemes accepted for camera sources."""

OUTPUT_URL_SCHEMES: Final[frozenset[str]] = frozenset(
    {"rtmp", "rtmps", "rtsp", "srt", "udp", "file"}
)
"""Schemes accepted for stream destinations."""

MIN_PORT: Final[int] = 1
MAX_PORT: Final[int] = 65535
"""Valid TCP/UDP port range."""

FORBIDDEN_SHELL_CHARS: Final[frozenset[str]] = frozenset(
    {";", "&", "|", ">", "<", "`", "$", "\n", "\r"}
)
"""Shell metacharacters forbidden in user-supplied FFmpeg arguments."""

# Type alias for validation results
ValidationResult = tuple[bool, str | None]
"""Validation result: (is_valid, error_message)"""

# ============================================================================
# Stream URL Validation
# ============================================================================

def validate_stream_url(url: str, schemes: Iterable[str]) -> ValidationResult:
    """Validate a stream URL's scheme, host and port.

    Checks:
    - Scheme is one of ``schemes`` (case-insensitive)
    - Host/IP is non-empty and valid (except file://)
    - Port is in valid range if specified

    Args:
        url: URL to validate
        schemes: Allowed lowercase schemes

    Returns:
        (True, None) if valid
        (False, error_message) if invalid

    Examples:
        >>> validate_stream_url("rtsp://192.168.1.100/stream", {"rtsp"})
        (True, None)

        >>> validate_stream_url("ftp://example.com", {"rtsp"})
        (False, "URL scheme 'ftp' is not allowed")
    """
    if not url or not isinstance(url, str):
        return False, "URL is required and must be a string"

    if any(char in url for char in FORBIDDEN_SHELL_CHARS):
        return False, "URL contains forbidden characters"

    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as e:
        logger.warning(f"URL parse error: {e}")
        return False, f"Invalid URL format: {str(e)}"

    scheme = parsed.scheme.lower()
    if scheme not in schemes:
        return False, f"URL scheme '{parsed.scheme}' is not allowed"

    if scheme == "file":
        if not parsed.path:
            return False, "File URL must include a path"
        return True, None

    if not parsed.hostname:
        return False, "Host cannot be empty"

    if not _is_valid_hostname(parsed.hostname):
        return False, f"Invalid hostname: {parsed.hostname}"

    if port is not None and not (MIN_PORT <= port <= MAX_PORT):
        return False, f"Port must be {MIN_PORT}-{MAX_PORT}"

    return True, None


def validate_ffmpeg_args(args: Iterable[str]) -> ValidationResult:
    """Reject extra FFmpeg arguments that carry shell metacharacters.

    FFmpeg is spawned without a shell, but arguments are also logged and
    echoed back through the API, so they are kept to plain tokens.
    """
    for arg in args:
        if not isinstance(arg, str):
            return False, f"Invalid argument type: {type(arg).__name__}"
        if any(char in arg for char in FORBIDDEN_SHELL_CHARS):
            return False, f"Forbidden character in argument: {arg!r}"
    return True, None


# ============================================================================
# Hostname Validation
# ============================================================================

def _is_valid_hostname(hostname: str) -> bool:
    """Check if hostname is valid IP or domain."""
    return _is_valid_ip(hostname) or _is_valid_domain(hostname)


def _is_valid_ip(ip: str) -> bool:
    """Check if string is valid IPv4 or IPv6 address."""
    # IPv4: 0.0.0.0 to 255.255.255.255
    ipv4_pattern = r'^(\d{1,3}\.){3}\d{1,3}$'
    if re.match(ipv4_pattern, ip):
        return all(0 <= int(octet) <= 255 for octet in ip.split('.'))

    # IPv6: simplified pattern
    ipv6_pattern = r'^([0-9a-fA-F]{0,4}:){2,7}[0-9a-fA-F]{0,4}$'
    return bool(re.match(ipv6_pattern, ip))


def _is_valid_domain(domain: str) -> bool:
    """Check if string is valid domain name (RFC 1035)."""
    if not domain or len(domain) > 253:
        return False

    # RFC 1035: labels separated by dots, 63 chars max per label
    domain_pattern = r'^([a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?$'
    return bool(re.match(domain_pattern, domain))
