"""
Shared utility functions for subcapture.

This module provides URL normalization, storage key derivation and hashing
helpers used by the cache and history layers.
"""

import base64
import hashlib
import time
from urllib.parse import urlsplit, urlunsplit

# Prefix of durable subtitle entries; keeps them apart from history and settings
SUBTITLE_KEY_PREFIX = "subtitle_"


def now_ms() -> int:
    """Return the current Unix time in milliseconds."""
    return int(time.time() * 1000)


def normalize_url(url: str) -> str:
    """
    Normalize a page URL for use as a cache key.

    The query string and fragment are dropped so that revisits of the same
    page resolve to the same key.

    Args:
        url: Page URL

    Returns:
        URL without query string and fragment, or the input unchanged if it
        cannot be parsed

    Examples:
        >>> normalize_url("https://example.com/watch?v=1#t=10")
        'https://example.com/watch'
        >>> normalize_url("not a url")
        'not a url'
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", "", ""))


def get_subtitle_storage_key(page_url: str) -> str:
    """
    Build the durable storage key for a page.

    Args:
        page_url: Page URL (normalized internally)

    Returns:
        Key of the form ``subtitle_<base64(normalized url)>``
    """
    normalized = normalize_url(page_url)
    encoded = base64.b64encode(normalized.encode("utf-8")).decode("ascii")
    return f"{SUBTITLE_KEY_PREFIX}{encoded}"


def hash_source_url(url: str) -> str:
    """
    Short hash of a subtitle source URL, used for change detection.

    Args:
        url: Subtitle source URL

    Returns:
        First 12 hex characters of the SHA-256 digest
    """
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:12]


def get_favicon_url(page_url: str) -> str:
    """Return ``<scheme>://<host>/favicon.ico`` for a page, or an empty string."""
    try:
        parts = urlsplit(page_url)
    except ValueError:
        return ""
    if not parts.scheme or not parts.hostname:
        return ""
    return f"{parts.scheme}://{parts.hostname}/favicon.ico"


def sanitize_for_log(input_str: str) -> str:
    """
    Sanitize user input for logging to prevent log injection attacks.

    Replaces newlines, carriage returns, and tabs with their escaped
    representations.

    Args:
        input_str: User input string to sanitize

    Returns:
        Sanitized string safe for logging
    """
    return input_str.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
