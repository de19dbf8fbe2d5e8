"""
URL utilities shared by the capability layer and the fetch backends.
"""

from __future__ import annotations

from urllib.parse import urlsplit

ALLOWED_SCHEMES = frozenset({"http", "https"})


def resolve_prefixed_url(prefix: str, url: str) -> str:
    """
    Join the configured prefix and a caller URL with exactly one slash.

    Args:
        prefix: Server-side prefix; empty means passthrough.
        url: Absolute URL supplied by the caller.

    Returns:
        The URL handed to the fetch backend.

    Example:
        >>> resolve_prefixed_url("https://proxy.example/fetch", "https://example.com")
        'https://proxy.example/fetch/https://example.com'
        >>> resolve_prefixed_url("", "https://example.com")
        'https://example.com'
    """
    if not prefix:
        return url
    separator = "" if prefix.endswith("/") else "/"
    return f"{prefix}{separator}{url}"


def validate_absolute_http_url(url: str) -> str:
    """
    Check that a URL is an absolute http(s) URI.

    The URL is returned unchanged; no normalization is applied so the fetch
    target stays byte-identical to the caller's input.

    Args:
        url: Candidate URL.

    Returns:
        The same URL.

    Raises:
        ValueError: If the URL is relative, has another scheme, lacks a host,
            or contains whitespace.
    """
    if not url or url != url.strip() or any(ch.isspace() for ch in url):
        raise ValueError("URL must be a non-empty string without whitespace")

    try:
        parts = urlsplit(url)
        # Accessing .port validates the port component
        parts.port
    except ValueError as e:
        raise ValueError(f"Malformed URL: {e}") from e

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValueError("URL must start with http:// or https://")
    if not parts.hostname:
        raise ValueError("URL must include a host")

    return url
