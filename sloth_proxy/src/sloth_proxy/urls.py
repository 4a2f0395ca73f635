"""
URL validation, cache-key normalization and relative link resolution.
"""

from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from .errors import InputError

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}


def validate_url(url: Optional[str]) -> str:
    """
    Check that a target URL is an absolute http(s) URL.

    Raises:
        InputError: before any network call when the URL is missing,
            malformed or uses another scheme
    """
    if not url or not url.strip():
        raise InputError("Missing url", code="missing_url")

    url = url.strip()
    try:
        parts = urlsplit(url)
        # Accessing .port validates the port range
        parts.port
    except ValueError as e:
        raise InputError(f"Malformed url: {e}", code="invalid_url")

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise InputError(
            f"Unsupported url scheme: {parts.scheme or '(none)'}",
            code="invalid_url",
        )
    if not parts.hostname:
        raise InputError("Url has no host", code="invalid_url")

    return url


def normalize_url(url: str) -> str:
    """
    Normalize a validated URL into a cache key.

    Lowercases scheme and host, drops default ports and the fragment, and
    gives an empty path a trailing slash. Query strings are kept as-is.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()

    netloc = host
    if parts.port and parts.port != DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def resolve_url(base_url: str, href: Optional[str]) -> str:
    """
    Resolve href against base_url.

    Returns an empty string for empty references and for anything that does
    not resolve to an http(s) URL (javascript:, mailto:, data:, ...).
    """
    if not href:
        return ""
    href = href.strip()
    if not href:
        return ""

    resolved = urljoin(base_url, href)
    if urlsplit(resolved).scheme.lower() not in ALLOWED_SCHEMES:
        return ""
    return resolved
