from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from .errors import JobValidationError


_ALLOWED_SCHEMES = ("http", "https")


def canonicalize(url: str) -> str:
    """Lower-case scheme and host, drop the fragment, keep path and query.

    An empty path becomes "/" so https://example.com and https://example.com/
    name the same site.
    """
    parsed = urlparse(url)
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    return urlunparse((parsed.scheme.lower(), netloc, path, parsed.params, parsed.query, ""))


def validate_target_url(url: str) -> str:
    """Return the canonical form of an absolute http(s) URL or raise JobValidationError."""
    if url is None or not str(url).strip():
        raise JobValidationError("url is required")
    candidate = str(url).strip()
    if any(ch.isspace() for ch in candidate):
        raise JobValidationError(f"url must not contain whitespace: {candidate!r}")
    try:
        parsed = urlparse(candidate)
        hostname = parsed.hostname
        # Accessing .port validates the port component
        parsed.port
    except ValueError as e:
        raise JobValidationError(f"malformed url: {candidate!r}") from e
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        raise JobValidationError(f"url must be absolute http(s): {candidate!r}")
    if not hostname:
        raise JobValidationError(f"url has no host: {candidate!r}")
    if "." not in hostname and ":" not in hostname and hostname != "localhost":
        raise JobValidationError(f"url host is not a domain name: {candidate!r}")
    return canonicalize(candidate)
