"""
URL validation for the cache HTTP surface.
"""
import logging
from urllib.parse import urlparse

from fastapi import HTTPException

logger = logging.getLogger(__name__)


def validate_cache_url(url: str) -> None:
    """Validate that a URL can be cached. Raises HTTPException on failure."""
    if not url:
        raise HTTPException(status_code=400, detail="Missing URL")

    parsed = urlparse(url)

    # Must be http or https
    if parsed.scheme not in ("http", "https"):
        logger.warning(f"Rejected non-http cache URL: {url[:60]}")
        raise HTTPException(status_code=400, detail="Only http/https URLs are allowed")

    if not parsed.hostname:
        raise HTTPException(status_code=400, detail="Invalid URL: no hostname")


def sanitize_request_headers(headers: dict) -> dict:
    """
    Drop hop-by-hop headers a client should not forward upstream.

    Header names are compared case-insensitively; values must be strings.
    """
    if not headers:
        return {}
    blocked = {"host", "connection", "content-length", "transfer-encoding"}
    return {
        str(name): str(value)
        for name, value in headers.items()
        if str(name).lower() not in blocked
    }
