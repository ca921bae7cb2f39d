"""
Typed errors for the video cache.
"""
from typing import Optional


class CacheError(RuntimeError):
    """Base class for cache engine failures."""


class TransportError(CacheError):
    """Non-2xx response or network failure while fetching a resource."""

    def __init__(self, url: str, status_code: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code} for {url}"
        else:
            message = f"Failed to download resource: {url}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class UnsupportedReferenceError(CacheError):
    """A playlist reference uses a URI scheme that cannot be fetched for offline use."""

    def __init__(self, uri: str):
        self.uri = uri
        super().__init__(f"Unsupported HLS URI scheme for offline cache: {uri}")


class ManifestBuildError(CacheError):
    """The bundle build finished without producing a usable root manifest."""


CACHE_ERRORS = (
    TransportError,
    UnsupportedReferenceError,
    ManifestBuildError,
)

__all__ = [
    "CacheError",
    "TransportError",
    "UnsupportedReferenceError",
    "ManifestBuildError",
    "CACHE_ERRORS",
]
