"""
Core module exports.
"""
from vidcache.core.config import (
    DEFAULT_BASE_DIR,
    DEFAULT_CACHE_DIR_NAME,
    DEFAULT_MAX_CACHE_SIZE_BYTES,
    HlsCacheOptions,
)
from vidcache.core.errors import (
    CacheError,
    TransportError,
    UnsupportedReferenceError,
    ManifestBuildError,
)
from vidcache.core.security import validate_cache_url, sanitize_request_headers

__all__ = [
    "DEFAULT_BASE_DIR",
    "DEFAULT_CACHE_DIR_NAME",
    "DEFAULT_MAX_CACHE_SIZE_BYTES",
    "HlsCacheOptions",
    "CacheError",
    "TransportError",
    "UnsupportedReferenceError",
    "ManifestBuildError",
    "validate_cache_url",
    "sanitize_request_headers",
]
