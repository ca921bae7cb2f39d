"""
Local disk cache for remote videos and HLS bundles.
"""
from vidcache.core.config import HlsCacheOptions
from vidcache.core.errors import CacheError, TransportError, UnsupportedReferenceError, ManifestBuildError
from vidcache.services.manager import VideoCacheManager
from vidcache.services.store import CacheInfo

__all__ = [
    "HlsCacheOptions",
    "CacheError",
    "TransportError",
    "UnsupportedReferenceError",
    "ManifestBuildError",
    "VideoCacheManager",
    "CacheInfo",
]
