"""
Services module exports.
"""
from vidcache.services.keys import (
    cache_hash,
    identity_for,
    is_playlist_url,
)
from vidcache.services.store import CacheInfo, CacheStore
from vidcache.services.fetcher import download_file, send_with_retry
from vidcache.services.hls import HlsBundleBuilder
from vidcache.services.live import LiveSnapshotController
from vidcache.services.manager import VideoCacheManager

__all__ = [
    "cache_hash",
    "identity_for",
    "is_playlist_url",
    "CacheInfo",
    "CacheStore",
    "download_file",
    "send_with_retry",
    "HlsBundleBuilder",
    "LiveSnapshotController",
    "VideoCacheManager",
]
