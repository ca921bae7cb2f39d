"""
Cache key derivation for video URLs.

Maps a source URL to a deterministic on-disk identity. No state, no I/O.
"""
import hashlib
import posixpath
from typing import NamedTuple
from urllib.parse import urlparse

from vidcache.core.config import (
    BUNDLE_SUFFIX,
    VIDEO_EXTENSIONS,
    DEFAULT_VIDEO_EXTENSION,
    DEFAULT_ASSET_EXTENSION,
    MAX_ASSET_EXTENSION_LENGTH,
)


class CacheIdentity(NamedTuple):
    simple_name: str
    bundle_name: str


def cache_hash(url: str) -> str:
    """Stable MD5 hex digest of a URL. Part of the on-disk layout contract."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def _last_segment_extension(url: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    segment = path.rsplit("/", 1)[-1]
    return posixpath.splitext(segment)[1].lower()


def video_extension(url: str) -> str:
    """
    Extension for a simple cache entry.

    Best-effort: a recognized container suffix is kept, anything else falls
    back to .mp4 regardless of the actual content type.
    """
    ext = _last_segment_extension(url)
    if ext in VIDEO_EXTENSIONS:
        return ext
    return DEFAULT_VIDEO_EXTENSION


def path_extension(url: str, fallback: str = DEFAULT_ASSET_EXTENSION) -> str:
    """Any short extension from the URL path, used for bundle assets."""
    ext = _last_segment_extension(url)
    if ext and len(ext) <= MAX_ASSET_EXTENSION_LENGTH:
        return ext
    return fallback


def is_playlist_url(url: str) -> bool:
    """Check if a URL (or relative URI) points at an HLS playlist."""
    if ".m3u8" in url.lower():
        return True
    try:
        return urlparse(url).path.lower().endswith(".m3u8")
    except ValueError:
        return False


def identity_for(url: str) -> CacheIdentity:
    url_hash = cache_hash(url)
    return CacheIdentity(
        simple_name=f"{url_hash}{video_extension(url)}",
        bundle_name=f"{url_hash}{BUNDLE_SUFFIX}",
    )
