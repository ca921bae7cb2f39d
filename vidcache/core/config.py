"""
Core configuration and constants for the video cache.
"""
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

# Cache configuration
DEFAULT_BASE_DIR = os.environ.get("VIDCACHE_BASE_DIR") or tempfile.gettempdir()
DEFAULT_CACHE_DIR_NAME = os.environ.get("VIDCACHE_DIR_NAME", "vidcache")
DEFAULT_MAX_CACHE_SIZE_BYTES = int(os.environ.get("VIDCACHE_MAX_BYTES", str(500 * 1024 * 1024)))  # 500 MB
EVICTION_TARGET_RATIO = 0.8  # Evict down to 80% of max to keep a 20% buffer

# On-disk layout
TEMP_SUFFIX = ".tmp"
BUNDLE_SUFFIX = ".hls"
BUNDLE_MANIFEST_NAME = "index.m3u8"
BUNDLE_PLAYLISTS_DIR = "playlists"
BUNDLE_ASSETS_DIR = "assets"

# Key derivation
VIDEO_EXTENSIONS = (".mp4", ".m4v", ".mov", ".avi", ".mkv", ".webm", ".m3u8")
DEFAULT_VIDEO_EXTENSION = ".mp4"
DEFAULT_ASSET_EXTENSION = ".bin"
MAX_ASSET_EXTENSION_LENGTH = 10

# Download progress when the server does not report a length
INDETERMINATE_PROGRESS = 0.5

# Retry configuration
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
MISSING_SEGMENT_STATUS_CODES = frozenset({404, 410})
MAX_REQUEST_RETRIES = 10
RETRY_DELAY_MIN_SECONDS = 0.05
RETRY_DELAY_MAX_SECONDS = 5.0

# Live playlist refresh
DEFAULT_TARGET_DURATION_SECONDS = 4
TARGET_DURATION_MIN_SECONDS = 1
TARGET_DURATION_MAX_SECONDS = 15
LIVE_REFRESH_MIN_SECONDS = 0.25
LIVE_REFRESH_MAX_SECONDS = 2.0

# HTTP client configuration
HTTP_CONNECT_TIMEOUT_SECONDS = 10.0
HTTP_READ_TIMEOUT_SECONDS = 300.0
HTTP_MAX_CONNECTIONS = 20
HTTP_MAX_KEEPALIVE_CONNECTIONS = 10
HTTP_MAX_REDIRECTS = 5
DOWNLOAD_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class HlsCacheOptions:
    """
    HLS-specific tuning for pre-caching behavior.

    - live_playlist_updates: extra fetch cycles for a live root playlist (0 = single snapshot)
    - live_playlist_update_interval: fixed delay in seconds between refreshes;
      when None the delay is derived from #EXT-X-TARGETDURATION
    - request_retries: retries for transient network failures
    - retry_backoff: base backoff in seconds, grows linearly per attempt
    - skip_missing_live_segments: drop segments that vanish (404/410) during refresh
    - finalize_live_as_vod: close still-live snapshots with #EXT-X-ENDLIST
    """

    live_playlist_updates: int = 2
    live_playlist_update_interval: Optional[float] = None
    request_retries: int = 2
    retry_backoff: float = 0.3
    skip_missing_live_segments: bool = True
    finalize_live_as_vod: bool = True
