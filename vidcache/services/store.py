"""
On-disk cache store for video files and HLS bundles.

Owns the cache root directory. Every query re-reads the filesystem; no
directory listing is kept in memory between calls.
"""
import os
import shutil
import logging
from dataclasses import dataclass
from typing import List, Optional

from vidcache.core.config import (
    TEMP_SUFFIX,
    BUNDLE_SUFFIX,
    BUNDLE_MANIFEST_NAME,
    EVICTION_TARGET_RATIO,
)
from vidcache.services.keys import identity_for, is_playlist_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheInfo:
    """Information about the current cache state."""

    total_size: int
    file_count: int
    max_size: int

    @property
    def total_size_mb(self) -> float:
        return self.total_size / (1024 * 1024)

    @property
    def max_size_mb(self) -> float:
        return self.max_size / (1024 * 1024)

    @property
    def usage(self) -> float:
        """Cache usage as a fraction (0.0 to 1.0)."""
        if self.max_size <= 0:
            return 0.0
        return min(max(self.total_size / self.max_size, 0.0), 1.0)

    def to_dict(self) -> dict:
        return {
            "total_size": self.total_size,
            "file_count": self.file_count,
            "max_size": self.max_size,
            "total_size_mb": round(self.total_size_mb, 2),
            "max_size_mb": round(self.max_size_mb, 2),
            "usage": round(self.usage, 4),
        }

    def __str__(self) -> str:
        return f"CacheInfo({self.total_size_mb:.1f} MB / {self.max_size_mb:.0f} MB, {self.file_count} files)"


@dataclass(frozen=True)
class CacheEntry:
    path: str
    size: int
    mtime: float
    is_bundle: bool


def is_temp_path(path: str) -> bool:
    """True if any component of the path is an in-progress .tmp artifact."""
    parts = os.path.normpath(path).split(os.sep)
    return any(part.endswith(TEMP_SUFFIX) for part in parts)


def _nonempty_file(path: str) -> bool:
    try:
        return os.path.isfile(path) and os.path.getsize(path) > 0
    except OSError:
        return False


def _remove_path(path: str) -> None:
    if os.path.isdir(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


class CacheStore:
    """
    Filesystem layout:
    - <root>/<md5(url)><ext>              simple entry
    - <root>/<md5(url)>.hls/index.m3u8    bundle entry (plus playlists/ and assets/)
    - any name ending in .tmp             in-progress, invisible to queries
    """

    def __init__(self, root: str):
        self._root = root

    @property
    def root(self) -> str:
        """Cache root, created lazily on first use."""
        if not os.path.isdir(self._root):
            os.makedirs(self._root, exist_ok=True)
        return self._root

    def simple_path(self, url: str) -> str:
        return os.path.join(self.root, identity_for(url).simple_name)

    def bundle_path(self, url: str) -> str:
        return os.path.join(self.root, identity_for(url).bundle_name)

    def manifest_path(self, url: str) -> str:
        return os.path.join(self.bundle_path(url), BUNDLE_MANIFEST_NAME)

    def lookup(self, url: str) -> Optional[str]:
        """Return the local path for a URL if it is fully cached."""
        try:
            # HLS is cached as a bundle directory with a rewritten local manifest
            if is_playlist_url(url):
                manifest = self.manifest_path(url)
                if _nonempty_file(manifest):
                    return manifest

            path = self.simple_path(url)
            if _nonempty_file(path):
                return path
        except OSError as e:
            logger.error(f"Cache read error for {url[:60]}...: {e}")
        return None

    def _bundle_size(self, bundle_dir: str) -> int:
        total = 0
        for dirpath, dirnames, filenames in os.walk(bundle_dir):
            dirnames[:] = [d for d in dirnames if not d.endswith(TEMP_SUFFIX)]
            for name in filenames:
                if name.endswith(TEMP_SUFFIX):
                    continue
                try:
                    total += os.path.getsize(os.path.join(dirpath, name))
                except FileNotFoundError:
                    continue
        return total

    def entries(self) -> List[CacheEntry]:
        """Top-level cache entries: simple files and completed bundles."""
        result = []
        root = self.root
        for name in os.listdir(root):
            if name.endswith(TEMP_SUFFIX):
                continue
            path = os.path.join(root, name)
            try:
                if os.path.isfile(path):
                    stat = os.stat(path)
                    result.append(CacheEntry(path, stat.st_size, stat.st_mtime, False))
                elif os.path.isdir(path) and name.endswith(BUNDLE_SUFFIX):
                    manifest = os.path.join(path, BUNDLE_MANIFEST_NAME)
                    if not _nonempty_file(manifest):
                        continue
                    mtime = os.path.getmtime(manifest)
                    result.append(CacheEntry(path, self._bundle_size(path), mtime, True))
            except FileNotFoundError:
                # Removed between listing and stat
                continue
        return result

    def aggregate_size(self) -> int:
        """Get total size of cached entries in bytes."""
        try:
            return sum(entry.size for entry in self.entries())
        except OSError as e:
            logger.error(f"Failed to get cache size: {e}")
            return 0

    def entry_count(self) -> int:
        """Number of cached videos. HLS bundles count once."""
        try:
            return len(self.entries())
        except OSError as e:
            logger.error(f"Failed to count cache entries: {e}")
            return 0

    def info(self, max_size: int) -> CacheInfo:
        entries = self.entries()
        return CacheInfo(
            total_size=sum(entry.size for entry in entries),
            file_count=len(entries),
            max_size=max_size,
        )

    def remove(self, url: str, include_temp: bool = True) -> bool:
        """
        Delete everything stored for a URL.

        Returns True if a cached entry existed. Temp artifacts are removed
        too unless include_temp is False (they belong to an active download).
        """
        removed = False
        targets = []
        if is_playlist_url(url):
            targets.append(self.bundle_path(url))
        targets.append(self.simple_path(url))

        for path in targets:
            if os.path.exists(path):
                _remove_path(path)
                removed = True
                logger.info(f"Removed cache entry: {os.path.basename(path)}")
            if include_temp and os.path.exists(path + TEMP_SUFFIX):
                _remove_path(path + TEMP_SUFFIX)
        return removed

    def cleanup_temp_artifacts(self, url: str) -> None:
        """Remove partial downloads left behind by a failed attempt."""
        for path in (self.simple_path(url), self.bundle_path(url)):
            temp_path = path + TEMP_SUFFIX
            try:
                if os.path.exists(temp_path):
                    _remove_path(temp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temp artifact {temp_path}: {e}")

    def clear(self) -> None:
        """Delete and recreate the cache root."""
        if os.path.exists(self._root):
            shutil.rmtree(self._root)
        os.makedirs(self._root, exist_ok=True)
        logger.info(f"Cleared cache directory: {self._root}")

    def evict_if_over_budget(self, max_bytes: int) -> int:
        """
        Enforce the size limit by removing the oldest entries (LRU by mtime).

        Evicts down to EVICTION_TARGET_RATIO of max_bytes once the limit is
        exceeded. Returns the number of bytes freed.
        """
        entries = self.entries()
        total_size = sum(entry.size for entry in entries)
        if total_size <= max_bytes:
            return 0

        entries.sort(key=lambda entry: entry.mtime)
        floor = max_bytes * EVICTION_TARGET_RATIO
        freed = 0

        for entry in entries:
            if total_size <= floor:
                break
            try:
                _remove_path(entry.path)
            except OSError as e:
                logger.warning(f"Failed to evict {os.path.basename(entry.path)}: {e}")
                continue
            total_size -= entry.size
            freed += entry.size
            logger.info(f"Evicted cache entry: {os.path.basename(entry.path)}")

        logger.info(f"Cache eviction freed {freed / 1024 / 1024:.2f} MB")
        return freed
