"""
Video cache manager: the public surface of the cache engine.

Coalesces concurrent requests for the same URL so at most one transfer per
URL is in flight, runs eviction before each new download, and dispatches to
the HLS bundle builder or the single-file fetcher.
"""
import os
import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, Optional

import httpx

from vidcache.core.config import (
    DEFAULT_BASE_DIR,
    DEFAULT_CACHE_DIR_NAME,
    DEFAULT_MAX_CACHE_SIZE_BYTES,
    HlsCacheOptions,
)
from vidcache.services.fetcher import create_http_client, download_file
from vidcache.services.hls import HlsBundleBuilder
from vidcache.services.keys import is_playlist_url
from vidcache.services.store import CacheInfo, CacheStore

logger = logging.getLogger(__name__)

# Terminates a progress queue
_DONE = None


class VideoCacheManager:
    """
    Manages video file caching on local disk.

    Usage:
        cache = VideoCacheManager(max_cache_size=500 * 1024 * 1024)
        async for progress in cache.cache_video(url):
            print(f"{progress:.0%}")
        path = await cache.get_cached_file(url)
    """

    def __init__(
        self,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE_BYTES,
        directory_name: Optional[str] = None,
        base_dir: Optional[str] = None,
        hls_options: Optional[HlsCacheOptions] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.max_cache_size = max_cache_size
        self.directory_name = directory_name or DEFAULT_CACHE_DIR_NAME
        self.hls_options = hls_options or HlsCacheOptions()
        self.store = CacheStore(os.path.join(base_dir or DEFAULT_BASE_DIR, self.directory_name))
        self._client_factory = client_factory or create_http_client
        self._client: Optional[httpx.AsyncClient] = None
        # url -> running download task
        self._active_downloads: Dict[str, asyncio.Task] = {}

    @property
    def cache_directory(self) -> str:
        return self.store.root

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client for downloads."""
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def aclose(self) -> None:
        """Wait for in-flight downloads, then close the HTTP client."""
        if self._active_downloads:
            logger.info(f"Waiting for {len(self._active_downloads)} downloads before closing")
            await asyncio.gather(*self._active_downloads.values(), return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def is_downloading(self, url: str) -> bool:
        return url in self._active_downloads

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_cached_file(self, url: str) -> Optional[str]:
        """Return the cached file path for a URL, or None if not cached."""
        return self.store.lookup(url)

    async def is_cached(self, url: str) -> bool:
        return self.store.lookup(url) is not None

    async def info(self) -> CacheInfo:
        """Cache info summary, recomputed from disk on every call."""
        return self.store.info(self.max_cache_size)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def cache_video(self, url: str, headers: Optional[Dict[str, str]] = None) -> AsyncIterator[float]:
        """
        Cache a video from URL, yielding download progress (0.0 to 1.0).

        If the video is already cached, immediately yields 1.0.
        If a download is already in progress for this URL, waits for it and
        yields 1.0 (or raises the same error).
        """
        # Lookup, registry check and registration happen without yielding to
        # the event loop, so two callers can never both start a transfer.
        if self.store.lookup(url) is not None:
            logger.info(f"CACHE HIT: {url[:60]}...")
            yield 1.0
            return

        active = self._active_downloads.get(url)
        if active is not None:
            logger.info(f"COALESCE: Waiting for in-flight download: {url[:60]}...")
            await asyncio.shield(active)
            yield 1.0
            return

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._run_download(url, headers, queue))
        task.add_done_callback(_log_task_failure)
        self._active_downloads[url] = task

        while True:
            progress = await queue.get()
            if progress is _DONE:
                break
            yield progress

        # Raises the download error; the registry entry is already gone
        await task

    async def _run_download(self, url: str, headers: Optional[Dict[str, str]], queue: asyncio.Queue) -> Optional[str]:
        try:
            # Ensure we have space before writing anything new
            freed = self.store.evict_if_over_budget(self.max_cache_size)
            if freed:
                logger.info(f"Evicted {freed} bytes before caching {url[:60]}...")

            client = self._get_client()

            # HLS needs full bundle caching (manifest + child playlists + segments/keys)
            if is_playlist_url(url):
                queue.put_nowait(0.0)
                builder = HlsBundleBuilder(
                    client,
                    url,
                    self.store.bundle_path(url),
                    headers=headers,
                    options=self.hls_options,
                )
                path = await builder.build()
                queue.put_nowait(1.0)
                return path

            target = self.store.simple_path(url)
            async for progress in download_file(client, url, target, headers, self.hls_options):
                queue.put_nowait(progress)
            return target
        except BaseException as e:
            logger.error(f"Failed to cache {url[:60]}...: {e!r}")
            self.store.cleanup_temp_artifacts(url)
            raise
        finally:
            if self._active_downloads.get(url) is asyncio.current_task():
                del self._active_downloads[url]
            queue.put_nowait(_DONE)

    async def wait_until_cached(self, url: str, headers: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Drain the download and return the cached path. Errors propagate."""
        async for _ in self.cache_video(url, headers=headers):
            pass
        return self.store.lookup(url)

    async def pre_cache(self, url: str, headers: Optional[Dict[str, str]] = None) -> Optional[str]:
        """
        Pre-cache a video without progress tracking.

        Useful for preloading the next video in a playlist. Failures are
        logged and reported as None.
        """
        try:
            return await self.wait_until_cached(url, headers=headers)
        except Exception as e:
            logger.warning(f"Pre-cache failed for {url[:60]}...: {e}")
            return None

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove_from_cache(self, url: str) -> bool:
        """Remove a specific video. Temp files of an active download are left to it."""
        return self.store.remove(url, include_temp=not self.is_downloading(url))

    async def clear_cache(self) -> None:
        """Clear the entire video cache. Callers must not clear during active downloads."""
        if self._active_downloads:
            logger.warning(f"Clearing cache with {len(self._active_downloads)} downloads in flight")
        self.store.clear()


def _log_task_failure(task: asyncio.Task) -> None:
    """Retrieve the exception of a download nobody awaited."""
    if task.cancelled():
        return
    task.exception()
