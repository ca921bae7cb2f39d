"""
Tests for VideoCacheManager: caching, coalescing, eviction and removal.
"""
import asyncio
import hashlib
import os
import sys

import httpx
import pytest

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from vidcache.core.errors import CacheError, TransportError

URL = "https://host/a.mp4"
PLAYLIST_URL = "https://host/master.m3u8"


def chunked(data: bytes):
    """Response body without a content-length header."""

    async def body():
        yield data

    return lambda request, call: httpx.Response(200, content=body())


async def drain(stream):
    return [value async for value in stream]


def write_file(path, size, mtime):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"x" * size)
    os.utime(path, (mtime, mtime))


class TestCacheVideo:
    """Single-file caching and progress reporting."""

    @pytest.mark.asyncio
    async def test_first_download_without_length(self, upstream, make_manager):
        upstream.routes[URL] = chunked(b"0123456789")
        manager = make_manager()

        assert await manager.is_cached(URL) is False
        progress = await drain(manager.cache_video(URL))

        assert progress == [0.5, 1.0]
        expected = os.path.join(manager.cache_directory, hashlib.md5(URL.encode()).hexdigest() + ".mp4")
        assert await manager.get_cached_file(URL) == expected
        assert os.path.getsize(expected) == 10
        assert await manager.is_cached(URL) is True
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_progress_with_length_is_monotonic(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"x" * 1000)
        manager = make_manager()

        progress = await drain(manager.cache_video(URL))

        assert progress[-1] == 1.0
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_cached_url_is_not_fetched_again(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"0123456789")
        manager = make_manager()

        await drain(manager.cache_video(URL))
        second = await drain(manager.cache_video(URL))

        assert second == [1.0]
        assert upstream.calls[URL] == 1

    @pytest.mark.asyncio
    async def test_forwards_request_headers(self, upstream, make_manager):
        seen = {}

        def capture(request, call):
            seen.update(request.headers)
            return httpx.Response(200, content=b"data")

        upstream.routes[URL] = capture
        manager = make_manager()

        await manager.wait_until_cached(URL, headers={"Referer": "https://site.example/"})

        assert seen["referer"] == "https://site.example/"

    @pytest.mark.asyncio
    async def test_playlist_url_builds_bundle(self, upstream, make_manager):
        upstream.routes[PLAYLIST_URL] = (200, "#EXTM3U\n#EXTINF:4,\ns1.ts\n#EXT-X-ENDLIST\n")
        upstream.routes["https://host/s1.ts"] = (200, b"segment")
        manager = make_manager()

        progress = await drain(manager.cache_video(PLAYLIST_URL))

        assert progress == [0.0, 1.0]
        path = await manager.get_cached_file(PLAYLIST_URL)
        assert path == os.path.join(manager.cache_directory, hashlib.md5(PLAYLIST_URL.encode()).hexdigest() + ".hls", "index.m3u8")
        info = await manager.info()
        assert info.file_count == 1


class TestCoalescing:
    """Concurrent callers share one transfer."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_download(self, upstream, make_manager):
        upstream.routes[URL] = chunked(b"0123456789")
        manager = make_manager()

        results = await asyncio.gather(*[drain(manager.cache_video(URL)) for _ in range(5)])

        assert upstream.calls[URL] == 1
        for progress in results:
            assert progress[-1] == 1.0
        assert await manager.is_cached(URL)
        assert not manager.is_downloading(URL)

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller(self, upstream, make_manager):
        upstream.routes[URL] = (403, b"denied")
        manager = make_manager()

        results = await asyncio.gather(
            *[drain(manager.cache_video(URL)) for _ in range(3)],
            return_exceptions=True,
        )

        assert upstream.calls[URL] == 1
        for result in results:
            assert isinstance(result, TransportError)
            assert result.status_code == 403
        assert not manager.is_downloading(URL)
        assert not os.path.exists(manager.store.simple_path(URL) + ".tmp")

    @pytest.mark.asyncio
    async def test_retry_after_failure_starts_new_transfer(self, upstream, make_manager):
        def flaky(request, call):
            if call == 1:
                return httpx.Response(403)
            return httpx.Response(200, content=b"finally")

        upstream.routes[URL] = flaky
        manager = make_manager()

        with pytest.raises(TransportError):
            await manager.wait_until_cached(URL)
        path = await manager.wait_until_cached(URL)

        assert path is not None
        assert upstream.calls[URL] == 2

    @pytest.mark.asyncio
    async def test_abandoned_stream_still_completes(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"x" * 200_000)
        manager = make_manager()

        stream = manager.cache_video(URL)
        first = await stream.__anext__()
        await stream.aclose()
        assert 0.0 < first <= 1.0

        # The transfer keeps running; a second caller joins or hits the cache
        path = await manager.wait_until_cached(URL)
        assert path == manager.store.simple_path(URL)
        assert upstream.calls[URL] == 1

    @pytest.mark.asyncio
    async def test_aclose_waits_for_in_flight_download(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"x" * 200_000)
        manager = make_manager()

        stream = manager.cache_video(URL)
        await stream.__anext__()
        assert manager.is_downloading(URL)

        await manager.aclose()
        await stream.aclose()

        assert not manager.is_downloading(URL)
        assert await manager.get_cached_file(URL) == manager.store.simple_path(URL)
        assert os.path.getsize(manager.store.simple_path(URL)) == 200_000


class TestPreCache:
    """Fire-and-forget caching."""

    @pytest.mark.asyncio
    async def test_returns_path(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"data")
        manager = make_manager()
        assert await manager.pre_cache(URL) == manager.store.simple_path(URL)

    @pytest.mark.asyncio
    async def test_swallows_errors(self, make_manager):
        manager = make_manager()
        assert await manager.pre_cache(URL) is None
        assert await manager.is_cached(URL) is False

    @pytest.mark.asyncio
    async def test_wait_until_cached_propagates(self, make_manager):
        manager = make_manager()
        with pytest.raises(CacheError):
            await manager.wait_until_cached(URL)


class TestEvictionAndRemoval:
    """Budget enforcement and explicit removal."""

    @pytest.mark.asyncio
    async def test_evicts_oldest_before_download(self, upstream, make_manager):
        manager = make_manager(max_cache_size=1000)
        old = manager.store.simple_path("https://host/old.mp4")
        newer = manager.store.simple_path("https://host/newer.mp4")
        write_file(old, 700, mtime=1000)
        write_file(newer, 700, mtime=2000)
        upstream.routes[URL] = (200, b"data")

        await manager.wait_until_cached(URL)

        assert not os.path.exists(old)
        assert os.path.exists(newer)
        assert await manager.is_cached(URL)

    @pytest.mark.asyncio
    async def test_info_counts_bundle_once(self, upstream, make_manager):
        upstream.routes[PLAYLIST_URL] = (
            200,
            "#EXTM3U\n#EXTINF:4,\ns1.ts\n#EXTINF:4,\ns2.ts\n#EXT-X-ENDLIST\n",
        )
        upstream.routes["https://host/s1.ts"] = (200, b"1" * 100)
        upstream.routes["https://host/s2.ts"] = (200, b"2" * 100)
        upstream.routes[URL] = (200, b"v" * 50)
        manager = make_manager(max_cache_size=10_000)

        await manager.wait_until_cached(PLAYLIST_URL)
        await manager.wait_until_cached(URL)
        info = await manager.info()

        assert info.file_count == 2
        assert info.total_size > 250
        assert info.max_size == 10_000
        assert 0.0 < info.usage < 1.0

    @pytest.mark.asyncio
    async def test_remove_from_cache(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"data")
        manager = make_manager()
        await manager.wait_until_cached(URL)

        assert await manager.remove_from_cache(URL) is True
        assert await manager.is_cached(URL) is False
        assert await manager.remove_from_cache(URL) is False

    @pytest.mark.asyncio
    async def test_clear_cache(self, upstream, make_manager):
        upstream.routes[URL] = (200, b"data")
        manager = make_manager()
        await manager.wait_until_cached(URL)

        await manager.clear_cache()

        info = await manager.info()
        assert info.file_count == 0
        assert info.total_size == 0
        assert os.path.isdir(manager.cache_directory)

    @pytest.mark.asyncio
    async def test_info_string(self, make_manager):
        manager = make_manager(max_cache_size=500 * 1024 * 1024)
        assert str(await manager.info()) == "CacheInfo(0.0 MB / 500 MB, 0 files)"
