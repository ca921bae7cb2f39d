"""
Shared fixtures: a scripted upstream server behind httpx.MockTransport.
"""
import os
import sys
from collections import Counter

import httpx
import pytest

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from vidcache.core.config import HlsCacheOptions
from vidcache.services.manager import VideoCacheManager


class MockUpstream:
    """
    Maps absolute URLs to responses.

    A route is either (status, body) / (status, body, headers) or a callable
    taking the request and the per-URL call number (1-based) and returning
    an httpx.Response. Unknown URLs answer 404. String bodies served from
    .m3u8 URLs get the HLS content type unless headers are given.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls[url] += 1
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="Not Found")
        if callable(route):
            return route(request, self.calls[url])
        status, body = route[0], route[1]
        headers = route[2] if len(route) > 2 else None
        if isinstance(body, str):
            body = body.encode("utf-8")
            if headers is None and url.split("?", 1)[0].endswith(".m3u8"):
                headers = {"content-type": "application/vnd.apple.mpegurl"}
        return httpx.Response(status, content=body, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


@pytest.fixture
def make_upstream():
    """Factory for scripted upstreams with their own routes."""
    return MockUpstream


@pytest.fixture
def upstream(make_upstream):
    return make_upstream()


@pytest.fixture
def fast_options():
    """No waiting between retries or live refreshes beyond the backoff floor."""
    return HlsCacheOptions(retry_backoff=0.0, live_playlist_update_interval=0.0)


@pytest.fixture
def make_manager(tmp_path, upstream, fast_options):
    """Factory for managers rooted in a per-test directory."""

    def _make(**kwargs):
        kwargs.setdefault("base_dir", str(tmp_path))
        kwargs.setdefault("directory_name", "vidcache_test")
        kwargs.setdefault("hls_options", fast_options)
        kwargs.setdefault("client_factory", upstream.client)
        return VideoCacheManager(**kwargs)

    return _make
