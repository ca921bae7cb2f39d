"""
HLS bundle mirroring.

Fetches a root playlist and everything it transitively references (variant
and rendition playlists, segments, init maps, keys), rewrites every
reference to a path relative to the referencing playlist, and commits the
result as one bundle directory:

    <md5(url)>.hls/index.m3u8
    <md5(url)>.hls/playlists/<md5(child)>.m3u8
    <md5(url)>.hls/assets/<md5(asset)><ext>

The bundle is assembled under <md5(url)>.hls.tmp and renamed into place
only once the root manifest exists, so readers never see a partial bundle.
Assets that only superseded live snapshots referenced are deleted first.
"""
import os
import re
import shutil
import logging
import posixpath
from collections import deque
from typing import Deque, Dict, List, Optional, Set
from urllib.parse import urljoin, urlparse

import aiofiles
import httpx

from vidcache.core.config import (
    HlsCacheOptions,
    TEMP_SUFFIX,
    BUNDLE_MANIFEST_NAME,
    BUNDLE_PLAYLISTS_DIR,
    BUNDLE_ASSETS_DIR,
    MISSING_SEGMENT_STATUS_CODES,
)
from vidcache.core.errors import ManifestBuildError, TransportError, UnsupportedReferenceError
from vidcache.services.fetcher import download_asset, fetch_text
from vidcache.services.keys import cache_hash, is_playlist_url, path_extension
from vidcache.services.live import (
    END_LIST_TAG,
    LiveSnapshotController,
    PlaylistSnapshot,
    finalize_snapshot,
    join_playlist_lines,
    parse_target_duration,
)

logger = logging.getLogger(__name__)

# URI= as a whole attribute name, not the tail of e.g. SERVER-URI=
URI_ATTRIBUTE_PATTERN = re.compile(r"""(?<=[:,])URI=(?:"([^"]+)"|'([^']+)'|([^,]+))""")

# Attribute tags whose URI is always another playlist
PLAYLIST_ATTRIBUTE_TAGS = (
    "#EXT-X-MEDIA:",
    "#EXT-X-I-FRAME-STREAM-INF:",
    "#EXT-X-RENDITION-REPORT:",
)

# Attribute tags whose URI is always a binary asset
ASSET_ATTRIBUTE_TAGS = (
    "#EXT-X-KEY:",
    "#EXT-X-SESSION-KEY:",
    "#EXT-X-MAP:",
    "#EXT-X-PART:",
    "#EXT-X-PRELOAD-HINT:",
)

# Partial-segment assets that may vanish from a live window
LIVE_PART_TAGS = ("#EXT-X-PART:", "#EXT-X-PRELOAD-HINT:")

# Tags that belong to the segment URI line that follows them
SEGMENT_LINKED_TAGS = (
    "#EXTINF:",
    "#EXT-X-BYTERANGE:",
    "#EXT-X-DISCONTINUITY",
    "#EXT-X-PROGRAM-DATE-TIME:",
    "#EXT-X-GAP",
)


def is_downloadable(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


def is_missing_segment_error(error: Exception) -> bool:
    return isinstance(error, TransportError) and error.status_code in MISSING_SEGMENT_STATUS_CODES


def attribute_uri(match: re.Match) -> str:
    return (match.group(1) or match.group(2) or match.group(3) or "").strip()


def relative_reference(from_local_path: str, to_local_path: str) -> str:
    """Path of to_local_path as seen from the directory of from_local_path."""
    start = posixpath.dirname(from_local_path) or "."
    return posixpath.relpath(to_local_path, start)


class HlsBundleBuilder:
    """
    Builds one bundle. Not reusable: all bookkeeping is scoped to a single build.

    Child playlists are traversed with an explicit worklist. Each remote URL
    gets exactly one local path the first time it is seen, so shared
    resources are downloaded once and cycles between playlists terminate.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        bundle_dir: str,
        headers: Optional[Dict[str, str]] = None,
        options: Optional[HlsCacheOptions] = None,
    ):
        self.client = client
        self.url = url
        self.bundle_dir = bundle_dir
        self.temp_dir = bundle_dir + TEMP_SUFFIX
        self.headers = headers
        self.options = options or HlsCacheOptions()
        self.live = LiveSnapshotController(self.options)

        self.assigned_paths: Dict[str, str] = {url: BUNDLE_MANIFEST_NAME}
        self.seen_playlists: Set[str] = {url}
        self.pending_playlists: Deque[str] = deque()
        self.completed_playlists: Set[str] = set()
        self.completed_assets: Set[str] = set()
        self.written_playlists: Set[str] = set()

    # ------------------------------------------------------------------
    # Local layout
    # ------------------------------------------------------------------

    def local_path_for(self, remote_url: str, is_playlist: bool) -> str:
        existing = self.assigned_paths.get(remote_url)
        if existing is not None:
            return existing

        url_hash = cache_hash(remote_url)
        if is_playlist:
            path = f"{BUNDLE_PLAYLISTS_DIR}/{url_hash}.m3u8"
        else:
            path = f"{BUNDLE_ASSETS_DIR}/{url_hash}{path_extension(remote_url)}"
        self.assigned_paths[remote_url] = path
        return path

    def _temp_file(self, local_path: str) -> str:
        return os.path.join(self.temp_dir, *local_path.split("/"))

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _enqueue_playlist(self, remote_url: str) -> str:
        local_path = self.local_path_for(remote_url, is_playlist=True)
        if remote_url not in self.seen_playlists:
            self.seen_playlists.add(remote_url)
            self.pending_playlists.append(remote_url)
        return local_path

    async def _cache_asset(self, remote_url: str) -> str:
        local_path = self.local_path_for(remote_url, is_playlist=False)
        if remote_url in self.completed_assets:
            return local_path

        if not is_downloadable(remote_url):
            raise UnsupportedReferenceError(remote_url)

        await download_asset(self.client, remote_url, self._temp_file(local_path), self.headers, self.options)
        self.completed_assets.add(remote_url)
        return local_path

    async def _reference(self, remote_url: str, is_playlist: bool) -> str:
        if is_playlist:
            return self._enqueue_playlist(remote_url)
        return await self._cache_asset(remote_url)

    async def _rewrite_attribute_uri(
        self,
        line: str,
        playlist_url: str,
        playlist_local_path: str,
        is_playlist: bool,
        allow_missing_asset: bool,
    ) -> Optional[str]:
        """
        Rewrite the URI= attribute of a tag line.

        Returns None when the referenced asset vanished and may be dropped.
        """
        match = URI_ATTRIBUTE_PATTERN.search(line)
        if match is None:
            return line

        raw_uri = attribute_uri(match)
        if not raw_uri:
            return line

        remote_url = urljoin(playlist_url, raw_uri)
        if not is_downloadable(remote_url):
            # Keep non-network URI schemes (e.g. skd://, data:) untouched
            return line

        try:
            target_local_path = await self._reference(remote_url, is_playlist)
        except TransportError as e:
            if allow_missing_asset and not is_playlist and is_missing_segment_error(e):
                logger.warning(f"Dropping vanished live part: {remote_url[:60]}...")
                return None
            raise

        relative = relative_reference(playlist_local_path, target_local_path)
        if match.group(1) is not None:
            replacement = f'URI="{relative}"'
        elif match.group(2) is not None:
            replacement = f"URI='{relative}'"
        else:
            replacement = f"URI={relative}"
        return line[:match.start()] + replacement + line[match.end():]

    async def fetch_and_rewrite(
        self,
        playlist_url: str,
        playlist_local_path: str,
        allow_missing_live_segments: bool = False,
    ) -> PlaylistSnapshot:
        """Fetch one playlist and rewrite its references to local relative paths."""
        content = await fetch_text(self.client, playlist_url, self.headers, self.options)
        lines = content.splitlines()

        has_end_list = any(line.strip().upper() == END_LIST_TAG for line in lines)
        is_media_playlist = any(line.strip().upper().startswith("#EXTINF:") for line in lines)
        can_skip_missing = (
            self.options.skip_missing_live_segments
            and allow_missing_live_segments
            and is_media_playlist
            and not has_end_list
        )

        rewritten: List[str] = []
        next_line_is_playlist = False
        target_duration: Optional[int] = None
        segment_block_start: Optional[int] = None

        for line in lines:
            trimmed = line.strip()

            if not trimmed:
                rewritten.append(line)
                next_line_is_playlist = False
                segment_block_start = None
                continue

            if trimmed.startswith("#"):
                upper = trimmed.upper()

                if upper.startswith("#EXT-X-TARGETDURATION:"):
                    target_duration = parse_target_duration(trimmed)

                # A segment block stays open until its URI line
                if segment_block_start is None and upper.startswith(SEGMENT_LINKED_TAGS):
                    segment_block_start = len(rewritten)

                if upper.startswith(PLAYLIST_ATTRIBUTE_TAGS) or upper.startswith(ASSET_ATTRIBUTE_TAGS):
                    rewritten_line = await self._rewrite_attribute_uri(
                        line,
                        playlist_url,
                        playlist_local_path,
                        is_playlist=upper.startswith(PLAYLIST_ATTRIBUTE_TAGS),
                        allow_missing_asset=can_skip_missing and upper.startswith(LIVE_PART_TAGS),
                    )
                    if rewritten_line is not None:
                        rewritten.append(rewritten_line)
                else:
                    # Unrecognized tags pass through verbatim
                    rewritten.append(line)

                next_line_is_playlist = upper.startswith("#EXT-X-STREAM-INF:")
                continue

            remote_url = urljoin(playlist_url, trimmed)
            is_playlist = next_line_is_playlist or is_playlist_url(trimmed)

            if not is_downloadable(remote_url):
                raise UnsupportedReferenceError(remote_url)

            try:
                target_local_path = await self._reference(remote_url, is_playlist)
            except TransportError as e:
                if can_skip_missing and not is_playlist and is_missing_segment_error(e):
                    logger.warning(f"Dropping vanished live segment: {remote_url[:60]}...")
                    if segment_block_start is not None:
                        del rewritten[segment_block_start:]
                    next_line_is_playlist = False
                    segment_block_start = None
                    continue
                raise

            rewritten.append(relative_reference(playlist_local_path, target_local_path))
            next_line_is_playlist = False
            segment_block_start = None

        return PlaylistSnapshot(
            content=join_playlist_lines(content, rewritten),
            is_media_playlist=is_media_playlist,
            has_end_list=has_end_list,
            target_duration=target_duration,
        )

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    async def _write_playlist(self, local_path: str, content: str) -> None:
        path = self._temp_file(local_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
            await f.write(content)
        self.written_playlists.add(local_path)

    async def _cache_root_playlist(self) -> None:
        async def fetch(allow_missing: bool) -> PlaylistSnapshot:
            return await self.fetch_and_rewrite(self.url, BUNDLE_MANIFEST_NAME, allow_missing)

        # Only the entry point is refreshed while live
        snapshot = await self.live.capture(self.url, fetch)
        await self._write_playlist(BUNDLE_MANIFEST_NAME, snapshot.content)
        self.completed_playlists.add(self.url)

    async def _cache_child_playlist(self, playlist_url: str) -> None:
        if playlist_url in self.completed_playlists:
            return
        local_path = self.local_path_for(playlist_url, is_playlist=True)
        snapshot = await self.fetch_and_rewrite(playlist_url, local_path)
        snapshot = finalize_snapshot(snapshot, self.options)
        await self._write_playlist(local_path, snapshot.content)
        self.completed_playlists.add(playlist_url)

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    async def _referenced_local_paths(self) -> Set[str]:
        """Bundle-relative paths referenced by the playlists as written."""
        referenced: Set[str] = set()
        for local_path in self.written_playlists:
            async with aiofiles.open(self._temp_file(local_path), "r", encoding="utf-8") as f:
                content = await f.read()

            base = posixpath.dirname(local_path)
            for line in content.splitlines():
                trimmed = line.strip()
                if not trimmed:
                    continue
                if trimmed.startswith("#"):
                    match = URI_ATTRIBUTE_PATTERN.search(trimmed)
                    if match is None:
                        continue
                    trimmed = attribute_uri(match)
                referenced.add(posixpath.normpath(posixpath.join(base, trimmed)))
        return referenced

    async def _prune_unreferenced_assets(self) -> None:
        """Delete assets only superseded live snapshots referenced."""
        referenced = await self._referenced_local_paths()
        stale = [url for url in self.completed_assets if self.assigned_paths[url] not in referenced]
        for remote_url in stale:
            os.remove(self._temp_file(self.assigned_paths[remote_url]))
            self.completed_assets.discard(remote_url)
        if stale:
            logger.info(f"Pruned {len(stale)} superseded assets from {self.url[:60]}...")

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(self) -> str:
        """Mirror the playlist tree and return the committed root manifest path."""
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)
        os.makedirs(self.temp_dir)

        try:
            await self._cache_root_playlist()
            while self.pending_playlists:
                await self._cache_child_playlist(self.pending_playlists.popleft())
            await self._prune_unreferenced_assets()

            manifest_in_temp = os.path.join(self.temp_dir, BUNDLE_MANIFEST_NAME)
            if not os.path.isfile(manifest_in_temp) or os.path.getsize(manifest_in_temp) == 0:
                raise ManifestBuildError(f"Failed to generate local HLS manifest for {self.url}")

            if os.path.exists(self.bundle_dir):
                shutil.rmtree(self.bundle_dir)
            os.rename(self.temp_dir, self.bundle_dir)
        except BaseException:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            raise

        logger.info(
            f"Cached HLS bundle: {len(self.completed_playlists)} playlists, "
            f"{len(self.completed_assets)} assets for {self.url[:60]}..."
        )
        return os.path.join(self.bundle_dir, BUNDLE_MANIFEST_NAME)
