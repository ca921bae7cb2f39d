"""
Live playlist snapshotting.

A media playlist without #EXT-X-ENDLIST may still grow. The controller
refreshes it a bounded number of times and then closes the last snapshot so
it plays from a static file.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional

from vidcache.core.config import (
    HlsCacheOptions,
    DEFAULT_TARGET_DURATION_SECONDS,
    TARGET_DURATION_MIN_SECONDS,
    TARGET_DURATION_MAX_SECONDS,
    LIVE_REFRESH_MIN_SECONDS,
    LIVE_REFRESH_MAX_SECONDS,
)

logger = logging.getLogger(__name__)

END_LIST_TAG = "#EXT-X-ENDLIST"

# Tags that only make sense while a server keeps updating the playlist
LIVE_ONLY_TAG_PREFIXES = (
    "#EXT-X-SERVER-CONTROL:",
    "#EXT-X-PRELOAD-HINT:",
    "#EXT-X-RENDITION-REPORT:",
    "#EXT-X-SKIP:",
    "#EXT-X-PART-INF:",
)


@dataclass(frozen=True)
class PlaylistSnapshot:
    """One fetched and rewritten playlist."""

    content: str
    is_media_playlist: bool
    has_end_list: bool
    target_duration: Optional[int] = None

    @property
    def is_live(self) -> bool:
        return self.is_media_playlist and not self.has_end_list


def parse_target_duration(line: str) -> Optional[int]:
    """Whole seconds from an #EXT-X-TARGETDURATION line."""
    value = line.split(":", 1)[1].strip() if ":" in line else ""
    if not value:
        return None
    try:
        return int(value.split(".")[0].strip())
    except ValueError:
        return None


def resolve_refresh_delay(options: HlsCacheOptions, target_duration: Optional[int] = None) -> float:
    """Seconds to wait before re-fetching a live playlist."""
    if options.live_playlist_update_interval is not None:
        return options.live_playlist_update_interval

    target = target_duration if target_duration is not None else DEFAULT_TARGET_DURATION_SECONDS
    target = min(max(target, TARGET_DURATION_MIN_SECONDS), TARGET_DURATION_MAX_SECONDS)
    return min(max(target / 2, LIVE_REFRESH_MIN_SECONDS), LIVE_REFRESH_MAX_SECONDS)


def is_live_only_tag(line: str) -> bool:
    return line.strip().upper().startswith(LIVE_ONLY_TAG_PREFIXES)


def join_playlist_lines(original: str, lines: List[str]) -> str:
    """Join lines with the original line ending, keeping a trailing newline."""
    separator = "\r\n" if "\r\n" in original else "\n"
    joined = separator.join(lines)
    if original.endswith("\n"):
        joined += separator
    return joined


def finalize_snapshot_content(content: str) -> str:
    """Strip live-only control tags and close the playlist."""
    filtered = [line for line in content.splitlines() if not is_live_only_tag(line)]
    if not any(line.strip().upper() == END_LIST_TAG for line in filtered):
        filtered.append(END_LIST_TAG)
    return join_playlist_lines(content, filtered)


def finalize_snapshot(snapshot: PlaylistSnapshot, options: HlsCacheOptions) -> PlaylistSnapshot:
    """Close a still-live snapshot when configured to."""
    if not snapshot.is_live or not options.finalize_live_as_vod:
        return snapshot
    return replace(snapshot, content=finalize_snapshot_content(snapshot.content), has_end_list=True)


class LiveSnapshotController:
    """
    Refresh policy for a live root playlist.

    fetch(allow_missing_segments) fetches and rewrites the playlist once.
    The first fetch is strict; refresh passes tolerate vanished segments.
    """

    def __init__(self, options: HlsCacheOptions):
        self.options = options

    async def capture(self, url: str, fetch: Callable[[bool], Awaitable[PlaylistSnapshot]]) -> PlaylistSnapshot:
        snapshot = await fetch(False)

        refreshes = max(self.options.live_playlist_updates, 0)
        for attempt in range(refreshes):
            if not snapshot.is_live:
                break
            delay = resolve_refresh_delay(self.options, snapshot.target_duration)
            logger.info(f"Live playlist refresh {attempt + 1}/{refreshes} in {delay:.2f}s: {url[:60]}...")
            await asyncio.sleep(delay)
            snapshot = await fetch(True)

        if snapshot.is_live and self.options.finalize_live_as_vod:
            logger.info(f"Finalizing live snapshot: {url[:60]}...")
        return finalize_snapshot(snapshot, self.options)
