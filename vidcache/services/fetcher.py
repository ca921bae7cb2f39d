"""
HTTP transport and single-file downloads.

Every GET goes through send_with_retry, which retries transient statuses and
network failures with linear backoff. Downloads stream into a .tmp sibling
and are renamed into place only once complete.
"""
import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import aiofiles
import httpx

from vidcache.core.config import (
    HlsCacheOptions,
    TEMP_SUFFIX,
    INDETERMINATE_PROGRESS,
    RETRYABLE_STATUS_CODES,
    MAX_REQUEST_RETRIES,
    RETRY_DELAY_MIN_SECONDS,
    RETRY_DELAY_MAX_SECONDS,
    HTTP_CONNECT_TIMEOUT_SECONDS,
    HTTP_READ_TIMEOUT_SECONDS,
    HTTP_MAX_CONNECTIONS,
    HTTP_MAX_KEEPALIVE_CONNECTIONS,
    HTTP_MAX_REDIRECTS,
    DOWNLOAD_CHUNK_SIZE,
)
from vidcache.core.errors import TransportError

logger = logging.getLogger(__name__)


def create_http_client() -> httpx.AsyncClient:
    """Default client factory for cache downloads."""
    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=HTTP_MAX_REDIRECTS,
        timeout=httpx.Timeout(connect=HTTP_CONNECT_TIMEOUT_SECONDS, read=HTTP_READ_TIMEOUT_SECONDS, write=10.0, pool=None),
        limits=httpx.Limits(max_connections=HTTP_MAX_CONNECTIONS, max_keepalive_connections=HTTP_MAX_KEEPALIVE_CONNECTIONS),
    )


def retry_delay_for_attempt(options: HlsCacheOptions, attempt: int) -> float:
    """Linear backoff per attempt (0-based), clamped to a sane range."""
    delay = options.retry_backoff * (attempt + 1)
    return min(max(delay, RETRY_DELAY_MIN_SECONDS), RETRY_DELAY_MAX_SECONDS)


async def send_with_retry(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]],
    options: HlsCacheOptions,
) -> httpx.Response:
    """
    Issue a streaming GET, retrying transient failures.

    Returns the first successful response, or the last non-successful one
    once retrying stops (non-retryable status or budget exhausted). The
    caller owns the returned response and must close it.

    Raises TransportError when every attempt failed at the network level.
    """
    retries = min(max(options.request_retries, 0), MAX_REQUEST_RETRIES)
    last_error: Optional[Exception] = None

    for attempt in range(retries + 1):
        try:
            request = client.build_request("GET", url, headers=headers or None)
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            last_error = e
            if attempt >= retries:
                break
            logger.warning(f"Request failed for {url[:60]}... ({e}), retry {attempt + 1}/{retries}")
            await asyncio.sleep(retry_delay_for_attempt(options, attempt))
            continue

        if response.is_success:
            return response

        should_retry = attempt < retries and response.status_code in RETRYABLE_STATUS_CODES
        if not should_retry:
            return response

        await response.aclose()
        logger.warning(f"HTTP {response.status_code} for {url[:60]}..., retry {attempt + 1}/{retries}")
        await asyncio.sleep(retry_delay_for_attempt(options, attempt))

    raise TransportError(url, reason=str(last_error) if last_error else "unknown error") from last_error


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]],
    options: HlsCacheOptions,
) -> AsyncIterator[httpx.Response]:
    """Open a successful streaming response or raise TransportError."""
    response = await send_with_retry(client, url, headers, options)
    try:
        if not response.is_success:
            raise TransportError(url, status_code=response.status_code)
        yield response
    finally:
        await response.aclose()


async def fetch_text(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]],
    options: HlsCacheOptions,
) -> str:
    """Fetch a whole text resource (playlists)."""
    async with open_stream(client, url, headers, options) as response:
        try:
            body = await response.aread()
        except httpx.TransportError as e:
            raise TransportError(url, reason=str(e)) from e
    return body.decode("utf-8-sig", errors="replace")


def replace_file(temp_path: str, target_path: str) -> None:
    """Move a finished temp file into place. Delete first: some platforms refuse to rename over a file."""
    if os.path.exists(target_path):
        os.remove(target_path)
    os.rename(temp_path, target_path)


async def download_file(
    client: httpx.AsyncClient,
    url: str,
    target_path: str,
    headers: Optional[Dict[str, str]],
    options: HlsCacheOptions,
) -> AsyncIterator[float]:
    """
    Download url to target_path, yielding progress from 0.0 to 1.0.

    Progress is received/content-length when the server reports a length,
    otherwise INDETERMINATE_PROGRESS until the final 1.0.
    """
    temp_path = target_path + TEMP_SUFFIX
    os.makedirs(os.path.dirname(target_path), exist_ok=True)

    try:
        async with open_stream(client, url, headers, options) as response:
            content_length = int(response.headers.get("content-length") or 0)
            received = 0

            async with aiofiles.open(temp_path, "wb") as f:
                try:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        await f.write(chunk)
                        received += len(chunk)
                        if content_length > 0:
                            yield min(received / content_length, 1.0)
                        else:
                            yield INDETERMINATE_PROGRESS
                except httpx.TransportError as e:
                    raise TransportError(url, reason=str(e)) from e

        replace_file(temp_path, target_path)
    except BaseException:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise

    logger.info(f"Downloaded {received} bytes from {url[:60]}...")
    yield 1.0


async def download_asset(
    client: httpx.AsyncClient,
    url: str,
    target_path: str,
    headers: Optional[Dict[str, str]],
    options: HlsCacheOptions,
) -> None:
    """Download without reporting progress (bundle segments, keys, init maps)."""
    async for _ in download_file(client, url, target_path, headers, options):
        pass
