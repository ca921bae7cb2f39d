"""
Video cache API routes.
"""
import json
import logging
from typing import Dict, Optional

import pydantic
from fastapi import APIRouter, HTTPException, Query, Request
from starlette.responses import StreamingResponse

from vidcache.core.errors import CacheError
from vidcache.core.security import validate_cache_url, sanitize_request_headers
from vidcache.services.manager import VideoCacheManager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


class CacheRequest(pydantic.BaseModel):
    url: str
    headers: Optional[Dict[str, str]] = None  # Forwarded upstream (auth, referer)


def get_cache_manager(request: Request) -> VideoCacheManager:
    return request.app.state.cache_manager


@router.get("/status")
async def cache_status(request: Request, url: str = Query(...)):
    """Returns whether a URL is cached and where."""
    validate_cache_url(url)
    cache = get_cache_manager(request)
    path = await cache.get_cached_file(url)
    return {
        "url": url,
        "cached": path is not None,
        "path": path,
        "downloading": cache.is_downloading(url),
    }


@router.get("/info")
async def cache_info(request: Request):
    """Returns total size, entry count and limit of the cache."""
    info = await get_cache_manager(request).info()
    return info.to_dict()


@router.post("")
async def cache_video(request: Request, body: CacheRequest):
    """
    Start caching a URL and stream progress as newline-delimited JSON.

    Each line is {"progress": float}; a failure ends the stream with
    {"error": message}.
    """
    validate_cache_url(body.url)
    cache = get_cache_manager(request)
    headers = sanitize_request_headers(body.headers)

    async def progress_lines():
        try:
            async for progress in cache.cache_video(body.url, headers=headers):
                yield json.dumps({"progress": round(progress, 4)}) + "\n"
        except CacheError as e:
            logger.warning(f"Cache request failed for {body.url[:60]}...: {e}")
            yield json.dumps({"error": str(e)}) + "\n"

    return StreamingResponse(progress_lines(), media_type="application/x-ndjson")


@router.post("/precache")
async def precache_video(request: Request, body: CacheRequest):
    """Cache a URL to completion and return the local path."""
    validate_cache_url(body.url)
    cache = get_cache_manager(request)
    try:
        path = await cache.wait_until_cached(body.url, headers=sanitize_request_headers(body.headers))
    except CacheError as e:
        raise HTTPException(status_code=502, detail=f"Cache error: {e}")
    return {"url": body.url, "path": path}


@router.delete("")
async def remove_video(request: Request, url: str = Query(...)):
    """Remove one URL from the cache."""
    validate_cache_url(url)
    removed = await get_cache_manager(request).remove_from_cache(url)
    return {"url": url, "removed": removed}


@router.delete("/all")
async def clear_cache(request: Request):
    """Delete every cached entry."""
    await get_cache_manager(request).clear_cache()
    return {"status": "cleared"}
