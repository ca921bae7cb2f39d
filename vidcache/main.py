"""
Video Cache - Main Application

Entry point for the FastAPI application exposing the cache engine.
Most logic lives in:
- core/: Configuration, errors and URL validation
- services/: Key derivation, cache store, downloads, HLS mirroring
- api/routes/: REST API endpoints
"""
import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vidcache.api.routes.cache import router as cache_router
from vidcache.services.manager import VideoCacheManager

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Allowed origins for CORS (set via environment variable, comma-separated)
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "").split(",") if os.environ.get("ALLOWED_ORIGINS") else ["*"]


def create_app(cache_manager: Optional[VideoCacheManager] = None) -> FastAPI:
    """Build the application around one cache manager instance."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - close the download client on shutdown."""
        logger.info(f"Video cache at {app.state.cache_manager.cache_directory}")
        yield
        await app.state.cache_manager.aclose()
        logger.info("Closed cache HTTP client")

    app = FastAPI(title="Video Cache", lifespan=lifespan)
    app.state.cache_manager = cache_manager or VideoCacheManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True if ALLOWED_ORIGINS != ["*"] else False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(cache_router)

    @app.get("/")
    def read_root():
        return {"status": "ok", "service": "vidcache"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
