"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import IdentityClient
from .config import Settings, get_settings
from .rate_limit import InMemoryRateLimiter, RateLimiter
from .relay import StreamRelay
from .routers.generate import router as generate_router
from .routers.uploads import router as uploads_router
from .services.gcs import GcsBucket
from .services.storage import ImageStorage
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Always add console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    logging.getLogger("image_relay").setLevel(log_level)

    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Quiet down noisy third-party libraries
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("hpack").setLevel(logging.WARNING)


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    message = str(first.get("msg") or "Invalid request")
    return f"{'.'.join(loc)}: {message}" if loc else message


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": _first_validation_message(exc)},
        )


def create_app(
    *,
    settings: Optional[Settings] = None,
    rate_limiter: Optional[RateLimiter] = None,
    identity_client: Optional[IdentityClient] = None,
    upstream_client: Optional[UpstreamClient] = None,
    image_storage: Optional[ImageStorage] = None,
) -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = settings or get_settings()

    upstream = upstream_client or UpstreamClient(settings)
    storage = image_storage or ImageStorage(
        GcsBucket.from_settings(settings),
        folder=settings.storage_folder,
        signed_url_ttl=settings.signed_url_ttl,
    )
    relay = StreamRelay(upstream, storage, mode=settings.response_mode)
    limiter = rate_limiter or InMemoryRateLimiter(
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
    )
    identity = identity_client or IdentityClient(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not upstream.configured:
            logger.warning("IMAGE_API_KEY is not set; generation requests will fail")
        if not identity.configured:
            logger.warning("Identity service is not configured; requests will fail")
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(UpstreamClient.aclose_shared(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Upstream client shutdown timed out after 10s")

    app = FastAPI(
        title="Wedding Image Relay",
        version="0.1.0",
        description="Streaming image-generation relay with auth and rate limiting.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.stream_relay = relay
    app.state.image_storage = storage
    app.state.rate_limiter = limiter
    app.state.identity_client = identity

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    _install_error_handlers(app)

    app.include_router(generate_router)
    app.include_router(uploads_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, Any]:
        return {
            "status": "ok",
            "model": settings.default_model,
            "response_mode": settings.response_mode.value,
            "storage": "gcs" if storage.available else "inline",
            "stats": relay.stats.asdict(),
        }

    return app


__all__ = ["create_app"]
