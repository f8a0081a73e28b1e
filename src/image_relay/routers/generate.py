"""Image generation API routes."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import suppress
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..auth import AuthError, CallerIdentity, ConfigurationError, IdentityClient
from ..extraction import NoImageDataFound
from ..rate_limit import RateLimiter, RateLimitExceeded, enforce_rate_limit
from ..relay import RelayCancelled, StreamRelay
from ..schemas.generation import (
    GenerateImageRequest,
    GenerateImageResponse,
    ImageResultData,
    ImageResultItem,
)
from ..upstream import UpstreamError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["generate"])

DISCONNECT_POLL_SECONDS = 0.5
# Nginx-style status for requests abandoned by the client.
CLIENT_CLOSED_REQUEST = 499


def _request_id() -> str:
    return f"gen_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def get_relay(request: Request) -> StreamRelay:
    relay = getattr(request.app.state, "stream_relay", None)
    if relay is None:
        raise HTTPException(status_code=500, detail="Stream relay unavailable")
    return relay


def get_identity_client(request: Request) -> IdentityClient:
    client = getattr(request.app.state, "identity_client", None)
    if client is None:
        raise HTTPException(status_code=500, detail="Identity client unavailable")
    return client


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise HTTPException(status_code=500, detail="Rate limiter unavailable")
    return limiter


async def require_caller(
    authorization: Optional[str] = Header(default=None),
    relay: StreamRelay = Depends(get_relay),
    identity: IdentityClient = Depends(get_identity_client),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> CallerIdentity:
    """Authenticate the caller and charge one request against their window."""

    if not relay.configured:
        logger.error("IMAGE_API_KEY is not configured")
        raise HTTPException(
            status_code=500, detail="Server misconfigured: IMAGE_API_KEY is missing"
        )

    try:
        caller = await identity.authenticate(authorization)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.detail,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    try:
        decision = await enforce_rate_limit(limiter, caller.user_id)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too Many Requests",
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc

    logger.debug(
        "Rate limit check passed for %s: %d/%d",
        caller.user_id,
        decision.count,
        decision.limit,
    )
    return caller


def _error_chunk(message: str) -> dict[str, str]:
    chunk = {"choices": [{"delta": {"content": f"Error: {message}"}}]}
    return {"event": "message", "data": json.dumps(chunk)}


@router.post("/generate-stream", response_model=None, status_code=200)
async def generate_stream(
    payload: GenerateImageRequest,
    caller: CallerIdentity = Depends(require_caller),
    relay: StreamRelay = Depends(get_relay),
) -> EventSourceResponse:
    """Relay the upstream chat-completion stream through Server-Sent Events."""

    request_id = _request_id()
    logger.info(
        "[%s] Streaming generation for %s (prompt=%d chars, images=%d)",
        request_id,
        caller.user_id,
        len(payload.prompt),
        len(payload.image_inputs or []),
    )

    try:
        upstream_response = await relay.open_passthrough(payload)
    except UpstreamError as exc:
        logger.error("[%s] Upstream error %s: %s", request_id, exc.status_code, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    async def event_publisher():
        try:
            async for event in relay.relay_events(upstream_response):
                yield event
        except UpstreamError as exc:
            logger.warning("[%s] Upstream stream failed: %s", request_id, exc.message)
            yield _error_chunk(exc.message)
            yield {"event": "message", "data": "[DONE]"}
        except asyncio.CancelledError:
            logger.info("[%s] Client disconnected; upstream stream closed", request_id)
            raise

    return EventSourceResponse(event_publisher())


async def _watch_disconnect(request: Request, event: asyncio.Event) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    event.set()


@router.post(
    "/generate-image",
    response_model=GenerateImageResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def generate_image(
    payload: GenerateImageRequest,
    request: Request,
    caller: CallerIdentity = Depends(require_caller),
    relay: StreamRelay = Depends(get_relay),
):
    """Generate an image server-side and return where it can be fetched."""

    request_id = _request_id()
    logger.info(
        "[%s] Generating image for %s (mode=%s)",
        request_id,
        caller.user_id,
        relay.mode.value,
    )

    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        outcome = await relay.generate(
            payload,
            caller_id=caller.user_id,
            cancel_event=cancel_event,
        )
    except UpstreamError as exc:
        logger.error("[%s] Upstream error %s: %s", request_id, exc.status_code, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    except NoImageDataFound as exc:
        logger.error("[%s] %s; content excerpt: %r", request_id, exc, exc.excerpt[:200])
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": str(exc), "content_excerpt": exc.excerpt},
        )
    except RelayCancelled:
        return JSONResponse(
            status_code=CLIENT_CLOSED_REQUEST,
            content={"error": "Client closed request"},
        )
    except Exception as exc:
        logger.exception("[%s] Unexpected generation failure", request_id)
        raise HTTPException(status_code=500, detail=str(exc) or "Unexpected error") from exc
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher

    result = outcome.result
    logger.info(
        "[%s] Generation complete (stored=%s, object=%s)",
        request_id,
        result.stored,
        result.object_name,
    )
    item = ImageResultItem(
        url=result.url,
        signed_url=result.signed_url,
        public_url=result.public_url,
        object_name=result.object_name,
        stored=result.stored,
    )
    return GenerateImageResponse(
        data=ImageResultData(data=[item]),
        usage=outcome.usage,
    )


__all__ = [
    "get_identity_client",
    "get_rate_limiter",
    "get_relay",
    "require_caller",
    "router",
]
