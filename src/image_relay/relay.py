"""End-to-end orchestration of a single image generation request."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Mapping, Optional, TypeVar

import httpx

from .config import UpstreamResponseMode
from .extraction import (
    ExtractedImage,
    InvalidImageData,
    NoImageDataFound,
    extract_images_api_payload,
    extract_markdown_image,
)
from .schemas.generation import GenerateImageRequest
from .services.storage import ImageStorage, MaterializedImage
from .sse import ProgressCallback, SseDecoder, StreamMetrics, StreamResult, accumulate_content
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RelayCancelled(Exception):
    """Raised when the inbound client went away mid-generation."""


@dataclass
class RelayStats:
    """Process-wide counters for observability."""

    requests: int = 0
    completed: int = 0
    dropped_frames: int = 0
    missing_images: int = 0
    storage_fallbacks: int = 0
    cancelled: int = 0

    def asdict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass
class GenerationOutcome:
    image: ExtractedImage
    result: MaterializedImage
    stream: Optional[StreamResult] = None
    usage: Optional[dict[str, Any]] = None


def _usage_of(body: Any) -> Optional[dict[str, Any]]:
    usage = body.get("usage") if isinstance(body, Mapping) else None
    return dict(usage) if isinstance(usage, Mapping) else None


@dataclass
class _CancelCheck:
    event: Optional[asyncio.Event] = field(default=None)

    def __call__(self) -> None:
        if self.event is not None and self.event.is_set():
            raise RelayCancelled("Client disconnected")


class StreamRelay:
    """Forward generation requests upstream and turn the reply into an image."""

    def __init__(
        self,
        upstream: UpstreamClient,
        storage: ImageStorage,
        *,
        mode: UpstreamResponseMode = UpstreamResponseMode.CHAT,
    ) -> None:
        self._upstream = upstream
        self._storage = storage
        self._mode = mode
        self.stats = RelayStats()

    @property
    def mode(self) -> UpstreamResponseMode:
        return self._mode

    @property
    def configured(self) -> bool:
        return self._upstream.configured

    async def open_passthrough(self, request: GenerateImageRequest) -> httpx.Response:
        """Open the upstream stream; raises `UpstreamError` before any streaming."""

        self.stats.requests += 1
        return await self._upstream.open_stream(self._upstream.build_payload(request))

    async def relay_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[dict[str, str], None]:
        """Re-emit each upstream `data:` payload, in order, as an SSE event.

        The upstream response is closed when the generator finishes or is
        closed early (e.g. the client disconnected).
        """

        decoder = SseDecoder(include_done=True)
        try:
            async for text in self._upstream.iter_text(response):
                for payload in decoder.feed(text):
                    yield {"event": "message", "data": payload}
            for payload in decoder.flush():
                yield {"event": "message", "data": payload}
            self.stats.completed += 1
        finally:
            await response.aclose()

    async def generate(
        self,
        request: GenerateImageRequest,
        *,
        caller_id: Optional[str],
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationOutcome:
        """Run the whole pipeline server-side and materialize the image."""

        self.stats.requests += 1
        check = _CancelCheck(cancel_event)
        stream_result: Optional[StreamResult] = None
        usage: Optional[dict[str, Any]] = None

        try:
            if self._mode is UpstreamResponseMode.IMAGES_API:
                body = await self._until_cancelled(
                    self._upstream.generate_images(request), cancel_event
                )
                usage = _usage_of(body)
                image = self._checked(extract_images_api_payload(body), repr(body))
            else:
                stream_result = await self._stream_content(request, on_progress, check)
                usage = stream_result.usage
                image = self._checked(
                    extract_markdown_image(stream_result.content), stream_result.content
                )
            check()
        except NoImageDataFound:
            self.stats.missing_images += 1
            raise
        except (RelayCancelled, asyncio.CancelledError):
            self.stats.cancelled += 1
            logger.info("Generation cancelled by client disconnect")
            raise

        result = await self._storage.materialize(image, caller_id=caller_id)
        if image.is_inline and not result.stored:
            self.stats.storage_fallbacks += 1
        self.stats.completed += 1
        return GenerationOutcome(
            image=image, result=result, stream=stream_result, usage=usage
        )

    async def _stream_content(
        self,
        request: GenerateImageRequest,
        on_progress: Optional[ProgressCallback],
        check: _CancelCheck,
    ) -> StreamResult:
        payload = self._upstream.build_payload(request)
        metrics = StreamMetrics()
        try:
            async with self._upstream.stream_chat(payload) as response:
                check()
                result = await accumulate_content(
                    self._upstream.iter_text(response),
                    on_progress=on_progress,
                    metrics=metrics,
                    check=check,
                )
        finally:
            self.stats.dropped_frames += metrics.dropped_frames
        logger.info(
            "Upstream stream finished: %d frames, %d fragments, %d dropped, %d chars",
            metrics.frames,
            metrics.content_fragments,
            metrics.dropped_frames,
            len(result.content),
        )
        return result

    @staticmethod
    def _checked(image: ExtractedImage, content: str) -> ExtractedImage:
        if image.is_inline:
            try:
                image.decode()
            except InvalidImageData as exc:
                raise NoImageDataFound(content, f"No image data found: {exc}") from exc
        return image

    @staticmethod
    async def _until_cancelled(
        awaitable: Awaitable[T], cancel_event: Optional[asyncio.Event]
    ) -> T:
        if cancel_event is None:
            return await awaitable
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (waiter, work):
                if not task.done():
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task
        if work.cancelled() or cancel_event.is_set():
            raise RelayCancelled("Client disconnected")
        return work.result()


__all__ = [
    "GenerationOutcome",
    "RelayCancelled",
    "RelayStats",
    "StreamRelay",
]
