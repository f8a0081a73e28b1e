"""Async client for consuming the `/api/generate-stream` relay."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional, Sequence, Union

import httpx

from .extraction import ExtractedImage, NoImageDataFound, extract_markdown_image
from .sse import ProgressCallback, accumulate_content

logger = logging.getLogger(__name__)

# The relay reports failures after streaming starts as a content chunk.
RELAY_ERROR_PREFIX = "Error:"

StreamStatus = Literal["connecting", "streaming", "parsing", "completed", "error"]
StatusCallback = Callable[[StreamStatus], None]
TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


class StreamClientError(Exception):
    """Raised when the relay cannot be reached or rejects the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class StreamImageResult:
    content: str
    image: Optional[ExtractedImage] = None


class ImageStreamClient:
    """Call the relay, report progress, and extract the final image."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 300.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._http_client = http_client
        self._timeout = timeout

    async def _token(self) -> Optional[str]:
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token

    async def generate(
        self,
        prompt: str,
        *,
        image_inputs: Sequence[str] = (),
        model: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> StreamImageResult:
        def _status(value: StreamStatus) -> None:
            if on_status is not None:
                on_status(value)

        _status("connecting")
        token = await self._token()
        if not token:
            _status("error")
            raise StreamClientError("Not signed in or session expired")

        body: dict[str, object] = {"prompt": prompt, "image_inputs": list(image_inputs)}
        if model:
            body["model"] = model

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            async with client.stream(
                "POST",
                f"{self._base_url}/api/generate-stream",
                json=body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "text/event-stream",
                },
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    _status("error")
                    raise StreamClientError(
                        f"API request failed: {response.status_code} {detail}",
                        status_code=response.status_code,
                    )
                _status("streaming")
                result = await accumulate_content(
                    response.aiter_bytes(), on_progress=on_progress
                )
        except httpx.HTTPError as exc:
            _status("error")
            raise StreamClientError(str(exc)) from exc
        finally:
            if self._http_client is None:
                await client.aclose()

        _status("parsing")
        try:
            image: Optional[ExtractedImage] = extract_markdown_image(result.content)
        except NoImageDataFound:
            if result.content.startswith(RELAY_ERROR_PREFIX):
                _status("error")
                raise StreamClientError(
                    result.content[len(RELAY_ERROR_PREFIX):].strip() or "Generation failed"
                )
            logger.warning("Stream finished without image data: %r", result.content[:200])
            image = None
        _status("completed")
        return StreamImageResult(content=result.content, image=image)


__all__ = [
    "ImageStreamClient",
    "StreamClientError",
    "StreamImageResult",
    "StreamStatus",
]
