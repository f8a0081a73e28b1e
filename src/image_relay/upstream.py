"""Upstream image-provider client utilities."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Optional, Sequence

import httpx
from fastapi import status

from .config import Settings
from .prompting import compose_prompt
from .schemas.generation import GenerateImageRequest

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Wrap transport or API failures when communicating with the provider."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail

    @property
    def message(self) -> str:
        if isinstance(self.detail, str):
            return self.detail
        return json.dumps(self.detail, ensure_ascii=False, default=str)


def build_message_content(
    prompt: str, image_inputs: Sequence[str] = ()
) -> list[dict[str, Any]]:
    """Return the chat content list: text first, then each image in order."""

    content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for url in image_inputs:
        content.append({"type": "image_url", "image_url": {"url": url}})
    return content


def build_chat_payload(
    prompt: str,
    image_inputs: Sequence[str] = (),
    *,
    model: str,
    temperature: float,
    top_p: float,
) -> dict[str, Any]:
    return {
        "model": model,
        "temperature": temperature,
        "top_p": top_p,
        "messages": [
            {"role": "user", "content": build_message_content(prompt, image_inputs)}
        ],
        "stream": True,
        "stream_options": {"include_usage": True},
    }


def preview_url(url: str) -> str:
    if url.startswith("data:"):
        return f"{url[:40]}...[{len(url)} chars]"
    return url if len(url) <= 100 else url[:100] + "..."


class UpstreamClient:
    """Client responsible for calling the chat-completions image provider."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def configured(self) -> bool:
        key = self._settings.image_api_key
        return key is not None and bool(key.get_secret_value())

    @property
    def _headers(self) -> dict[str, str]:
        api_key = self._settings.image_api_key
        secret = api_key.get_secret_value() if api_key is not None else ""
        return {
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @property
    def _base_url(self) -> str:
        return self._settings.upstream_base_url

    def build_payload(self, request: GenerateImageRequest) -> dict[str, Any]:
        """Build the streaming chat payload for a validated request."""

        prompt = request.prompt.strip()
        if self._settings.prompt_template_enabled:
            prompt = compose_prompt(prompt)
        images = request.accepted_image_inputs(self._settings.max_image_inputs)
        logger.debug(
            "Upstream payload: prompt=%d chars, images=[%s]",
            len(prompt),
            ", ".join(preview_url(url) for url in images),
        )
        return build_chat_payload(
            prompt,
            images,
            model=request.model or self._settings.image_chat_model,
            temperature=self._settings.temperature,
            top_p=self._settings.top_p,
        )

    async def open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        """Send a streaming request and return the response once headers arrive.

        Non-success statuses are read, closed and raised as `UpstreamError`
        before any body is streamed. The caller owns the returned response and
        must close it.
        """

        url = f"{self._base_url}/v1/chat/completions"
        client = await self._get_http_client()
        request = client.build_request("POST", url, headers=self._headers, json=payload)
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            detail = self._extract_error_detail(body)
            logger.error(
                "Upstream rejected request: %s %s", response.status_code, detail
            )
            raise UpstreamError(response.status_code, detail)
        return response

    @asynccontextmanager
    async def stream_chat(
        self, payload: dict[str, Any]
    ) -> AsyncIterator[httpx.Response]:
        response = await self.open_stream(payload)
        try:
            yield response
        finally:
            await response.aclose()

    @staticmethod
    async def iter_text(response: httpx.Response) -> AsyncGenerator[str, None]:
        """Yield decoded text chunks, mapping transport failures."""

        try:
            async for chunk in response.aiter_text():
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def generate_images(self, request: GenerateImageRequest) -> Any:
        """Call the non-streaming `/v1/images/generations` endpoint.

        Returns the decoded JSON body, which is not guaranteed to be an object.
        """

        url = f"{self._base_url}/v1/images/generations"
        headers = dict(self._headers)
        headers["Accept"] = "application/json"
        payload = {
            "model": request.model or self._settings.image_images_model,
            "prompt": request.prompt.strip(),
            "n": request.n,
            "size": request.size,
            "response_format": "b64_json",
        }

        client = await self._get_http_client()
        try:
            response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise UpstreamError(response.status_code, detail)

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Error closing upstream client", exc_info=True)

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Upstream returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = [
    "UpstreamClient",
    "UpstreamError",
    "build_chat_payload",
    "build_message_content",
    "preview_url",
]
