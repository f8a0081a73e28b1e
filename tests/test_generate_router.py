from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Generator
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

import image_relay.routers.generate as generate_routes
from conftest import (
    TINY_PNG_B64,
    FakeBucket,
    chat_chunk,
    image_markdown,
    make_settings,
    make_storage,
    sse_stream,
)
from image_relay.app import create_app
from image_relay.auth import IdentityClient
from image_relay.rate_limit import InMemoryRateLimiter
from image_relay.upstream import UpstreamClient

AUTH = {"Authorization": "Bearer good-token"}

UpstreamHandler = Callable[[httpx.Request], Any]


def identity_handler(request: httpx.Request) -> httpx.Response:
    if request.headers.get("Authorization") == "Bearer good-token":
        return httpx.Response(200, json={"id": "user-1", "email": "couple@example.com"})
    return httpx.Response(401, json={"msg": "bad token"})


def cat_stream_handler(request: httpx.Request) -> httpx.Response:
    body = sse_stream(
        chat_chunk("Here you go. "),
        chat_chunk(image_markdown(), finish_reason="stop"),
        json.dumps({"choices": [], "usage": {"total_tokens": 42}}),
    )
    return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


class Harness:
    def __init__(self, **settings_overrides: Any) -> None:
        self.upstream_handler: UpstreamHandler = cat_stream_handler
        self.upstream_requests: list[httpx.Request] = []
        self.bucket = FakeBucket(available=False)

        def _upstream(request: httpx.Request) -> Any:
            self.upstream_requests.append(request)
            return self.upstream_handler(request)

        settings = make_settings(**settings_overrides)
        self.app = create_app(
            settings=settings,
            rate_limiter=InMemoryRateLimiter(window_seconds=60, max_requests=5),
            identity_client=IdentityClient(
                settings,
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(identity_handler)),
            ),
            upstream_client=UpstreamClient(
                settings,
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(_upstream)),
            ),
            image_storage=make_storage(self.bucket),
        )


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def client(harness: Harness) -> Generator[TestClient, None, None]:
    with TestClient(harness.app) as test_client:
        yield test_client


def test_missing_token_is_unauthorized(client: TestClient, harness: Harness) -> None:
    response = client.post("/api/generate-image", json={"prompt": "a cat"})

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert harness.upstream_requests == []


def test_invalid_token_is_unauthorized(client: TestClient) -> None:
    response = client.post(
        "/api/generate-image",
        json={"prompt": "a cat"},
        headers={"Authorization": "Bearer nope"},
    )

    assert response.status_code == 401
    assert "error" in response.json()


def test_sixth_request_in_window_is_throttled(client: TestClient, harness: Harness) -> None:
    for _ in range(5):
        assert client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH).status_code == 200

    response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 429
    assert response.json() == {"error": "Too Many Requests"}
    assert 1 <= int(response.headers["Retry-After"]) <= 60
    assert len(harness.upstream_requests) == 5


@pytest.mark.parametrize("prompt", ["", "   "])
def test_empty_prompt_is_rejected(client: TestClient, harness: Harness, prompt: str) -> None:
    response = client.post("/api/generate-image", json={"prompt": prompt}, headers=AUTH)

    assert response.status_code == 400
    assert "prompt" in response.json()["error"]
    assert harness.upstream_requests == []


def test_overlong_prompt_is_rejected(client: TestClient) -> None:
    response = client.post("/api/generate-image", json={"prompt": "x" * 1501}, headers=AUTH)

    assert response.status_code == 400


def test_missing_service_key_is_server_error() -> None:
    harness = Harness(image_api_key=None)
    with TestClient(harness.app) as client:
        response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 500
    assert "IMAGE_API_KEY" in response.json()["error"]


def test_missing_identity_settings_is_server_error() -> None:
    harness = Harness(supabase_anon_key=None)
    with TestClient(harness.app) as client:
        response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 500
    assert "Supabase" in response.json()["error"]


def test_generate_image_returns_inline_url_without_storage(client: TestClient) -> None:
    response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    item = body["data"]["data"][0]
    assert item["url"] == f"data:image/png;base64,{TINY_PNG_B64}"
    assert item["stored"] is False
    assert "signed_url" not in item
    assert body["usage"] == {"total_tokens": 42}


def test_generate_image_returns_signed_url_when_stored(harness: Harness) -> None:
    harness.bucket.available = True

    with TestClient(harness.app) as client:
        response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    item = response.json()["data"]["data"][0]
    assert item["stored"] is True
    assert item["url"] == item["signed_url"]
    assert item["url"].startswith("https://signed/generated/user-1/")


def test_upstream_error_status_and_detail_pass_through(client: TestClient, harness: Harness) -> None:
    harness.upstream_handler = lambda request: httpx.Response(
        402, json={"error": "Insufficient credits"}
    )

    response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 402
    assert response.json() == {"error": "Insufficient credits"}


def test_stream_without_image_is_bad_gateway(client: TestClient, harness: Harness) -> None:
    harness.upstream_handler = lambda request: httpx.Response(
        200, content=sse_stream(chat_chunk("Sorry, no picture today."), chat_chunk(finish_reason="stop"))
    )

    response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "No image data found"
    assert body["content_excerpt"] == "Sorry, no picture today."


def test_generate_stream_relays_frames_and_done(client: TestClient, harness: Harness) -> None:
    response = client.post(
        "/api/generate-stream",
        json={"prompt": "a cat", "image_inputs": [f"data:image/png;base64,{TINY_PNG_B64}"]},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    text = response.text
    assert "Here you go." in text
    assert TINY_PNG_B64 in text
    assert text.index("Here you go.") < text.index(TINY_PNG_B64)
    assert "data: [DONE]" in text

    sent = json.loads(harness.upstream_requests[0].content)
    assert sent["stream"] is True
    assert len(sent["messages"][0]["content"]) == 2


def test_generate_stream_upstream_rejection_is_json_error(client: TestClient, harness: Harness) -> None:
    harness.upstream_handler = lambda request: httpx.Response(500, text="boom")

    response = client.post("/api/generate-stream", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {"error": "boom"}


def test_health_reports_configuration(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["response_mode"] == "chat"
    assert body["storage"] == "inline"
    assert body["stats"]["requests"] == 0


def test_client_disconnect_during_generation_is_499(
    monkeypatch, client: TestClient, harness: Harness
) -> None:
    async def disconnected_at_once(request, event: asyncio.Event) -> None:
        event.set()

    async def slow_upstream(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        return cat_stream_handler(request)

    monkeypatch.setattr(generate_routes, "_watch_disconnect", disconnected_at_once)
    harness.upstream_handler = slow_upstream

    response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 499
    assert response.json() == {"error": "Client closed request"}
    assert harness.bucket.uploads == {}
    assert client.get("/health").json()["stats"]["cancelled"] == 1


def test_client_disconnect_in_images_mode_is_499(monkeypatch) -> None:
    harness = Harness(response_mode="images")

    async def disconnected_soon(request, event: asyncio.Event) -> None:
        await asyncio.sleep(0.05)
        event.set()

    async def slow_images(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"data": [{"b64_json": TINY_PNG_B64}]})

    monkeypatch.setattr(generate_routes, "_watch_disconnect", disconnected_soon)
    harness.upstream_handler = slow_images

    with TestClient(harness.app) as client:
        response = client.post("/api/generate-image", json={"prompt": "a cat"}, headers=AUTH)

    assert response.status_code == 499
    assert response.json() == {"error": "Client closed request"}
