from __future__ import annotations

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TINY_PNG_B64, FakeBucket, make_settings, make_storage
from image_relay.app import create_app
from image_relay.auth import IdentityClient

PNG_URI = f"data:image/png;base64,{TINY_PNG_B64}"


def identity_handler(request: httpx.Request) -> httpx.Response:
    if request.headers.get("Authorization") == "Bearer good-token":
        return httpx.Response(200, json={"id": "user-9"})
    return httpx.Response(401, json={"msg": "bad token"})


@pytest.fixture
def bucket() -> FakeBucket:
    return FakeBucket("wedding-bucket")


@pytest.fixture
def upload_client(bucket: FakeBucket) -> Generator[TestClient, None, None]:
    settings = make_settings()
    app = create_app(
        settings=settings,
        identity_client=IdentityClient(
            settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(identity_handler)),
        ),
        image_storage=make_storage(bucket),
    )
    with TestClient(app) as client:
        yield client


def test_upload_stores_image_under_caller(upload_client: TestClient, bucket: FakeBucket) -> None:
    response = upload_client.post(
        "/api/upload-image",
        json={"image": PNG_URI, "folder": "guests"},
        headers={"Authorization": "Bearer good-token"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["bucket"] == "wedding-bucket"
    assert body["object_name"].startswith("guests/user-9/")
    assert body["url"] == body["signed_url"]
    assert body["url"].startswith(f"https://signed/{body['object_name']}")
    assert list(bucket.uploads) == [body["object_name"]]


def test_upload_without_auth_is_stored_anonymously(upload_client: TestClient) -> None:
    response = upload_client.post("/api/upload-image", json={"image": PNG_URI})

    assert response.status_code == 200
    assert response.json()["object_name"].startswith("uploads/anonymous/")


def test_upload_rejects_invalid_data_uri(upload_client: TestClient, bucket: FakeBucket) -> None:
    response = upload_client.post("/api/upload-image", json={"image": "https://example.com/a.png"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid base64 image data URI"}
    assert bucket.uploads == {}


def test_upload_rejects_unsafe_folder(upload_client: TestClient) -> None:
    response = upload_client.post("/api/upload-image", json={"image": PNG_URI, "folder": "../x"})

    assert response.status_code == 400


def test_upload_without_storage_is_unavailable(upload_client: TestClient, bucket: FakeBucket) -> None:
    bucket.available = False

    response = upload_client.post("/api/upload-image", json={"image": PNG_URI})

    assert response.status_code == 503
    assert "not configured" in response.json()["error"]
