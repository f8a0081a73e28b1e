import json
import pathlib
import sys
from datetime import timedelta
from typing import Any, Optional

import pytest
from pydantic import AnyHttpUrl, SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from image_relay.config import Settings  # noqa: E402
from image_relay.services.storage import ImageStorage  # noqa: E402

# 1x1 transparent PNG
TINY_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_sse_exit_event():
    """sse-starlette caches an exit event bound to the first event loop."""

    from sse_starlette import sse

    app_status = getattr(sse, "AppStatus", None)
    if getattr(app_status, "should_exit_event", None) is not None:
        app_status.should_exit_event = None
    yield


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "image_api_key": SecretStr("service-key"),
        "image_api_base_url": AnyHttpUrl("https://upstream.example.com"),
        "supabase_url": AnyHttpUrl("https://identity.example.com"),
        "supabase_anon_key": SecretStr("anon-key"),
        "google_application_credentials": PROJECT_ROOT / "missing-sa.json",
    }
    values.update(overrides)
    return Settings(**values)


def chat_chunk(content: Optional[str] = None, finish_reason: Optional[str] = None) -> str:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    return json.dumps({"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]})


def sse_stream(*payloads: str, done: bool = True) -> bytes:
    frames = [f"data: {payload}\n\n" for payload in payloads]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def image_markdown(b64: str = TINY_PNG_B64, subtype: str = "png") -> str:
    return f"![image](data:image/{subtype};base64,{b64})"


class FakeBucket:
    """In-memory stand-in for `GcsBucket`."""

    def __init__(self, name: str = "bucket", *, available: bool = True) -> None:
        self.name = name
        self.available = available
        self.uploads: dict[str, tuple[bytes, str]] = {}
        self.upload_error: Optional[Exception] = None
        self.sign_error: Optional[Exception] = None

    def upload(self, object_name: str, data: bytes, *, content_type: str) -> None:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads[object_name] = (data, content_type)

    def signed_url(self, object_name: str, *, expires_in: timedelta) -> str:
        if self.sign_error is not None:
            raise self.sign_error
        return f"https://signed/{object_name}?ttl={int(expires_in.total_seconds())}"

    def public_url(self, object_name: str) -> str:
        return f"https://public/{object_name}"


def make_storage(bucket: Optional[FakeBucket] = None, folder: str = "generated") -> ImageStorage:
    return ImageStorage(
        bucket or FakeBucket(),  # type: ignore[arg-type]
        folder=folder,
        signed_url_ttl=timedelta(hours=1),
    )
