"""Extract generated images from upstream responses."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .config import UpstreamResponseMode

EXCERPT_LENGTH = 500

# Markdown image whose target is an inline base64 data URI. The payload may be
# wrapped across lines, so whitespace is allowed up to the closing paren.
_MARKDOWN_IMAGE_PATTERN = re.compile(
    r"!\[[^\]]*\]\(\s*data:\s*image/([^;\s)]+);\s*base64,\s*([^)]+)\)",
    re.IGNORECASE,
)
_WHITESPACE = re.compile(r"\s+")
_DATA_URI_PATTERN = re.compile(
    r"^data:image/([a-zA-Z0-9.+-]+);base64,(.+)$",
    re.DOTALL,
)

_MAGIC_SUBTYPES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
)


class NoImageDataFound(Exception):
    """Raised when an upstream response contains no extractable image."""

    def __init__(self, content: str, message: str = "No image data found"):
        super().__init__(message)
        self.excerpt = excerpt(content)


class InvalidImageData(ValueError):
    """Raised when a data URI cannot be decoded as an image."""


@dataclass(frozen=True)
class ExtractedImage:
    """A generated image, either inline base64 or a remote URL."""

    mime_subtype: str
    base64_payload: str
    data_url: str
    remote_url: Optional[str] = None

    @property
    def mime_type(self) -> str:
        return f"image/{self.mime_subtype}"

    @property
    def is_inline(self) -> bool:
        return bool(self.base64_payload)

    def decode(self) -> bytes:
        try:
            return base64.b64decode(self.base64_payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidImageData(f"Invalid base64 image payload: {exc}") from exc

    @classmethod
    def inline(cls, mime_subtype: str, payload: str) -> "ExtractedImage":
        subtype = mime_subtype.strip().lower()
        cleaned = _WHITESPACE.sub("", payload)
        return cls(
            mime_subtype=subtype,
            base64_payload=cleaned,
            data_url=f"data:image/{subtype};base64,{cleaned}",
        )


def excerpt(content: str, limit: int = EXCERPT_LENGTH) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def extract_markdown_image(content: str) -> ExtractedImage:
    """Return the first Markdown-embedded base64 image in ``content``."""

    match = _MARKDOWN_IMAGE_PATTERN.search(content or "")
    if match is None:
        raise NoImageDataFound(content or "")
    subtype, payload = match.group(1), match.group(2)
    image = ExtractedImage.inline(subtype, payload)
    if not image.base64_payload:
        raise NoImageDataFound(content)
    return image


def parse_data_url(data_url: str) -> ExtractedImage:
    """Parse a `data:image/<type>;base64,<payload>` string."""

    match = _DATA_URI_PATTERN.match((data_url or "").strip())
    if match is None:
        raise InvalidImageData("Invalid base64 image data URI")
    image = ExtractedImage.inline(match.group(1), match.group(2))
    image.decode()
    return image


def sniff_subtype(data: bytes, default: str = "png") -> str:
    for magic, subtype in _MAGIC_SUBTYPES:
        if data.startswith(magic):
            return subtype
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return default


def extract_images_api_payload(body: Any) -> ExtractedImage:
    """Return the first image from an `/images/generations` response body."""

    items = body.get("data") if isinstance(body, Mapping) else None
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, Mapping):
                continue
            b64 = item.get("b64_json")
            if isinstance(b64, str) and b64.strip():
                cleaned = _WHITESPACE.sub("", b64)
                try:
                    head = base64.b64decode(cleaned[:64] + "=" * (-len(cleaned[:64]) % 4))
                except (binascii.Error, ValueError):
                    head = b""
                return ExtractedImage.inline(sniff_subtype(head), cleaned)
        for item in items:
            if not isinstance(item, Mapping):
                continue
            url = item.get("url")
            if isinstance(url, str) and url:
                if url.startswith("data:image/"):
                    return parse_data_url(url)
                return ExtractedImage(
                    mime_subtype="png",
                    base64_payload="",
                    data_url="",
                    remote_url=url,
                )
    raise NoImageDataFound(repr(body))


Extractor = Callable[[Any], ExtractedImage]

EXTRACTORS: dict[UpstreamResponseMode, Extractor] = {
    UpstreamResponseMode.CHAT: extract_markdown_image,
    UpstreamResponseMode.IMAGES_API: extract_images_api_payload,
}


def extractor_for(mode: UpstreamResponseMode) -> Extractor:
    return EXTRACTORS[mode]


__all__ = [
    "EXTRACTORS",
    "ExtractedImage",
    "InvalidImageData",
    "NoImageDataFound",
    "excerpt",
    "extract_images_api_payload",
    "extract_markdown_image",
    "extractor_for",
    "parse_data_url",
    "sniff_subtype",
]
