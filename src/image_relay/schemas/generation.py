"""Pydantic models for image generation requests and responses."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

IMAGE_DATA_URI_PREFIX = "data:image/"
MAX_PROMPT_LENGTH = 1500


class GenerateImageRequest(BaseModel):
    """Incoming generation request payload."""

    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_LENGTH)
    image_inputs: Optional[List[str]] = None
    model: Optional[str] = None

    # Images API mode only
    n: int = Field(default=1, ge=1, le=8)
    size: Literal["256x256", "512x512", "1024x1024"] = "1024x1024"

    model_config = ConfigDict(extra="ignore")

    @field_validator("prompt", mode="before")
    @classmethod
    def _strip_prompt(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("model", mode="before")
    @classmethod
    def _blank_model_is_default(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def accepted_image_inputs(self, limit: int = 3) -> list[str]:
        """Return inline image references to forward, in input order.

        References that are not image data URIs are dropped, as is anything
        beyond ``limit``.
        """

        picked = [
            item
            for item in self.image_inputs or []
            if isinstance(item, str) and item.startswith(IMAGE_DATA_URI_PREFIX)
        ]
        return picked[: max(0, limit)]


class UploadImageRequest(BaseModel):
    """Inline image upload payload."""

    image: str = Field(..., min_length=1)
    folder: Optional[str] = Field(default=None, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")


class ImageResultItem(BaseModel):
    url: str
    signed_url: Optional[str] = None
    public_url: Optional[str] = None
    object_name: Optional[str] = None
    stored: bool = False


class ImageResultData(BaseModel):
    data: List[ImageResultItem]


class GenerateImageResponse(BaseModel):
    """Non-streaming response envelope: `{data: {data: [{url}]}}`."""

    data: ImageResultData
    usage: Optional[Dict[str, Any]] = None


class UploadImageResponse(BaseModel):
    success: bool = True
    url: str
    public_url: Optional[str] = None
    signed_url: Optional[str] = None
    object_name: Optional[str] = None
    bucket: Optional[str] = None


__all__ = [
    "GenerateImageRequest",
    "GenerateImageResponse",
    "IMAGE_DATA_URI_PREFIX",
    "ImageResultData",
    "ImageResultItem",
    "MAX_PROMPT_LENGTH",
    "UploadImageRequest",
    "UploadImageResponse",
]
