"""Application configuration using environment variables."""

from datetime import timedelta
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class UpstreamResponseMode(str, Enum):
    """How the upstream provider returns generated images."""

    CHAT = "chat"
    IMAGES_API = "images"


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    image_api_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.aioec.tech"),
        validation_alias=AliasChoices("IMAGE_API_BASE_URL", "image_api_base_url"),
    )
    # Optional so the app can boot; requests fail with 500 until configured.
    image_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("IMAGE_API_KEY", "image_api_key"),
    )
    image_chat_model: str = Field(
        default="gemini-2.5-flash-image",
        validation_alias=AliasChoices("IMAGE_CHAT_MODEL", "image_chat_model"),
    )
    image_images_model: str = Field(
        default="dall-e-3",
        validation_alias=AliasChoices(
            "IMAGE_IMAGES_MODEL",
            "OPENAI_IMAGE_MODEL",
            "image_images_model",
        ),
    )
    response_mode: UpstreamResponseMode = Field(
        default=UpstreamResponseMode.CHAT,
        validation_alias=AliasChoices("IMAGE_RESPONSE_MODE", "response_mode"),
    )
    temperature: float = Field(
        default=0.2,
        ge=0,
        le=2,
        validation_alias=AliasChoices("IMAGE_TEMPERATURE", "temperature"),
    )
    top_p: float = Field(
        default=0.7,
        gt=0,
        le=1,
        validation_alias=AliasChoices("IMAGE_TOP_P", "top_p"),
    )
    prompt_template_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "IMAGE_PROMPT_TEMPLATE_ENABLED",
            "prompt_template_enabled",
        ),
    )
    request_timeout: float = Field(
        default=180.0,
        ge=1,
        validation_alias=AliasChoices("IMAGE_API_TIMEOUT", "request_timeout"),
    )
    max_image_inputs: int = Field(
        default=3,
        ge=0,
        validation_alias=AliasChoices("MAX_IMAGE_INPUTS", "max_image_inputs"),
    )

    # Identity service (Supabase-compatible auth endpoint)
    supabase_url: Optional[AnyHttpUrl] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SUPABASE_URL",
            "NEXT_PUBLIC_SUPABASE_URL",
            "supabase_url",
        ),
    )
    supabase_anon_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SUPABASE_ANON_KEY",
            "NEXT_PUBLIC_SUPABASE_ANON_KEY",
            "supabase_anon_key",
        ),
    )
    identity_timeout: float = Field(
        default=10.0,
        ge=1,
        validation_alias=AliasChoices("IDENTITY_TIMEOUT", "identity_timeout"),
    )

    rate_limit_window_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias=AliasChoices(
            "RATE_LIMIT_WINDOW_SECONDS",
            "rate_limit_window_seconds",
        ),
    )
    rate_limit_max_requests: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_MAX_REQUESTS",
            "rate_limit_max_requests",
        ),
    )

    gcs_bucket_name: str = Field(
        default="wedding-images",
        validation_alias=AliasChoices("GCS_BUCKET_NAME", "gcs_bucket_name"),
    )
    gcp_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "gcp_project_id"),
    )
    google_application_credentials: Path = Field(
        default_factory=lambda: Path("credentials/googlecloud/sa.json"),
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS",
            "google_application_credentials",
        ),
    )
    storage_folder: str = Field(
        default="generated",
        validation_alias=AliasChoices("STORAGE_FOLDER", "storage_folder"),
    )
    storage_signed_url_ttl_hours: int = Field(
        default=7 * 24,
        ge=1,
        le=7 * 24,
        validation_alias=AliasChoices(
            "STORAGE_SIGNED_URL_TTL_HOURS",
            "storage_signed_url_ttl_hours",
        ),
    )

    @property
    def signed_url_ttl(self) -> timedelta:
        return timedelta(hours=self.storage_signed_url_ttl_hours)

    @property
    def upstream_base_url(self) -> str:
        """Return the upstream base URL without a trailing slash."""

        return str(self.image_api_base_url).rstrip("/")

    @property
    def default_model(self) -> str:
        if self.response_mode is UpstreamResponseMode.IMAGES_API:
            return self.image_images_model
        return self.image_chat_model


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "UpstreamResponseMode", "get_settings"]
