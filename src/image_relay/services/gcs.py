"""Google Cloud Storage access for generated images."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional

from google.cloud import storage
from google.oauth2 import service_account

from ..config import Settings

logger = logging.getLogger(__name__)

PUBLIC_URL_BASE = "https://storage.googleapis.com"
# V4 signatures cannot outlive seven days.
MAX_SIGNED_URL_TTL = timedelta(days=7)


def load_service_account(
    credentials_path: Optional[Path],
) -> Optional[service_account.Credentials]:
    """Return service-account credentials, or ``None`` when none are usable."""

    if credentials_path is None:
        return None
    resolved = Path(credentials_path).expanduser().resolve()
    if not resolved.is_file():
        logger.debug("No GCS service account at %s", resolved)
        return None
    try:
        return service_account.Credentials.from_service_account_file(str(resolved))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable GCS credentials %s: %s", resolved, exc)
        return None


class GcsBucket:
    """One bucket, connected lazily on first use.

    Credentials are looked up once; when they are missing the bucket reports
    itself unavailable and callers keep images inline instead.
    """

    def __init__(
        self,
        name: str,
        *,
        credentials_path: Optional[Path] = None,
        project_id: Optional[str] = None,
    ) -> None:
        self.name = name
        self._credentials_path = credentials_path
        self._project_id = project_id
        self._lock = threading.Lock()
        self._credentials: Optional[service_account.Credentials] = None
        self._credentials_loaded = False
        self._bucket: Optional[storage.Bucket] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "GcsBucket":
        return cls(
            settings.gcs_bucket_name,
            credentials_path=settings.google_application_credentials,
            project_id=settings.gcp_project_id,
        )

    def _load_credentials(self) -> Optional[service_account.Credentials]:
        with self._lock:
            if not self._credentials_loaded:
                self._credentials = load_service_account(self._credentials_path)
                self._credentials_loaded = True
            return self._credentials

    @property
    def available(self) -> bool:
        return self._load_credentials() is not None

    def bucket(self) -> storage.Bucket:
        credentials = self._load_credentials()
        if credentials is None:
            raise RuntimeError(
                "GCS credentials not found; set GOOGLE_APPLICATION_CREDENTIALS "
                "to a service account JSON file"
            )
        with self._lock:
            if self._bucket is None:
                client = storage.Client(
                    project=self._project_id or credentials.project_id,
                    credentials=credentials,
                )
                self._bucket = client.bucket(self.name)
            return self._bucket

    def reset(self) -> None:
        """Forget cached credentials and client."""

        with self._lock:
            self._credentials = None
            self._credentials_loaded = False
            self._bucket = None

    def upload(self, object_name: str, data: bytes, *, content_type: str) -> None:
        blob = self.bucket().blob(object_name)
        # Create-only; an existing object is never overwritten.
        blob.upload_from_string(data, content_type=content_type, if_generation_match=0)

    def signed_url(self, object_name: str, *, expires_in: timedelta) -> str:
        blob = self.bucket().blob(object_name)
        return blob.generate_signed_url(
            version="v4",
            expiration=min(expires_in, MAX_SIGNED_URL_TTL),
            method="GET",
        )

    def public_url(self, object_name: str) -> str:
        """Only reachable when the bucket allows public reads."""

        return f"{PUBLIC_URL_BASE}/{self.name}/{object_name}"


__all__ = ["GcsBucket", "MAX_SIGNED_URL_TTL", "PUBLIC_URL_BASE", "load_service_account"]
