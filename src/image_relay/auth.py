"""Caller authentication against the external identity service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import Settings

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when a caller cannot be authenticated."""

    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(detail)
        self.detail = detail


class ConfigurationError(RuntimeError):
    """Raised when a required server setting is missing."""


@dataclass(frozen=True)
class CallerIdentity:
    """Resolved principal behind a bearer credential."""

    user_id: str
    email: Optional[str] = None
    token: str = ""


def extract_bearer_token(header: Optional[str]) -> str:
    """Return the token from an `Authorization: Bearer <token>` header."""

    if not header:
        raise AuthError()
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise AuthError()
    return token


class IdentityClient:
    """Exchange bearer tokens for caller identities (Supabase `auth/v1/user`)."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.supabase_url and self._settings.supabase_anon_key)

    def _require_config(self) -> tuple[str, str]:
        if not self.configured:
            raise ConfigurationError("Server misconfigured: Supabase env missing")
        assert self._settings.supabase_url is not None
        assert self._settings.supabase_anon_key is not None
        base_url = str(self._settings.supabase_url).rstrip("/")
        return base_url, self._settings.supabase_anon_key.get_secret_value()

    async def resolve(self, token: str) -> CallerIdentity:
        base_url, anon_key = self._require_config()
        headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        url = f"{base_url}/auth/v1/user"
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.identity_timeout
                ) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Identity exchange failed: %s", exc)
            raise AuthError() from exc

        if response.status_code != 200:
            logger.info("Identity service rejected token (%s)", response.status_code)
            raise AuthError()

        try:
            body: Any = response.json()
        except ValueError as exc:
            raise AuthError() from exc

        user = body.get("user", body) if isinstance(body, dict) else None
        user_id = user.get("id") if isinstance(user, dict) else None
        if not isinstance(user_id, str) or not user_id:
            raise AuthError()

        email = user.get("email") if isinstance(user.get("email"), str) else None
        return CallerIdentity(user_id=user_id, email=email, token=token)

    async def authenticate(self, authorization: Optional[str]) -> CallerIdentity:
        """Validate the header and resolve its caller in one step."""

        self._require_config()
        token = extract_bearer_token(authorization)
        return await self.resolve(token)


__all__ = [
    "AuthError",
    "CallerIdentity",
    "ConfigurationError",
    "IdentityClient",
    "extract_bearer_token",
]
