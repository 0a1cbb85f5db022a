"""Bearer token lifecycle for the spatialization provider."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

import httpx

from app.backend.config import get_settings
from app.backend.models.provider import Token
from app.backend.models.session import utcnow
from app.backend.services.provider_errors import AuthError, response_body
from app.common.logging import json_log

logger = logging.getLogger(__name__)


class CredentialCache:
    """Hold a single provider token and refresh it on demand.

    The provider's declared expiry is ignored: a token is trusted for a fixed
    window from the moment it was issued.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        auth_url: str | None = None,
        validity: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._client_id = client_id if client_id is not None else settings.ircam_client_id
        self._client_secret = client_secret if client_secret is not None else settings.ircam_client_secret
        self._auth_url = auth_url or settings.ircam_auth_url
        self._validity = validity or timedelta(minutes=settings.token_validity_minutes)
        self._clock = clock
        self._token: Token | None = None
        self._refresh_lock = asyncio.Lock()

    def get_token(self) -> Token | None:
        """Return the cached token if it has not expired."""

        token = self._token
        if token is None or not token.is_valid(self._clock()):
            return None
        return token

    async def refresh(self) -> Token:
        """Request a new token and replace the cached one."""

        if not self._client_id or not self._client_secret:
            raise AuthError("Provider client credentials are not configured")

        json_log(logger, logging.INFO, "auth.refresh.start", auth_url=self._auth_url)
        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "client_credentials",
        }
        try:
            response = await self._client.post(self._auth_url, json=payload)
        except httpx.HTTPError as exc:
            json_log(logger, logging.ERROR, "auth.refresh.unreachable", error=str(exc))
            raise AuthError(f"Credential endpoint unreachable: {exc}") from exc

        if not response.is_success:
            json_log(
                logger,
                logging.ERROR,
                "auth.refresh.rejected",
                status_code=response.status_code,
                body=response_body(response),
            )
            raise AuthError(f"Credential endpoint rejected client identity (HTTP {response.status_code})")

        try:
            value = response.json().get("id_token")
        except (ValueError, AttributeError) as exc:
            raise AuthError("Credential endpoint returned an unreadable body") from exc
        if not value:
            raise AuthError("Credential endpoint response did not include an id_token")

        issued_at = self._clock()
        token = Token(value=value, issued_at=issued_at, expires_at=issued_at + self._validity)
        self._token = token
        json_log(logger, logging.INFO, "auth.refresh.complete", expires_at=token.expires_at.isoformat())
        return token

    async def ensure_valid(self) -> Token:
        """Return a usable token, refreshing it when missing or expired."""

        token = self.get_token()
        if token is not None:
            return token
        async with self._refresh_lock:
            # Another task may have refreshed while this one waited.
            token = self.get_token()
            if token is not None:
                return token
            return await self.refresh()

    async def headers(self) -> dict[str, str]:
        """Return request headers carrying a valid bearer token."""

        token = await self.ensure_valid()
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {token.value}",
        }


__all__ = ["CredentialCache"]
