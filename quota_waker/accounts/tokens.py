"""
Access-token provider: отдаёт живой access token аккаунта, при необходимости
обновляет его через OAuth refresh_token.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Literal, Protocol

import httpx
from loguru import logger

from quota_waker.accounts.credentials import CredentialStore
from quota_waker.config import Settings, settings as default_settings

TokenState = Literal["ok", "expired", "invalid_grant", "refresh_failed", "missing"]

# Токен, истекающий раньше этого запаса, считается истёкшим
EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class TokenStatus:
    state: TokenState
    token: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == "ok" and bool(self.token)


class TokenProvider(Protocol):
    async def status(self, email: str) -> TokenStatus: ...


class OAuthTokenProvider:
    """Refresh через OAuth token endpoint."""

    def __init__(
        self,
        credentials: CredentialStore,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._settings = config or default_settings
        self._transport = transport
        self._clock = clock
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    def _fresh_token(self, email: str) -> str | None:
        cred = self._credentials.get_credential(email)
        if cred and cred.access_token and cred.expires_at - self._clock() > EXPIRY_MARGIN_SECONDS:
            return cred.access_token
        return None

    async def status(self, email: str) -> TokenStatus:
        cred = self._credentials.get_credential(email)
        if cred is None:
            return TokenStatus("missing", error=f"No credential for {email}")

        token = self._fresh_token(email)
        if token:
            return TokenStatus("ok", token=token)

        if not cred.refresh_token:
            return TokenStatus("expired", error="Access token expired and no refresh token")

        # Один refresh на аккаунт: параллельные вызовы ждут его результата
        lock = self._refresh_locks.setdefault(email, asyncio.Lock())
        async with lock:
            token = self._fresh_token(email)
            if token:
                return TokenStatus("ok", token=token)
            return await self._refresh(email, cred.refresh_token)

    async def _refresh(self, email: str, refresh_token: str) -> TokenStatus:
        data = {
            "client_id": self._settings.oauth_client_id,
            "client_secret": self._settings.oauth_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.request_timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.post(self._settings.oauth_token_url, data=data)
        except httpx.HTTPError as e:
            logger.warning(f"Token refresh for {email} failed: {type(e).__name__}: {e}")
            return TokenStatus("refresh_failed", error=str(e))

        if resp.status_code in (400, 401) and "invalid_grant" in resp.text:
            logger.warning(f"Token refresh for {email} rejected: invalid_grant")
            return TokenStatus("invalid_grant", error="invalid_grant")
        if resp.status_code != 200:
            logger.warning(f"Token refresh for {email}: HTTP {resp.status_code}")
            return TokenStatus("refresh_failed", error=f"HTTP {resp.status_code}")

        payload = resp.json()
        cred = self._credentials.get_credential(email)
        if cred is None:
            # Аккаунт удалён, пока шёл refresh
            return TokenStatus("missing", error=f"No credential for {email}")
        cred.access_token = payload["access_token"]
        cred.expires_at = self._clock() + float(payload.get("expires_in", 3600))
        if payload.get("refresh_token"):
            cred.refresh_token = payload["refresh_token"]
        self._credentials.save_credential(cred)
        logger.info(f"Access token refreshed for {email}")
        return TokenStatus("ok", token=cred.access_token)
