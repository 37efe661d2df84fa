"""
Источники сырой телеметрии квот.

- LocalProbeSource: процесс IDE на 127.0.0.1 (GetUserStatus).
- RemoteQuotaSource: Cloud Code API от имени авторизованного аккаунта.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

from quota_waker.accounts.credentials import CredentialStore
from quota_waker.accounts.tokens import TokenProvider
from quota_waker.cloudcode import CloudCodeClient
from quota_waker.config import Settings, settings as default_settings
from quota_waker.errors import (
    AuthExpiredError,
    NotAuthorizedError,
    QuotaApiError,
    RetryableTransientError,
    classify_transport_error,
    raise_for_status,
)
from quota_waker.telemetry.models import RawQuotaEntry

LOCAL_STATUS_PATH = "/exa.language_server_pb.LanguageServerService/GetUserStatus"

# Image-модель, которую API не включает в agentModelSorts
EXTRA_IMAGE_MODEL_KEY = "gemini-3-pro-image"
EXTRA_IMAGE_MODEL_ID = "MODEL_PLACEHOLDER_M9"


@dataclass(frozen=True)
class RawQuota:
    """Результат одного запроса к источнику."""

    entries: tuple[RawQuotaEntry, ...]
    account_email: str | None = None


@runtime_checkable
class QuotaSource(Protocol):
    """Протокол источника квот."""

    name: str

    async def fetch(self) -> RawQuota: ...


def _fraction(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 1:
        return float(value)
    return None


# ==================== Remote ====================


def _ordered_remote_keys(data: dict[str, Any]) -> list[str]:
    models: dict[str, Any] = data.get("models") or {}
    ordered: list[str] = []
    seen: set[str] = set()

    for sort in data.get("agentModelSorts") or []:
        for group in sort.get("groups") or []:
            for key in group.get("modelIds") or []:
                if key not in models:
                    logger.debug(f"Model {key} from agentModelSorts not in available models")
                    continue
                if key not in seen:
                    seen.add(key)
                    ordered.append(key)

    if EXTRA_IMAGE_MODEL_KEY in models and EXTRA_IMAGE_MODEL_KEY not in seen:
        seen.add(EXTRA_IMAGE_MODEL_KEY)
        ordered.append(EXTRA_IMAGE_MODEL_KEY)
    for key, info in models.items():
        if key not in seen and ((info or {}).get("model") or "").strip() == EXTRA_IMAGE_MODEL_ID:
            seen.add(key)
            ordered.append(key)
            break

    if not ordered:
        logger.warning("No model found in available models response")
    return ordered


def decode_remote_models(data: dict[str, Any]) -> list[RawQuotaEntry]:
    """Ответ fetchAvailableModels → сырые записи в порядке agentModelSorts."""
    models: dict[str, Any] = data.get("models") or {}
    entries: list[RawQuotaEntry] = []
    for key in _ordered_remote_keys(data):
        info = models[key] or {}
        if info.get("disabled"):
            continue
        quota = info.get("quotaInfo") or {}
        entries.append(RawQuotaEntry(
            model_id=info.get("model") or key,
            label=(info.get("displayName") or "").strip() or key,
            remaining_fraction=_fraction(quota.get("remainingFraction")),
            reset_time=quota.get("resetTime"),
            alias=key,
            supports_images=bool(info.get("supportsImages")),
            is_recommended=bool(info.get("recommended")),
            tag_title=info.get("tagTitle"),
        ))
    return entries


class RemoteQuotaSource:
    """Квоты через Cloud Code API."""

    name = "remote"

    def __init__(
        self,
        client: CloudCodeClient,
        credentials: CredentialStore,
        tokens: TokenProvider,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._tokens = tokens

    def current_account(self) -> str | None:
        """Активный аккаунт, иначе первый с credential."""
        active = self._credentials.get_active_account()
        if active and self._credentials.get_credential(active):
            return active
        creds = self._credentials.list_credentials()
        return creds[0].email if creds else None

    async def fetch(self) -> RawQuota:
        email = self.current_account()
        if email is None:
            raise NotAuthorizedError("No authorized account")
        return await self.fetch_for_account(email)

    async def fetch_for_account(self, email: str) -> RawQuota:
        token = await self.token_for(email)
        credential = self._credentials.get_credential(email)
        project_id = credential.project_id if credential else None
        if not project_id:
            project_id = await self._client.load_project_id(token)
            if project_id:
                self._credentials.update_project_id(email, project_id)

        try:
            data = await self._client.fetch_available_models(token, project_id)
        except AuthExpiredError as e:
            raise AuthExpiredError(str(e), email=email) from e

        entries = decode_remote_models(data)
        logger.debug(f"Remote quota for {email}: {len(entries)} models")
        return RawQuota(entries=tuple(entries), account_email=email)

    async def token_for(self, email: str) -> str:
        """Живой access token или исключение таксономии."""
        status = await self._tokens.status(email)
        if status.ok:
            return status.token
        if status.state == "invalid_grant":
            raise AuthExpiredError(f"Refresh token rejected for {email}", email=email)
        if status.state == "refresh_failed":
            raise RetryableTransientError(f"Token refresh failed for {email}: {status.error}")
        raise NotAuthorizedError(f"No usable token for {email} ({status.state})")


# ==================== Local ====================


def decode_local_status(data: dict[str, Any]) -> list[RawQuotaEntry]:
    """Ответ GetUserStatus → сырые записи, упорядоченные по clientModelSorts."""
    status = data.get("userStatus")
    if not status:
        raise QuotaApiError(f"Local probe returned no userStatus: {data.get('message', 'unknown')}")

    config = status.get("cascadeModelConfigData") or {}
    sorts = config.get("clientModelSorts") or []
    order: dict[str, int] = {}
    if sorts:
        for group in sorts[0].get("groups") or []:
            for label in group.get("modelLabels") or []:
                order.setdefault(label, len(order))

    entries: list[RawQuotaEntry] = []
    for item in config.get("clientModelConfigs") or []:
        quota = item.get("quotaInfo")
        if not quota:
            continue
        entries.append(RawQuotaEntry(
            model_id=(item.get("modelOrAlias") or {}).get("model") or "unknown",
            label=item.get("label") or "",
            remaining_fraction=_fraction(quota.get("remainingFraction")),
            reset_time=quota.get("resetTime"),
            supports_images=bool(item.get("supportsImages")),
            is_recommended=bool(item.get("isRecommended")),
            tag_title=item.get("tagTitle"),
        ))

    # Сначала по порядку из clientModelSorts, остальные — по алфавиту
    entries.sort(key=lambda e: (0, order[e.label], "") if e.label in order else (1, 0, e.label))
    return entries


class LocalProbeSource:
    """Квоты от локального процесса IDE."""

    name = "local"

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = config or default_settings
        self._transport = transport

    async def fetch(self) -> RawQuota:
        port = self._settings.local_probe_port
        token = self._settings.local_probe_csrf_token
        if not port or not token:
            raise RetryableTransientError("Local probe not ready: port or csrf token unknown")

        payload = {
            "metadata": {
                "ideName": "antigravity",
                "extensionName": "antigravity",
                "locale": "en",
            },
        }
        headers = {
            "Connect-Protocol-Version": "1",
            "X-Codeium-Csrf-Token": token,
        }
        try:
            # Self-signed сертификат языкового сервера, прокси не используем
            async with httpx.AsyncClient(
                timeout=self._settings.request_timeout_seconds,
                verify=False,
                trust_env=False,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    f"https://127.0.0.1:{port}{LOCAL_STATUS_PATH}",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise classify_transport_error(e, "GetUserStatus") from e

        raise_for_status(resp, "GetUserStatus")
        if not resp.content.strip():
            raise RetryableTransientError("Local probe returned empty response")

        entries = decode_local_status(resp.json())
        logger.debug(f"Local quota: {len(entries)} models")
        return RawQuota(entries=tuple(entries))
