"""
CloudCodeClient — HTTP клиент к Cloud Code API (квоты, project id, wake-запросы).

Каждый вызов несёт явный таймаут. HTTP/сетевые ошибки переводятся
в таксономию quota_waker.errors.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from quota_waker.config import Settings, settings as default_settings
from quota_waker.errors import classify_transport_error, raise_for_status

USER_AGENT = "antigravity"

FETCH_MODELS_PATH = "/v1internal:fetchAvailableModels"
LOAD_CODE_ASSIST_PATH = "/v1internal:loadCodeAssist"
STREAM_GENERATE_PATH = "/v1internal:streamGenerateContent"


class CloudCodeClient:
    """Тонкая обёртка над httpx.AsyncClient."""

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        cfg = config or default_settings
        self._client = httpx.AsyncClient(
            base_url=cfg.cloudcode_base_url,
            timeout=cfg.request_timeout_seconds,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_json(self, path: str, token: str, payload: dict[str, Any], label: str) -> dict[str, Any]:
        try:
            resp = await self._client.post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise classify_transport_error(e, label) from e

        raise_for_status(resp, label)
        return resp.json()

    async def fetch_available_models(self, token: str, project_id: str | None) -> dict[str, Any]:
        """Карта model key → {displayName, model, quotaInfo, ...} + agentModelSorts."""
        payload = {"project": project_id} if project_id else {}
        return await self._post_json(FETCH_MODELS_PATH, token, payload, "fetchAvailableModels")

    async def load_project_id(self, token: str) -> str | None:
        """Project id аккаунта через loadCodeAssist. None если не удалось."""
        payload = {
            "metadata": {
                "ideType": "ANTIGRAVITY",
                "platform": "PLATFORM_UNSPECIFIED",
                "pluginType": "GEMINI",
            },
        }
        try:
            data = await self._post_json(LOAD_CODE_ASSIST_PATH, token, payload, "loadCodeAssist")
        except Exception as e:
            logger.warning(f"loadCodeAssist failed, continuing without project: {e}")
            return None

        project = data.get("cloudaicompanionProject")
        if isinstance(project, dict):
            project = project.get("id")
        return project or None

    async def stream_generate(self, token: str, body: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """
        POST streamGenerateContent?alt=sse.

        Ответ — построчный JSON (опционально с префиксом "data:").
        Пустые и нераспарсенные строки пропускаются.
        """
        label = f"streamGenerateContent:{body.get('model')}"
        try:
            async with self._client.stream(
                "POST",
                STREAM_GENERATE_PATH,
                params={"alt": "sse"},
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            ) as resp:
                if resp.status_code >= 300:
                    await resp.aread()
                    raise_for_status(resp, label)
                async for line in resp.aiter_lines():
                    chunk = _parse_stream_line(line)
                    if chunk is not None:
                        yield chunk
        except httpx.HTTPError as e:
            raise classify_transport_error(e, label) from e


def _parse_stream_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if line.startswith("data:"):
        line = line[len("data:"):].strip()
    if not line or line == "[DONE]":
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream line: {line[:80]}")
        return None
    return parsed if isinstance(parsed, dict) else None
