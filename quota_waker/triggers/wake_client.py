"""
WakeClient — минимальный запрос к модели, запускающий цикл квоты.

Из потокового ответа извлекаются только текст и счётчики токенов.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from quota_waker.cloudcode import USER_AGENT, CloudCodeClient


@dataclass
class WakeReply:
    text: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    trace_id: str | None = None
    response_id: str | None = None


def build_wake_body(project_id: str, model: str, prompt: str, max_output_tokens: int = 0) -> dict[str, Any]:
    """Тело streamGenerateContent. max_output_tokens=0 — без ограничения."""
    generation_config: dict[str, Any] = {"temperature": 0}
    if max_output_tokens > 0:
        generation_config["maxOutputTokens"] = max_output_tokens

    return {
        "project": project_id,
        "requestId": f"agent-{uuid.uuid4()}",
        "model": model,
        "userAgent": USER_AGENT,
        "requestType": "agent",
        "request": {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "session_id": uuid.uuid4().hex,
            "generationConfig": generation_config,
        },
    }


class _ReplyAccumulator:
    """Собирает ответ из чанков стрима."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self.reply = WakeReply(text="")

    def feed(self, chunk: dict[str, Any]) -> None:
        # Cloud Code оборачивает ответ в {"response": {...}, "traceId": ...}
        response = chunk.get("response", chunk)
        if chunk.get("traceId"):
            self.reply.trace_id = chunk["traceId"]
        if response.get("responseId"):
            self.reply.response_id = response["responseId"]

        candidates = response.get("candidates") or []
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                if part.get("thought"):
                    continue
                text = part.get("text")
                if text:
                    self._parts.append(text)

        usage = response.get("usageMetadata")
        if usage:
            self.reply.prompt_tokens = usage.get("promptTokenCount", self.reply.prompt_tokens)
            self.reply.completion_tokens = usage.get("candidatesTokenCount", self.reply.completion_tokens)
            self.reply.total_tokens = usage.get("totalTokenCount", self.reply.total_tokens)

    def result(self) -> WakeReply:
        self.reply.text = "".join(self._parts).strip()
        return self.reply


class WakeClient:
    """Отправляет wake-запрос и разбирает потоковый ответ."""

    def __init__(self, client: CloudCodeClient) -> None:
        self._client = client

    async def send(
        self,
        token: str,
        project_id: str,
        model: str,
        prompt: str,
        max_output_tokens: int = 0,
    ) -> WakeReply:
        body = build_wake_body(project_id, model, prompt, max_output_tokens)
        accumulator = _ReplyAccumulator()
        async for chunk in self._client.stream_generate(token, body):
            accumulator.feed(chunk)
        return accumulator.result()

    async def resolve_project_id(self, token: str) -> str | None:
        return await self._client.load_project_id(token)
