"""
WakeDispatcher — единая точка выполнения wake-запросов для одного аккаунта.

Модели обрабатываются пулом из не более MAX_TRIGGER_CONCURRENCY воркеров,
которые берут задания из общего курсора. Результаты кладутся в слоты
по индексу, поэтому порядок отчёта совпадает с порядком моделей.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Awaitable, Callable, Sequence, TypeVar

from loguru import logger

from quota_waker.accounts.credentials import CredentialStore
from quota_waker.accounts.tokens import TokenProvider
from quota_waker.errors import NotAuthorizedError
from quota_waker.triggers.models import (
    DEFAULT_MODEL,
    DEFAULT_PROMPT,
    ModelOutcome,
    TriggerRecord,
    TriggerSourceName,
    TriggerType,
)
from quota_waker.triggers.wake_client import WakeClient

MAX_TRIGGER_CONCURRENCY = 4

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int = MAX_TRIGGER_CONCURRENCY,
) -> list[R]:
    """
    Пул из min(limit, len(items)) потребителей над общим курсором.

    Каждый элемент обрабатывается ровно один раз; results[i] соответствует items[i]
    независимо от порядка завершения. worker не должен бросать исключений.
    """
    results: list[R | None] = [None] * len(items)
    cursor = 0

    async def consume() -> None:
        nonlocal cursor
        while True:
            # Между чтением и инкрементом нет await — индекс не достанется двоим
            index = cursor
            if index >= len(items):
                return
            cursor += 1
            results[index] = await worker(items[index])

    await asyncio.gather(*(consume() for _ in range(min(limit, len(items)))))
    return results  # type: ignore[return-value]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _sum_tokens(values: list[int | None]) -> int | None:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


class WakeDispatcher:
    """Выполняет wake-запросы: token → project → fan-out по моделям → TriggerRecord."""

    def __init__(
        self,
        wake_client: WakeClient,
        credentials: CredentialStore,
        tokens: TokenProvider,
        concurrency: int = MAX_TRIGGER_CONCURRENCY,
    ) -> None:
        self._wake_client = wake_client
        self._credentials = credentials
        self._tokens = tokens
        self._concurrency = concurrency

    async def dispatch(
        self,
        account_email: str,
        models: Sequence[str],
        prompt: str | None = None,
        max_output_tokens: int = 0,
        trigger_type: TriggerType = "auto",
        trigger_source: TriggerSourceName = "scheduled",
    ) -> TriggerRecord:
        """
        Отправляет wake-запрос каждой модели от имени аккаунта.

        Ошибка отдельной модели не прерывает остальные. Запись успешна,
        если успешна хотя бы одна модель.
        """
        models = list(models) or [DEFAULT_MODEL]
        prompt = prompt or DEFAULT_PROMPT
        started = time.monotonic()
        logger.info(f"Dispatching wake for {account_email}: {models} ({trigger_source})")

        stage = "resolve_token"
        try:
            token = await self._token_for(account_email)
            stage = "resolve_project"
            project_id = await self._project_for(account_email, token)
            stage = "send_trigger_requests"
            outcomes = await run_bounded(
                models,
                lambda model: self._wake_one(token, project_id, model, prompt, max_output_tokens),
                self._concurrency,
            )
        except Exception as e:
            logger.error(f"Wake dispatch for {account_email} failed at {stage}: {e}")
            return TriggerRecord(
                success=False,
                prompt=prompt,
                message=f"{stage}: {e}",
                duration_ms=_elapsed_ms(started),
                trigger_type=trigger_type,
                trigger_source=trigger_source,
                account_email=account_email,
                models=models,
            )

        successes = [o for o in outcomes if o.ok]
        failures = [o for o in outcomes if not o.ok]
        lines = [o.summary_line() for o in successes] + [o.summary_line() for o in failures]

        record = TriggerRecord(
            success=bool(successes),
            prompt=prompt,
            message="\n\n".join(lines),
            duration_ms=_elapsed_ms(started),
            trigger_type=trigger_type,
            trigger_source=trigger_source,
            account_email=account_email,
            models=models,
            prompt_tokens=_sum_tokens([o.prompt_tokens for o in successes]),
            completion_tokens=_sum_tokens([o.completion_tokens for o in successes]),
            total_tokens=_sum_tokens([o.total_tokens for o in successes]),
        )
        logger.info(
            f"Wake for {account_email} done: {len(successes)}/{len(outcomes)} ok in {record.duration_ms}ms"
        )
        return record

    async def _token_for(self, email: str) -> str:
        status = await self._tokens.status(email)
        if not status.ok:
            raise NotAuthorizedError(f"Token unavailable ({status.state}): {status.error or ''}".strip())
        return status.token

    async def _project_for(self, email: str, token: str) -> str:
        credential = self._credentials.get_credential(email)
        if credential and credential.project_id:
            return credential.project_id

        project_id = await self._wake_client.resolve_project_id(token)
        if project_id:
            self._credentials.update_project_id(email, project_id)
            return project_id

        fallback = f"projects/random-{uuid.uuid4().hex[:8]}/locations/global"
        logger.warning(f"No project id for {email}, using {fallback}")
        return fallback

    async def _wake_one(
        self,
        token: str,
        project_id: str,
        model: str,
        prompt: str,
        max_output_tokens: int,
    ) -> ModelOutcome:
        started = time.monotonic()
        try:
            reply = await self._wake_client.send(token, project_id, model, prompt, max_output_tokens)
        except Exception as e:
            logger.warning(f"Wake request to {model} failed: {e}")
            return ModelOutcome(
                model=model,
                ok=False,
                message=str(e) or type(e).__name__,
                duration_ms=_elapsed_ms(started),
            )
        return ModelOutcome(
            model=model,
            ok=True,
            message=reply.text or "(empty reply)",
            duration_ms=_elapsed_ms(started),
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            total_tokens=reply.total_tokens,
            trace_id=reply.trace_id,
        )
