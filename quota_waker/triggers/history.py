"""История срабатываний: новые сверху, не старше 7 дней, не больше 40 записей."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

from loguru import logger

from quota_waker.storage import TRIGGER_HISTORY_KEY, StateStore
from quota_waker.triggers.models import TriggerRecord

MAX_HISTORY_ITEMS = 40
HISTORY_TTL = timedelta(days=7)


class TriggerHistory:
    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list_records(self) -> list[TriggerRecord]:
        """Актуальные записи, новые первыми."""
        return self._prune(self._load())

    def add(self, record: TriggerRecord) -> None:
        records = self._prune([record, *self._load()])
        self._store.set(TRIGGER_HISTORY_KEY, [r.to_dict() for r in records])

    def clear(self) -> None:
        self._store.set(TRIGGER_HISTORY_KEY, [])
        logger.info("Trigger history cleared")

    def _load(self) -> list[TriggerRecord]:
        records: list[TriggerRecord] = []
        for item in self._store.get(TRIGGER_HISTORY_KEY, []) or []:
            try:
                records.append(TriggerRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt history entry: {e}")
        return records

    def _prune(self, records: list[TriggerRecord]) -> list[TriggerRecord]:
        cutoff = self._clock() - HISTORY_TTL
        fresh = [r for r in records if r.timestamp >= cutoff]
        return fresh[:MAX_HISTORY_ITEMS]
