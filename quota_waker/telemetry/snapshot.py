"""
SnapshotBuilder — нормализация сырых записей, фильтрация и группировка.

Не делает сетевых вызовов: одни и те же сырые данные можно прогнать
повторно (reprocess) при смене конфигурации.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from loguru import logger

from quota_waker.config import Settings, settings as default_settings
from quota_waker.storage import GROUP_MAPPINGS_KEY, GROUP_NAMES_KEY, StateStore
from quota_waker.telemetry.grouping import build_groups, calculate_group_mappings
from quota_waker.telemetry.models import ModelQuotaRecord, QuotaSnapshot, RawQuotaEntry
from quota_waker.telemetry.recommended import is_recommended

# Подставляется, если reset time отсутствует или не парсится
INVALID_RESET_OFFSET = timedelta(hours=24)


def parse_reset_time(value: str | None, now: datetime) -> tuple[datetime, bool]:
    """ISO-строка → (datetime UTC, valid). Невалидное значение → now + 24h."""
    if value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed, True
    return now + INVALID_RESET_OFFSET, False


def normalize_entries(entries: Sequence[RawQuotaEntry], now: datetime) -> list[ModelQuotaRecord]:
    records: list[ModelQuotaRecord] = []
    for entry in entries:
        reset_time, valid = parse_reset_time(entry.reset_time, now)
        if not valid:
            logger.warning(f"Invalid resetTime for model {entry.label}: {entry.reset_time!r}")

        fraction = entry.remaining_fraction
        if fraction is None or not 0 <= fraction <= 1:
            fraction = 0.0

        records.append(ModelQuotaRecord(
            model_id=entry.model_id,
            label=entry.label,
            remaining_fraction=float(fraction),
            reset_time=reset_time,
            reset_time_valid=valid,
            alias=entry.alias,
            supports_images=entry.supports_images,
            is_recommended=entry.is_recommended,
            tag_title=entry.tag_title,
        ))
    return records


def filter_records(
    records: Sequence[ModelQuotaRecord],
    recommended_only: bool,
    visible_models: Sequence[str],
) -> list[ModelQuotaRecord]:
    """
    1. Только рекомендованные (если включено).
    2. Только видимые, если список задан. Если второй фильтр
       скрыл бы всё — он пропускается (fail-open).
    """
    result = list(records)
    if recommended_only:
        result = [r for r in result if is_recommended(r.model_id, r.label)]

    if not visible_models:
        return result

    visible = set(visible_models)
    narrowed = [r for r in result if r.model_id in visible or (r.alias and r.alias in visible)]
    if not narrowed and result:
        logger.warning(f"Visible models filter {sorted(visible)} matches nothing, ignoring it")
        return result
    return narrowed


class SnapshotBuilder:
    """Собирает QuotaSnapshot из сырых записей."""

    def __init__(
        self,
        store: StateStore,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = config or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build(
        self,
        entries: Sequence[RawQuotaEntry],
        source: str,
        account_email: str | None = None,
        grouping: bool | None = None,
    ) -> QuotaSnapshot:
        """grouping=False — без групп и без записи mapping (снапшоты неактивных аккаунтов)."""
        now = self._clock()
        records = normalize_entries(entries, now)
        records = filter_records(
            records,
            recommended_only=self._settings.recommended_models_only,
            visible_models=self._settings.visible_models,
        )

        if grouping is None:
            grouping = self._settings.grouping_enabled
        groups = None
        if grouping:
            groups = self._group(records)

        return QuotaSnapshot(
            timestamp=now,
            models=tuple(records),
            groups=groups,
            is_connected=True,
            source=source,
            account_email=account_email,
        )

    def _group(self, records: list[ModelQuotaRecord]):
        # Чтение → решение → запись без await: mapping не может измениться посередине
        mappings: dict[str, str] = self._store.get(GROUP_MAPPINGS_KEY, {}) or {}
        custom_names: dict[str, str] = self._store.get(GROUP_NAMES_KEY, {}) or {}

        if not mappings and len(records) > 1:
            mappings = calculate_group_mappings(records)
            self._store.set(GROUP_MAPPINGS_KEY, mappings)
            logger.info(f"Group mappings initialized: {len(set(mappings.values()))} groups")

        result = build_groups(records, mappings, custom_names)
        if result.changed:
            self._store.set(GROUP_MAPPINGS_KEY, result.mappings)
        return result.groups

    # ==================== Custom names ====================

    def set_group_name(self, model_ids: Sequence[str], name: str) -> None:
        """Сохраняет пользовательское имя для всех моделей группы."""
        custom_names: dict[str, str] = self._store.get(GROUP_NAMES_KEY, {}) or {}
        for model_id in model_ids:
            custom_names[model_id] = name
        self._store.set(GROUP_NAMES_KEY, custom_names)

    def reset_group_mappings(self) -> None:
        """Сбрасывает mapping — при следующей сборке он будет пересчитан."""
        self._store.delete(GROUP_MAPPINGS_KEY)
