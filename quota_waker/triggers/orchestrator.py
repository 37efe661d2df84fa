"""
TriggerOrchestrator — центральный координатор wake-триггеров.

Активна ровно одна политика:
1. quota_reset — реакция на восстановление квоты (+ резервные таймеры вне окна).
2. fixed-time / cron — таймер расписания.
3. off — автоматических триггеров нет.

Сохранение новой конфигурации останавливает все таймеры прежней политики.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from loguru import logger

from quota_waker.accounts.credentials import CredentialStore
from quota_waker.config import Settings, settings as default_settings
from quota_waker.errors import ScheduleValidationError
from quota_waker.scheduler.config import (
    DisabledPolicy,
    QuotaResetPolicy,
    ScheduleConfig,
    from_legacy,
    is_legacy_schedule,
    validate_schedule,
)
from quota_waker.scheduler.runner import TimerRunner
from quota_waker.scheduler.timing import in_time_window, next_run, next_runs, next_time_of_day
from quota_waker.storage import SCHEDULE_CONFIG_KEY, StateStore
from quota_waker.telemetry.models import QuotaSnapshot, RawQuotaEntry, to_iso
from quota_waker.telemetry.snapshot import normalize_entries
from quota_waker.telemetry.sources import RawQuota
from quota_waker.triggers.dispatcher import WakeDispatcher
from quota_waker.triggers.history import TriggerHistory
from quota_waker.triggers.models import (
    DEFAULT_MODEL,
    TriggerRecord,
    TriggerSourceName,
    TriggerType,
)
from quota_waker.triggers.reset_detector import ResetDetector

RecordListener = Callable[[TriggerRecord], Awaitable[None]]
QuotaReader = Callable[[str], Awaitable[RawQuota]]

# Квота в процентах: полная = 100
QUOTA_LIMIT = 100


class TriggerOrchestrator:
    """Владеет активной политикой, таймерами и dispatch'ем."""

    def __init__(
        self,
        store: StateStore,
        dispatcher: WakeDispatcher,
        detector: ResetDetector,
        history: TriggerHistory,
        credentials: CredentialStore,
        read_account_quota: QuotaReader,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._detector = detector
        self._history = history
        self._credentials = credentials
        self._read_account_quota = read_account_quota
        self._settings = config or default_settings
        self._clock = clock or (lambda: datetime.now(self._settings.get_timezone()))
        self._sleep = sleep

        self._schedule_timer: TimerRunner | None = None
        self._fallback_timer: TimerRunner | None = None
        # Инвалидирует проходы reset-проверки, начатые при прежней конфигурации
        self._generation = 0
        self._reset_check_running = False
        self._pending: set[asyncio.Task] = set()
        self._listeners: list[RecordListener] = []

    # ==================== Config ====================

    @property
    def config(self) -> ScheduleConfig:
        """Сохранённая конфигурация (off, если ничего не сохранено)."""
        data = self._store.get(SCHEDULE_CONFIG_KEY)
        if not data:
            return ScheduleConfig()
        try:
            if is_legacy_schedule(data):
                return from_legacy(data)
            return validate_schedule(data)
        except ScheduleValidationError as e:
            logger.error(f"Stored schedule config is invalid, treating as off: {e}")
            return ScheduleConfig()

    @property
    def active_policy(self) -> str:
        return self.config.mode

    def registered_timers(self) -> list[str]:
        """Имена запущенных таймеров."""
        return [
            timer.name
            for timer in (self._schedule_timer, self._fallback_timer)
            if timer is not None and timer.running
        ]

    def next_scheduled_run(self) -> datetime | None:
        """Ближайшее срабатывание таймера (расписания или резервного)."""
        runs = [
            timer.next_run
            for timer in (self._schedule_timer, self._fallback_timer)
            if timer is not None and timer.next_run is not None
        ]
        return min(runs) if runs else None

    def preview_runs(self, count: int = 5) -> list[datetime]:
        """Следующие срабатывания по текущей конфигурации."""
        config = self.config
        now = self._clock()
        policy = config.policy
        if isinstance(policy, QuotaResetPolicy):
            runs: list[datetime] = []
            cursor = now
            for _ in range(count):
                upcoming = next_time_of_day(policy.fallback_times, cursor)
                if upcoming is None:
                    break
                runs.append(upcoming)
                cursor = upcoming
            return runs
        return next_runs(config, now, count)

    def on_record(self, listener: RecordListener) -> None:
        self._listeners.append(listener)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Поднимает таймеры по сохранённой конфигурации."""
        await self._apply(self.config)

    async def stop(self) -> None:
        """Останавливает таймеры и ждёт незавершённые reset-проверки."""
        await self._teardown()
        self._generation += 1
        for task in list(self._pending):
            task.cancel()
        for task in list(self._pending):
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("TriggerOrchestrator stopped")

    async def save_schedule(self, data: dict | ScheduleConfig) -> ScheduleConfig:
        """
        Валидирует, сохраняет и применяет конфигурацию.

        Raises:
            ScheduleValidationError: конфигурация некорректна, ничего не сохранено.
        """
        config = validate_schedule(data)
        if config.mode != "off" and not self.resolve_accounts(config.selected_accounts):
            raise ScheduleValidationError("Нет авторизованных аккаунтов для расписания")

        self._store.set(SCHEDULE_CONFIG_KEY, config.model_dump(mode="json"))
        await self._apply(config)
        return config

    async def _apply(self, config: ScheduleConfig) -> None:
        await self._teardown()
        self._generation += 1

        policy = config.policy
        if isinstance(policy, QuotaResetPolicy):
            if policy.time_window is not None and policy.fallback_times:
                times = list(policy.fallback_times)
                self._fallback_timer = TimerRunner(
                    name="fallback",
                    compute_next=lambda now: next_time_of_day(times, now),
                    on_fire=self._on_fallback_fire,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                await self._fallback_timer.start()
        elif config.mode in ("fixed", "cron"):
            self._schedule_timer = TimerRunner(
                name="schedule",
                compute_next=lambda now: next_run(config, now),
                on_fire=self._on_schedule_fire,
                clock=self._clock,
                sleep=self._sleep,
            )
            await self._schedule_timer.start()

        logger.info(f"Trigger policy applied: {config.policy.kind} (timers: {self.registered_timers()})")

    async def _teardown(self) -> None:
        for timer in (self._schedule_timer, self._fallback_timer):
            if timer is not None:
                await self._safe_stop(timer)
        self._schedule_timer = None
        self._fallback_timer = None

    async def _safe_stop(self, timer: TimerRunner) -> None:
        """Безопасно останавливает таймер."""
        try:
            await timer.stop()
        except Exception as e:
            logger.error(f"Error stopping timer {timer.name}: {e}")

    # ==================== Resolution ====================

    def resolve_accounts(self, selected: Sequence[str] | None) -> list[str]:
        """
        Явный выбор → только аккаунты с refresh token.
        Выбор не настраивался → активный аккаунт, иначе первый.
        """
        usable = [c.email for c in self._credentials.list_credentials() if c.refresh_token]
        if selected is not None:
            return [email for email in selected if email in usable]

        active = self._credentials.get_active_account()
        if active and active in usable:
            return [active]
        return usable[:1]

    @staticmethod
    def resolve_models(selected: Sequence[str] | None) -> list[str]:
        return list(selected) if selected else [DEFAULT_MODEL]

    # ==================== Dispatch ====================

    async def run_dispatch(
        self,
        accounts: Sequence[str],
        models: Sequence[str],
        trigger_source: TriggerSourceName,
        trigger_type: TriggerType = "auto",
        prompt: str | None = None,
        max_output_tokens: int = 0,
    ) -> list[TriggerRecord]:
        """Аккаунты обрабатываются последовательно, модели — пулом внутри аккаунта."""
        records: list[TriggerRecord] = []
        for email in accounts:
            record = await self._dispatcher.dispatch(
                email,
                models,
                prompt=prompt,
                max_output_tokens=max_output_tokens,
                trigger_type=trigger_type,
                trigger_source=trigger_source,
            )
            self._history.add(record)
            records.append(record)
            await self._notify(record)
        return records

    async def trigger_now(
        self,
        models: Sequence[str] | None = None,
        accounts: Sequence[str] | None = None,
        prompt: str | None = None,
    ) -> list[TriggerRecord]:
        """Ручной wake (кнопка "проверить сейчас")."""
        config = self.config
        targets = self.resolve_accounts(accounts if accounts is not None else config.selected_accounts)
        if not targets:
            raise ValueError("Нет авторизованных аккаунтов")
        return await self.run_dispatch(
            targets,
            self.resolve_models(models or config.selected_models),
            trigger_source="manual",
            trigger_type="manual",
            prompt=prompt or config.custom_prompt,
            max_output_tokens=config.max_output_tokens,
        )

    async def _on_schedule_fire(self, fired_at: datetime) -> None:
        config = self.config
        source: TriggerSourceName = "cron" if config.mode == "cron" else "scheduled"
        logger.info(f"Scheduled wake fired at {fired_at.isoformat()} ({source})")
        await self._dispatch_config(config, source)

    async def _on_fallback_fire(self, fired_at: datetime) -> None:
        config = self.config
        if not isinstance(config.policy, QuotaResetPolicy):
            return
        if in_time_window(config.policy.time_window, self._clock()):
            logger.info(f"Fallback wake at {fired_at.isoformat()} skipped: time window is open")
            return
        logger.info(f"Fallback wake fired at {fired_at.isoformat()}")
        await self._dispatch_config(config, "fallback")

    async def _dispatch_config(self, config: ScheduleConfig, source: TriggerSourceName) -> None:
        accounts = self.resolve_accounts(config.selected_accounts)
        if not accounts:
            logger.warning(f"Wake ({source}) skipped: no authorized accounts")
            return
        await self.run_dispatch(
            accounts,
            self.resolve_models(config.selected_models),
            trigger_source=source,
            prompt=config.custom_prompt,
            max_output_tokens=config.max_output_tokens,
        )

    async def _notify(self, record: TriggerRecord) -> None:
        for listener in self._listeners:
            try:
                await listener(record)
            except Exception as e:
                logger.error(f"Trigger record listener error: {e}")

    # ==================== Quota reset ====================

    async def on_snapshot(self, snapshot: QuotaSnapshot) -> None:
        """Listener TelemetryEngine: запускает reset-проверку в фоне."""
        if not snapshot.is_connected or self.config.mode != "quota_reset":
            return
        task = asyncio.create_task(self.check_quota_reset())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def check_quota_reset(self) -> list[TriggerRecord]:
        """
        Один проход reset-проверки.

        Аккаунты — строго последовательно: решение по одному аккаунту
        сохранено до начала проверки следующего.
        """
        config = self.config
        policy = config.policy
        if not isinstance(policy, QuotaResetPolicy):
            return []
        if not in_time_window(policy.time_window, self._clock()):
            logger.debug("Quota reset check skipped: outside time window")
            return []
        if self._reset_check_running:
            logger.debug("Quota reset check already running, skipping")
            return []

        self._reset_check_running = True
        generation = self._generation
        records: list[TriggerRecord] = []
        try:
            for email in self.resolve_accounts(config.selected_accounts):
                if generation != self._generation:
                    logger.debug("Quota reset check aborted: policy changed")
                    break
                try:
                    raw = await self._read_account_quota(email)
                except Exception as e:
                    logger.warning(f"Quota reset check for {email} failed: {e}")
                    continue
                if generation != self._generation:
                    logger.debug("Quota reset check aborted: policy changed")
                    break

                models = self._claim_resets(email, raw.entries, config.selected_models)
                if not models:
                    continue
                logger.info(f"Quota reset detected for {email}: {models}")
                records.extend(await self.run_dispatch(
                    [email],
                    models,
                    trigger_source="quota_reset",
                    prompt=config.custom_prompt,
                    max_output_tokens=config.max_output_tokens,
                ))
        finally:
            self._reset_check_running = False
        return records

    def _claim_resets(
        self,
        email: str,
        entries: Sequence[RawQuotaEntry],
        selected_models: Sequence[str],
    ) -> list[str]:
        """Проверка и фиксация reset'ов аккаунта. Без await — решение атомарно."""
        quota: dict[str, tuple[int, str, str]] = {}
        for record in normalize_entries(entries, self._clock()):
            if not record.reset_time_valid:
                continue
            info = (math.floor(record.remaining_fraction * 100), to_iso(record.reset_time), record.model_id)
            quota[record.model_id] = info
            if record.alias:
                quota[record.alias] = info

        claimed: list[str] = []
        for model in self.resolve_models(selected_models):
            info = quota.get(model)
            if info is None:
                continue
            remaining, reset_at, model_id = info
            if self._detector.claim(f"{email}:{model_id}", reset_at, remaining, QUOTA_LIMIT):
                claimed.append(model)
        return claimed

    # ==================== Accounts ====================

    async def on_account_removed(self, email: str) -> None:
        """Убирает аккаунт из выбора. Пустой выбор или нет аккаунтов → политика off."""
        self._detector.forget_account(email)
        config = self.config
        selected = config.selected_accounts
        changed = False
        if selected is not None and email in selected:
            selected = [a for a in selected if a != email]
            changed = True

        no_accounts = not self._credentials.list_credentials()
        if config.mode != "off" and (no_accounts or (selected is not None and not selected)):
            logger.info(f"Account {email} removed: no accounts left for schedule, disabling")
            config = config.model_copy(update={"policy": DisabledPolicy(), "selected_accounts": selected})
            changed = True
        elif changed:
            config = config.model_copy(update={"selected_accounts": selected})

        if changed:
            self._store.set(SCHEDULE_CONFIG_KEY, config.model_dump(mode="json"))
            await self._apply(config)
