"""
TelemetryEngine — периодический опрос источника квот и публикация снапшотов.

При старте первая синхронизация повторяется до 3 раз (2s, 4s, 6s).
Периодические опросы не повторяются: ошибка логируется, следующий тик
пробует снова. Во внешний error sink ошибки уходят, только пока не было
ни одной успешной синхронизации.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from quota_waker.config import Settings, settings as default_settings
from quota_waker.errors import (
    AuthExpiredError,
    ForbiddenError,
    NotAuthorizedError,
    RetryableTransientError,
    SyncError,
)
from quota_waker.telemetry.models import QuotaSnapshot
from quota_waker.telemetry.snapshot import SnapshotBuilder
from quota_waker.telemetry.sources import QuotaSource, RawQuota

SnapshotListener = Callable[[QuotaSnapshot], Awaitable[None]]
ErrorSink = Callable[[Exception], Awaitable[None]]
# Получает email аккаунта с отклонённым refresh token
AccountHandler = Callable[[str], Awaitable[object]]

COLD_START_RETRIES = 3
COLD_START_BACKOFF_SECONDS = 2.0


class TelemetryEngine:
    """Опрашивает текущий источник, кэширует и публикует снапшоты."""

    def __init__(
        self,
        sources: dict[str, QuotaSource],
        builder: SnapshotBuilder,
        config: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sources = sources
        self._builder = builder
        self._settings = config or default_settings
        self._sleep = sleep
        self._interval = self._settings.refresh_interval_seconds

        self._running = False
        self._task: asyncio.Task | None = None
        self._init_task: asyncio.Task | None = None
        # Инвалидирует retry-циклы прошлых запусков / прошлого источника
        self._generation = 0
        self._has_synced = False
        self._forbidden: set[str] = set()

        self._raw_cache: dict[str, RawQuota] = {}
        self._snapshot_cache: dict[str, QuotaSnapshot] = {}
        self._last_snapshot: QuotaSnapshot | None = None

        self._listeners: list[SnapshotListener] = []
        self._error_sinks: list[ErrorSink] = []
        self._auth_expired_handlers: list[AccountHandler] = []

    # ==================== State ====================

    @property
    def current_source(self) -> str:
        return self._settings.quota_source

    @property
    def last_snapshot(self) -> QuotaSnapshot | None:
        return self._last_snapshot

    @property
    def has_synced(self) -> bool:
        return self._has_synced

    @property
    def generation(self) -> int:
        return self._generation

    def on_snapshot(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def on_error(self, sink: ErrorSink) -> None:
        self._error_sinks.append(sink)

    def on_auth_expired(self, handler: AccountHandler) -> None:
        """Удаление аккаунта идёт через обработчик (под AccountLock), а не напрямую."""
        self._auth_expired_handlers.append(handler)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Запускает первую синхронизацию (с retry) и периодический цикл."""
        if self._running:
            return

        self._running = True
        self._generation += 1
        self._forbidden.clear()
        self._init_task = asyncio.create_task(self._initial_sync(self._generation))
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Telemetry started (source: {self.current_source}, interval: {self._interval}s)"
        )

    async def stop(self) -> None:
        """Останавливает цикл и отменяет незавершённые retry."""
        self._running = False
        self._generation += 1
        for task in (self._init_task, self._task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._init_task = None
        self._task = None
        logger.info("Telemetry stopped")

    async def _initial_sync(self, generation: int) -> None:
        for attempt in range(COLD_START_RETRIES + 1):
            if generation != self._generation:
                logger.debug(f"Initial sync (generation {generation}) superseded, aborting")
                return
            try:
                await self.sync()
                return
            except Exception as e:
                if attempt >= COLD_START_RETRIES:
                    logger.error(f"Initial sync failed after {attempt + 1} attempts: {e}")
                    await self._report(e)
                    return
                delay = COLD_START_BACKOFF_SECONDS * (attempt + 1)
                logger.warning(f"Initial sync attempt {attempt + 1} failed: {e}. Retry in {delay:.0f}s")
                await self._sleep(delay)

    async def _loop(self) -> None:
        """Периодический опрос. Первый тик — через interval."""
        while self._running:
            await self._sleep(self._interval)
            if not self._running:
                break
            await self.refresh()

    # ==================== Sync ====================

    async def refresh(self) -> QuotaSnapshot | None:
        """Один опрос без retry. Ошибка логируется и уходит в error sink."""
        try:
            return await self.sync()
        except Exception as e:
            logger.error(f"Telemetry sync error: {e}")
            await self._report(e)
            return None

    async def sync(self) -> QuotaSnapshot | None:
        """
        Опрашивает текущий источник.

        AuthExpired / Forbidden / RetryableTransient превращаются в
        деградированный снапшот. Остальное пробрасывается как SyncError.
        Результат источника, который успел смениться, отбрасывается.

        Returns:
            Опубликованный (или переиспользованный) снапшот, None если результат устарел.
        """
        source_name = self.current_source
        if source_name in self._forbidden:
            logger.debug(f"Source {source_name} forbidden for this cycle, skipping poll")
            return self._last_snapshot

        source = self._sources[source_name]
        try:
            raw = await source.fetch()
        except AuthExpiredError as e:
            if self._is_stale(source_name, e):
                return None
            logger.warning(f"Auth expired on {source_name}: {e}")
            if e.email:
                await self._expire_account(e.email)
                if self._is_stale(source_name, e):
                    return None
            return await self._publish(QuotaSnapshot.offline(str(e), source_name))
        except NotAuthorizedError as e:
            if self._is_stale(source_name, e):
                return None
            logger.info(f"Not authorized on {source_name}: {e}")
            return await self._publish(QuotaSnapshot.offline(str(e), source_name))
        except ForbiddenError as e:
            if self._is_stale(source_name, e):
                return None
            self._forbidden.add(source_name)
            logger.warning(f"Source {source_name} forbidden, polling halted until restart: {e}")
            return await self._publish(QuotaSnapshot.offline(str(e), source_name))
        except RetryableTransientError as e:
            if self._is_stale(source_name, e):
                return None
            cached = self._snapshot_cache.get(source_name)
            if cached is not None:
                logger.warning(f"Transient error on {source_name}, keeping last snapshot: {e}")
                return cached
            logger.warning(f"Transient error on {source_name}, no cached snapshot: {e}")
            return await self._publish(QuotaSnapshot.offline(str(e), source_name))
        except Exception as e:
            if self._is_stale(source_name, e):
                return None
            raise SyncError(source_name, e) from e

        if self._is_stale(source_name):
            return None

        self._raw_cache[source_name] = raw
        snapshot = self._builder.build(raw.entries, source=source_name, account_email=raw.account_email)
        self._snapshot_cache[source_name] = snapshot
        self._has_synced = True
        return await self._publish(snapshot)

    def reprocess(self) -> QuotaSnapshot | None:
        """Пересобирает снапшот из закэшированных сырых данных без сетевого запроса."""
        source_name = self.current_source
        raw = self._raw_cache.get(source_name)
        if raw is None:
            logger.debug(f"Nothing to reprocess for {source_name}")
            return None
        snapshot = self._builder.build(raw.entries, source=source_name, account_email=raw.account_email)
        self._snapshot_cache[source_name] = snapshot
        self._last_snapshot = snapshot
        return snapshot

    async def reprocess_and_publish(self) -> QuotaSnapshot | None:
        snapshot = self.reprocess()
        if snapshot is not None:
            await self._publish(snapshot)
        return snapshot

    def set_source(self, source_name: str) -> None:
        """Переключает источник. In-flight результаты старого источника будут отброшены."""
        if source_name not in self._sources:
            raise ValueError(f"Неизвестный источник: {source_name}")
        if source_name == self.current_source:
            return

        previous = self.current_source
        self._settings.quota_source = source_name
        self._generation += 1
        self._forbidden.discard(source_name)
        logger.info(f"Quota source switched: {previous} → {source_name}")

        if self._running:
            previous_task = self._init_task
            if previous_task is not None and not previous_task.done():
                previous_task.cancel()
            self._init_task = asyncio.create_task(self._initial_sync(self._generation))

    # ==================== Internals ====================

    def _is_stale(self, source_name: str, error: Exception | None = None) -> bool:
        if source_name == self.current_source:
            return False
        if error is not None:
            logger.debug(f"Ignoring {source_name} error after switch to {self.current_source}: {error}")
        else:
            logger.info(f"Discarding stale {source_name} result: source is now {self.current_source}")
        return True

    async def _expire_account(self, email: str) -> None:
        if not self._auth_expired_handlers:
            logger.warning(f"Auth expired for {email}, no account handler registered")
        for handler in self._auth_expired_handlers:
            try:
                await handler(email)
            except Exception as e:
                logger.error(f"Auth-expired handler failed for {email}: {e}")

    async def _publish(self, snapshot: QuotaSnapshot) -> QuotaSnapshot:
        self._last_snapshot = snapshot
        for listener in self._listeners:
            try:
                await listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener error: {e}")
        return snapshot

    async def _report(self, error: Exception) -> None:
        if self._has_synced:
            logger.warning(f"Sync failure not escalated (had successful sync): {error}")
            return
        for sink in self._error_sinks:
            try:
                await sink(error)
            except Exception as e:
                logger.error(f"Error sink failed: {e}")
