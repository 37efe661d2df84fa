"""
StateStore — key-value хранилище маленьких JSON blob'ов.

get/set синхронные и работают с in-memory копией, поэтому цепочка
"прочитал → решил → записал" не прерывается await'ом.
SqliteStateStore дописывает изменённые ключи в SQLite в фоне (WAL mode).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol, runtime_checkable

import aiosqlite
from loguru import logger


# Логические ключи состояния
SCHEDULE_CONFIG_KEY = "schedule_config"
TRIGGER_HISTORY_KEY = "trigger_history"
RESET_INSTANTS_KEY = "reset_trigger_instants"
RESET_COOLDOWNS_KEY = "reset_trigger_cooldowns"
GROUP_MAPPINGS_KEY = "group_mappings"
GROUP_NAMES_KEY = "group_custom_names"
CREDENTIALS_KEY = "credentials"
ACTIVE_ACCOUNT_KEY = "active_account"
FORBIDDEN_ACCOUNTS_KEY = "forbidden_accounts"
# Индекс аккаунтов с историей; сами записи лежат под "quota_history:<sha256(email)>"
QUOTA_HISTORY_KEY = "quota_history"


@runtime_checkable
class StateStore(Protocol):
    """Протокол хранилища состояния."""

    def get(self, key: str, default: Any = None) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...
    def delete(self, key: str) -> None: ...
    async def flush(self) -> None: ...
    async def close(self) -> None: ...


class MemoryStateStore:
    """In-memory хранилище (тесты, эфемерный запуск)."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        # Сериализуем сразу: вызывающий не может мутировать сохранённое значение
        self._data[key] = json.dumps(value, ensure_ascii=False)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    async def flush(self) -> None:
        return None

    async def close(self) -> None:
        return None


class SqliteStateStore:
    """Хранилище состояния в SQLite с in-memory кэшем и отложенной записью."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._db_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._data: dict[str, str] = {}
        self._dirty: set[str] = set()
        self._writer: asyncio.Task | None = None

    async def _get_db(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db

        async with self._db_lock:
            if self._db is None:
                db = await aiosqlite.connect(self._db_path)
                db.row_factory = aiosqlite.Row
                try:
                    await db.execute("PRAGMA journal_mode=WAL")
                    self._db = db
                    await self._init_schema()
                except Exception:
                    self._db = None
                    await db.close()
                    raise
        return self._db

    async def _init_schema(self) -> None:
        db = self._db
        await db.execute("""
            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await db.commit()
        logger.debug("StateStore schema initialized")

    async def open(self) -> None:
        """Загружает все ключи в память."""
        db = await self._get_db()
        cursor = await db.execute("SELECT key, value FROM state")
        rows = await cursor.fetchall()
        self._data = {row["key"]: row["value"] for row in rows}
        logger.info(f"StateStore opened: {len(self._data)} keys from {self._db_path}")

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)
        self._mark_dirty(key)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._mark_dirty(key)

    def _mark_dirty(self, key: str) -> None:
        self._dirty.add(key)
        if self._writer is not None and not self._writer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Нет event loop — запишется на flush()/close()
            return
        self._writer = loop.create_task(self._flush_in_background())

    async def _flush_in_background(self) -> None:
        try:
            # Ключи, изменённые во время записи, уходят следующим проходом
            while self._dirty:
                await self.flush()
        except Exception as e:
            logger.error(f"StateStore background flush failed: {e}")

    async def flush(self) -> None:
        """Записывает изменённые ключи в SQLite."""
        async with self._write_lock:
            if not self._dirty:
                return
            keys = sorted(self._dirty)
            self._dirty.clear()
            try:
                db = await self._get_db()
                for key in keys:
                    raw = self._data.get(key)
                    if raw is None:
                        await db.execute("DELETE FROM state WHERE key = ?", (key,))
                    else:
                        await db.execute(
                            "INSERT INTO state (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP) "
                            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                            "updated_at = excluded.updated_at",
                            (key, raw),
                        )
                await db.commit()
            except Exception:
                self._dirty.update(keys)
                raise
            logger.debug(f"StateStore flushed: {keys}")

    async def close(self) -> None:
        """Дописывает хвост и закрывает соединение с БД."""
        if self._writer is not None and not self._writer.done():
            await self._writer
        await self.flush()
        if self._db:
            await self._db.close()
            self._db = None
