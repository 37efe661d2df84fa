"""
Account Lock — сериализация операций, меняющих набор аккаунтов.

Один asyncio.Lock гарантирует, что switch / remove / import выполняются
строго по одному. Чтение квот блокировку не берёт.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class AccountLock:
    """Single-slot mutex. Освобождается на любом пути выхода, включая ошибку."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._holder: str | None = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> str | None:
        """Имя операции, которая сейчас держит lock."""
        return self._holder

    @asynccontextmanager
    async def hold(self, operation: str) -> AsyncIterator[None]:
        """Acquire lock → yield → release. Ждёт, пока предыдущая операция отпустит."""
        if self._lock.locked():
            logger.debug(f"Account operation '{operation}' waiting for '{self._holder}'")
        async with self._lock:
            self._holder = operation
            try:
                yield
            finally:
                self._holder = None

    async def run(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Выполняет func под lock'ом."""
        async with self.hold(operation):
            return await func()
