import asyncio
from datetime import datetime
from typing import Awaitable, Callable

from loguru import logger


class TimerRunner:
    """Спит до ближайшего момента, вызывает callback и перевзводится."""

    def __init__(
        self,
        name: str,
        compute_next: Callable[[datetime], datetime | None],
        on_fire: Callable[[datetime], Awaitable[None]],
        clock: Callable[[], datetime],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            name: имя таймера для логов ("schedule", "fallback").
            compute_next: now → ближайший момент строго позже now (None — больше не срабатывать).
            on_fire: async callback(момент срабатывания).
            clock: текущее время (aware, локальная timezone).
        """
        self.name = name
        self._compute_next = compute_next
        self._on_fire = on_fire
        self._clock = clock
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task | None = None
        self._next_run: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def next_run(self) -> datetime | None:
        return self._next_run

    async def start(self) -> None:
        """Запускает таймер в фоне."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Timer '{self.name}' started")

    async def stop(self) -> None:
        """Останавливает таймер."""
        self._running = False
        self._next_run = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Timer '{self.name}' stopped")

    async def _run_loop(self) -> None:
        """Основной цикл: вычислить → уснуть → сработать."""
        last_fired: datetime | None = None
        while self._running:
            now = self._clock()
            if last_fired is not None and now <= last_fired:
                now = last_fired

            target = self._compute_next(now)
            if target is None:
                logger.warning(f"Timer '{self.name}': no upcoming run, stopping")
                self._running = False
                self._next_run = None
                return

            self._next_run = target
            logger.debug(f"Timer '{self.name}' armed for {target.isoformat()}")
            await self._sleep(max((target - now).total_seconds(), 0))

            # Проснулись раньше срока — перевзводимся на тот же момент
            if self._clock() < target:
                continue

            last_fired = target
            try:
                await self._on_fire(target)
            except Exception as e:
                logger.error(f"Timer '{self.name}' callback error: {e}")
