"""
ResetDetector — решает, что квота только что полностью восстановилась.

Для ключа "{account}:{model}" триггер разрешён, только если:
1. квота полная (remaining >= limit);
2. с прошлого зафиксированного reset прошло больше SAFETY_MARGIN;
3. с прошлого срабатывания прошло не меньше COOLDOWN;
4. resetAt новее уже обработанного.

mark_triggered() вызывается ДО сетевого запроса.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

from loguru import logger

from quota_waker.storage import RESET_COOLDOWNS_KEY, RESET_INSTANTS_KEY, StateStore

SAFETY_MARGIN = timedelta(minutes=2)
COOLDOWN = timedelta(minutes=10)


def _parse_instant(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class ResetDetector:
    """Дедупликация reset-событий по ключам account:model."""

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def should_trigger(self, key: str, reset_at: str, remaining: float, limit: float) -> bool:
        if remaining < limit:
            return False

        instants: dict[str, str] = self._store.get(RESET_INSTANTS_KEY, {}) or {}
        cooldowns: dict[str, int] = self._store.get(RESET_COOLDOWNS_KEY, {}) or {}
        now = self._clock()
        previous_reset = instants.get(key)

        if previous_reset is not None:
            try:
                safe_after = _parse_instant(previous_reset) + SAFETY_MARGIN
            except ValueError:
                logger.warning(f"Corrupt reset instant for {key}: {previous_reset!r}, ignoring")
            else:
                if now <= safe_after:
                    logger.debug(f"Reset {key}: within safety margin of {previous_reset}")
                    return False

        last_trigger_ms = cooldowns.get(key)
        if last_trigger_ms is not None and _epoch_ms(now) - last_trigger_ms < COOLDOWN.total_seconds() * 1000:
            logger.debug(f"Reset {key}: cooldown active")
            return False

        if previous_reset == reset_at:
            return False

        if previous_reset is not None:
            try:
                if _parse_instant(reset_at) <= _parse_instant(previous_reset):
                    logger.debug(f"Reset {key}: {reset_at} is not newer than {previous_reset}")
                    return False
            except ValueError:
                logger.warning(f"Unparseable reset instant for {key}, skipping order check")

        return True

    def mark_triggered(self, key: str, reset_at: str) -> None:
        """Фиксирует обработанный reset и момент срабатывания. Сохраняется сразу."""
        instants: dict[str, str] = self._store.get(RESET_INSTANTS_KEY, {}) or {}
        cooldowns: dict[str, int] = self._store.get(RESET_COOLDOWNS_KEY, {}) or {}
        instants[key] = reset_at
        cooldowns[key] = _epoch_ms(self._clock())
        self._store.set(RESET_INSTANTS_KEY, instants)
        self._store.set(RESET_COOLDOWNS_KEY, cooldowns)
        logger.info(f"Reset marked for {key}: {reset_at}")

    def claim(self, key: str, reset_at: str, remaining: float, limit: float) -> bool:
        """should_trigger + mark_triggered одним синхронным шагом."""
        if not self.should_trigger(key, reset_at, remaining, limit):
            return False
        self.mark_triggered(key, reset_at)
        return True

    def forget_account(self, email: str) -> None:
        """Удаляет состояние всех ключей аккаунта."""
        prefix = f"{email}:"
        for state_key in (RESET_INSTANTS_KEY, RESET_COOLDOWNS_KEY):
            data = self._store.get(state_key, {}) or {}
            pruned = {k: v for k, v in data.items() if not k.startswith(prefix)}
            if len(pruned) != len(data):
                self._store.set(state_key, pruned)
