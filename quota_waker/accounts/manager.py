"""
AccountManager — операции, меняющие набор аккаунтов.

switch / remove / import выполняются под AccountLock строго по одному.
Обновление телеметрии после операции идёт уже без lock'а.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from quota_waker.accounts.credentials import Credential, CredentialStore
from quota_waker.accounts.lock import AccountLock

if TYPE_CHECKING:
    from quota_waker.telemetry.engine import TelemetryEngine
    from quota_waker.triggers.orchestrator import TriggerOrchestrator


class AccountManager:
    def __init__(
        self,
        credentials: CredentialStore,
        lock: AccountLock,
        orchestrator: TriggerOrchestrator,
        engine: TelemetryEngine,
    ) -> None:
        self._credentials = credentials
        self._lock = lock
        self._orchestrator = orchestrator
        self._engine = engine

    def list_accounts(self) -> list[dict]:
        """Аккаунты без секретов."""
        active = self._credentials.get_active_account()
        return [
            {
                "email": c.email,
                "active": c.email == active,
                "authorized": bool(c.refresh_token),
                "project_id": c.project_id,
            }
            for c in self._credentials.list_credentials()
        ]

    async def switch_account(self, email: str) -> None:
        """Делает аккаунт активным и запрашивает свежую синхронизацию."""
        async with self._lock.hold("switch_account"):
            if self._credentials.get_credential(email) is None:
                raise ValueError(f"Аккаунт не найден: {email}")
            self._credentials.set_active_account(email)
            logger.info(f"Active account switched to {email}")
        await self._engine.refresh()

    async def remove_account(self, email: str) -> bool:
        """
        Удаляет credential и убирает аккаунт из расписания.

        Returns:
            False, если аккаунта не было.
        """
        if not await self._remove(email, "remove_account"):
            return False
        await self._engine.refresh()
        return True

    async def expire_account(self, email: str) -> bool:
        """
        Удаляет аккаунт с отклонённым refresh token.

        Вызывается из синхронизации телеметрии, поэтому без последующего refresh.
        """
        return await self._remove(email, "expire_account")

    async def _remove(self, email: str, operation: str) -> bool:
        async with self._lock.hold(operation):
            if not self._credentials.delete_credential(email):
                return False
            if self._credentials.get_active_account() == email:
                remaining = self._credentials.list_credentials()
                self._credentials.set_active_account(remaining[0].email if remaining else None)
            await self._orchestrator.on_account_removed(email)
            logger.info(f"Account removed ({operation}): {email}")
        return True

    async def import_account(self, credential: Credential) -> None:
        """Сохраняет (или заменяет) credential. Первый аккаунт становится активным."""
        async with self._lock.hold("import_account"):
            self._credentials.save_credential(credential)
            if self._credentials.get_active_account() is None:
                self._credentials.set_active_account(credential.email)
            logger.info(f"Account imported: {credential.email}")
        await self._engine.refresh()
