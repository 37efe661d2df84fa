"""
AccountsQuotaRefresher — квоты всех сохранённых аккаунтов, не только активного.

Периодический проход идёт по аккаунтам строго по одному и пропускает
аккаунты без refresh token и аккаунты с флагом forbidden (403). Флаг
хранится в StateStore и переживает рестарт. Ручное обновление одного
аккаунта флаг игнорирует и снимает его при успехе.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from loguru import logger

from quota_waker.accounts.credentials import CredentialStore
from quota_waker.config import Settings, settings as default_settings
from quota_waker.errors import AuthExpiredError, ForbiddenError
from quota_waker.storage import FORBIDDEN_ACCOUNTS_KEY, StateStore
from quota_waker.telemetry.engine import AccountHandler
from quota_waker.telemetry.history import QuotaHistory
from quota_waker.telemetry.models import QuotaSnapshot, to_iso
from quota_waker.telemetry.snapshot import SnapshotBuilder
from quota_waker.telemetry.sources import RemoteQuotaSource

NO_REFRESH_TOKEN = "no refresh token"
FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class AccountQuotaState:
    """Последний результат опроса одного аккаунта."""

    email: str
    snapshot: QuotaSnapshot | None = None
    fetched_at: datetime | None = None
    error: str | None = None
    forbidden: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "fetched_at": to_iso(self.fetched_at) if self.fetched_at else None,
            "error": self.error,
            "forbidden": self.forbidden,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


class AccountsQuotaRefresher:
    def __init__(
        self,
        remote: RemoteQuotaSource,
        builder: SnapshotBuilder,
        credentials: CredentialStore,
        store: StateStore,
        history: QuotaHistory | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._remote = remote
        self._builder = builder
        self._credentials = credentials
        self._store = store
        self._history = history
        self._settings = config or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

        self._states: dict[str, AccountQuotaState] = {}
        self._in_flight: asyncio.Task | None = None
        self._auth_expired_handlers: list[AccountHandler] = []
        self._running = False
        self._task: asyncio.Task | None = None

    def on_auth_expired(self, handler: AccountHandler) -> None:
        self._auth_expired_handlers.append(handler)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        interval = self._settings.accounts_refresh_interval_seconds
        if self._running:
            return
        if interval <= 0:
            logger.info("All-accounts quota refresh disabled")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(interval))
        logger.info(f"All-accounts quota refresh started (interval: {interval}s)")

    async def stop(self) -> None:
        self._running = False
        for task in (self._task, self._in_flight):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._in_flight = None

    async def _loop(self, interval: int) -> None:
        while self._running:
            await self._sleep(interval)
            if not self._running:
                break
            try:
                await self.refresh_all()
            except Exception as e:
                logger.error(f"All-accounts quota refresh failed: {e}")

    # ==================== Refresh ====================

    def states(self) -> list[AccountQuotaState]:
        """Состояние по каждому сохранённому аккаунту, в порядке credentials."""
        forbidden = self._forbidden()
        return [
            self._states.get(c.email) or AccountQuotaState(c.email, forbidden=c.email in forbidden)
            for c in self._credentials.list_credentials()
        ]

    async def refresh_all(self) -> list[AccountQuotaState]:
        """Один проход по всем аккаунтам. Параллельный вызов ждёт текущий проход."""
        if self._in_flight is None or self._in_flight.done():
            self._in_flight = asyncio.create_task(self._refresh_all())
        await asyncio.shield(self._in_flight)
        return self.states()

    async def refresh_account(self, email: str) -> AccountQuotaState:
        """Ручное обновление одного аккаунта, в том числе forbidden."""
        if self._credentials.get_credential(email) is None:
            raise ValueError(f"Аккаунт не найден: {email}")
        return await self._load(email)

    async def _refresh_all(self) -> None:
        credentials = self._credentials.list_credentials()
        known = {c.email for c in credentials}
        self._states = {e: s for e, s in self._states.items() if e in known}

        forbidden = self._forbidden()
        if forbidden - known:
            forbidden &= known
            self._store.set(FORBIDDEN_ACCOUNTS_KEY, sorted(forbidden))

        refreshed = 0
        for credential in credentials:
            email = credential.email
            if not credential.refresh_token:
                self._states[email] = AccountQuotaState(email, fetched_at=self._clock(), error=NO_REFRESH_TOKEN)
                continue
            if email in forbidden:
                previous = self._states.get(email)
                self._states[email] = AccountQuotaState(
                    email,
                    snapshot=previous.snapshot if previous else None,
                    fetched_at=previous.fetched_at if previous else None,
                    error=FORBIDDEN,
                    forbidden=True,
                )
                continue
            await self._load(email)
            refreshed += 1
        logger.debug(f"All-accounts quota refresh: {refreshed}/{len(credentials)} accounts polled")

    async def _load(self, email: str) -> AccountQuotaState:
        now = self._clock()
        previous = self._states.get(email)
        try:
            raw = await self._remote.fetch_for_account(email)
        except ForbiddenError as e:
            self._set_forbidden(email, True)
            state = AccountQuotaState(email, fetched_at=now, error=str(e), forbidden=True)
        except AuthExpiredError as e:
            logger.warning(f"Auth expired for {email} during quota refresh: {e}")
            state = AccountQuotaState(email, fetched_at=now, error=str(e))
            self._states[email] = state
            await self._expire_account(email)
            return state
        except Exception as e:
            logger.warning(f"Quota refresh for {email} failed: {e}")
            state = AccountQuotaState(
                email,
                snapshot=previous.snapshot if previous else None,
                fetched_at=now,
                error=str(e),
                forbidden=email in self._forbidden(),
            )
        else:
            snapshot = self._builder.build(raw.entries, source="remote", account_email=email, grouping=False)
            self._set_forbidden(email, False)
            if self._history is not None:
                self._history.record(email, snapshot)
            state = AccountQuotaState(email, snapshot=snapshot, fetched_at=now)
            logger.debug(f"Quota refreshed for {email}: {len(snapshot.models)} models")

        self._states[email] = state
        return state

    async def _expire_account(self, email: str) -> None:
        for handler in self._auth_expired_handlers:
            try:
                await handler(email)
            except Exception as e:
                logger.error(f"Auth-expired handler failed for {email}: {e}")
        if self._credentials.get_credential(email) is None:
            self._states.pop(email, None)

    # ==================== Forbidden ====================

    def _forbidden(self) -> set[str]:
        return set(self._store.get(FORBIDDEN_ACCOUNTS_KEY, []) or [])

    def _set_forbidden(self, email: str, value: bool) -> None:
        forbidden = self._forbidden()
        if (email in forbidden) == value:
            return
        if value:
            forbidden.add(email)
            logger.warning(f"Account {email} marked as forbidden (403), skipped by periodic refresh")
        else:
            forbidden.discard(email)
            logger.info(f"Cleared forbidden status for {email}")
        self._store.set(FORBIDDEN_ACCOUNTS_KEY, sorted(forbidden))
