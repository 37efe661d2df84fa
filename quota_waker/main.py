"""
Quota Waker — будильник квот.

Точка входа приложения.
"""

import asyncio
import sys

import uvicorn
from loguru import logger

from quota_waker.accounts import AccountLock, AccountManager, OAuthTokenProvider, StoredCredentials
from quota_waker.api import create_app
from quota_waker.cloudcode import CloudCodeClient
from quota_waker.config import load_overrides, settings
from quota_waker.migrations.runner import run_migrations
from quota_waker.storage import SqliteStateStore
from quota_waker.telemetry import (
    AccountsQuotaRefresher,
    LocalProbeSource,
    QuotaHistory,
    RemoteQuotaSource,
    SnapshotBuilder,
    TelemetryEngine,
)
from quota_waker.telemetry.models import QuotaSnapshot
from quota_waker.triggers import (
    ResetDetector,
    TriggerHistory,
    TriggerOrchestrator,
    TriggerRecord,
    WakeClient,
    WakeDispatcher,
)


def setup_logging() -> None:
    """Настраивает логирование."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level,
    )


async def _log_sync_failure(error: Exception) -> None:
    logger.error(f"Quota telemetry unavailable: {error}")


async def _log_snapshot(snapshot: QuotaSnapshot) -> None:
    if snapshot.is_connected:
        logger.debug(f"Snapshot published: {len(snapshot.models)} models from {snapshot.source}")
    else:
        logger.warning(f"Snapshot offline ({snapshot.source}): {snapshot.error_message}")


async def _log_record(record: TriggerRecord) -> None:
    status = "ok" if record.success else "failed"
    logger.info(f"Wake {status} [{record.trigger_source}] {record.account_email}: {record.duration_ms}ms")


async def main() -> None:
    """Точка входа."""
    setup_logging()

    # Загружаем config overrides из data/config_overrides.json
    load_overrides()

    logger.info("Starting Quota Waker")

    # Миграции (до открытия хранилища)
    await run_migrations(settings.data_dir)

    store = SqliteStateStore(str(settings.db_path))
    await store.open()

    credentials = StoredCredentials(store)
    tokens = OAuthTokenProvider(credentials)
    cloudcode = CloudCodeClient()

    remote = RemoteQuotaSource(cloudcode, credentials, tokens)
    local = LocalProbeSource()
    builder = SnapshotBuilder(store)
    engine = TelemetryEngine({remote.name: remote, local.name: local}, builder)

    detector = ResetDetector(store)
    history = TriggerHistory(store)
    dispatcher = WakeDispatcher(WakeClient(cloudcode), credentials, tokens)
    orchestrator = TriggerOrchestrator(
        store,
        dispatcher,
        detector,
        history,
        credentials,
        remote.fetch_for_account,
    )
    accounts = AccountManager(credentials, AccountLock(), orchestrator, engine)
    quota_history = QuotaHistory(store)
    refresher = AccountsQuotaRefresher(remote, builder, credentials, store, quota_history)

    engine.on_snapshot(_log_snapshot)
    engine.on_snapshot(orchestrator.on_snapshot)
    engine.on_snapshot(quota_history.on_snapshot)
    engine.on_error(_log_sync_failure)
    engine.on_auth_expired(accounts.expire_account)
    refresher.on_auth_expired(accounts.expire_account)
    orchestrator.on_record(_log_record)

    await orchestrator.start()
    await engine.start()
    await refresher.start()

    api_app = create_app(orchestrator, engine, accounts, builder, history, quota_history, refresher)
    api_config = uvicorn.Config(api_app, host=settings.api_host, port=settings.api_port, log_level="warning")
    api_server = uvicorn.Server(api_config)

    logger.info(f"Quota Waker is running (API: {settings.api_host}:{settings.api_port})")

    try:
        await api_server.serve()
    finally:
        api_server.should_exit = True
        await refresher.stop()
        await engine.stop()
        await orchestrator.stop()
        await cloudcode.close()
        await store.close()
        logger.info("Quota Waker stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
