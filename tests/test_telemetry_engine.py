"""
TelemetryEngine: error taxonomy, caching, cold-start retries and source switching.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from quota_waker.accounts.lock import AccountLock
from quota_waker.accounts.manager import AccountManager
from quota_waker.errors import (
    AuthExpiredError,
    ForbiddenError,
    NotAuthorizedError,
    QuotaApiError,
    RetryableTransientError,
    SyncError,
)
from quota_waker.telemetry.engine import TelemetryEngine
from quota_waker.telemetry.snapshot import SnapshotBuilder
from quota_waker.telemetry.sources import RawQuota
from quota_waker.triggers.dispatcher import WakeDispatcher
from quota_waker.triggers.history import TriggerHistory
from quota_waker.triggers.orchestrator import TriggerOrchestrator
from quota_waker.triggers.reset_detector import ResetDetector
from tests.fixtures.fakes import FakeWakeClient, make_entry


class ScriptedSource:
    """Источник, отдающий заранее заданные результаты по очереди."""

    def __init__(self, name: str, results: list) -> None:
        self.name = name
        self.results = list(results)
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def fetch(self) -> RawQuota:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def raw(*model_ids, email="a@example.com") -> RawQuota:
    return RawQuota(entries=tuple(make_entry(m) for m in model_ids), account_email=email)


@pytest.fixture
def make_engine(store, test_settings, fake_sleep):
    def factory(**sources):
        builder = SnapshotBuilder(store, config=test_settings)
        return TelemetryEngine(sources, builder, config=test_settings, sleep=fake_sleep)

    return factory


class TestSync:

    @pytest.mark.asyncio
    async def test_success_publishes_snapshot(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [raw("a", "b")]))
        listener = AsyncMock()
        engine.on_snapshot(listener)

        snapshot = await engine.sync()

        assert snapshot.is_connected
        assert [m.model_id for m in snapshot.models] == ["a", "b"]
        assert engine.has_synced
        listener.assert_awaited_once_with(snapshot)

    @pytest.mark.asyncio
    async def test_auth_expired_hands_account_to_handler(self, make_engine):
        source = ScriptedSource("remote", [AuthExpiredError("rejected", email="a@example.com")])
        engine = make_engine(remote=source)
        handler = AsyncMock()
        engine.on_auth_expired(handler)

        snapshot = await engine.sync()

        assert snapshot.is_connected is False
        handler.assert_awaited_once_with("a@example.com")

    @pytest.mark.asyncio
    async def test_auth_expired_handler_failure_still_degrades(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [AuthExpiredError("rejected", email="a@example.com")]))
        engine.on_auth_expired(AsyncMock(side_effect=RuntimeError("boom")))

        snapshot = await engine.sync()

        assert snapshot.is_connected is False
        assert snapshot.error_message == "rejected"

    @pytest.mark.asyncio
    async def test_not_authorized_degrades(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [NotAuthorizedError("no account")]))
        snapshot = await engine.sync()
        assert snapshot.is_connected is False
        assert snapshot.error_message == "no account"

    @pytest.mark.asyncio
    async def test_forbidden_halts_source(self, make_engine):
        source = ScriptedSource("remote", [ForbiddenError("denied")])
        engine = make_engine(remote=source)

        first = await engine.sync()
        second = await engine.sync()

        assert first.is_connected is False
        assert second is first
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_transient_reuses_cached_snapshot(self, make_engine):
        source = ScriptedSource("remote", [raw("a"), RetryableTransientError("503")])
        engine = make_engine(remote=source)
        listener = AsyncMock()
        engine.on_snapshot(listener)

        good = await engine.sync()
        again = await engine.sync()

        assert again is good
        assert listener.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_without_cache_is_offline(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [RetryableTransientError("timeout")]))
        snapshot = await engine.sync()
        assert snapshot.is_connected is False

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates_with_source(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [QuotaApiError("HTTP 418", 418)]))

        with pytest.raises(SyncError) as exc_info:
            await engine.sync()

        assert exc_info.value.source == "remote"


class TestReprocess:

    @pytest.mark.asyncio
    async def test_reprocess_without_network(self, make_engine):
        source = ScriptedSource("remote", [raw("a", "b")])
        engine = make_engine(remote=source)
        await engine.sync()

        first = engine.reprocess()
        second = engine.reprocess()

        assert source.calls == 1
        assert first.models == second.models
        assert first.groups == second.groups

    def test_reprocess_without_cache(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [raw("a")]))
        assert engine.reprocess() is None

    @pytest.mark.asyncio
    async def test_reprocess_applies_new_filters(self, make_engine, test_settings):
        engine = make_engine(remote=ScriptedSource("remote", [raw("a", "b")]))
        await engine.sync()

        test_settings.visible_models = ["b"]
        snapshot = await engine.reprocess_and_publish()

        assert [m.model_id for m in snapshot.models] == ["b"]
        assert engine.last_snapshot is snapshot


class TestColdStart:

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff_then_reports(self, make_engine, fake_sleep):
        error = QuotaApiError("HTTP 400", 400)
        source = ScriptedSource("remote", [error])
        engine = make_engine(remote=source)
        sink = AsyncMock()
        engine.on_error(sink)

        await engine._initial_sync(engine.generation)

        assert source.calls == 4
        assert fake_sleep.delays == [2.0, 4.0, 6.0]
        sink.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_generation_aborts_retries(self, make_engine):
        source = ScriptedSource("remote", [QuotaApiError("HTTP 400", 400)])
        engine = make_engine(remote=source)

        await engine._initial_sync(engine.generation - 1)

        assert source.calls == 0

    @pytest.mark.asyncio
    async def test_failures_after_first_success_not_escalated(self, make_engine):
        source = ScriptedSource("remote", [raw("a"), QuotaApiError("HTTP 400", 400)])
        engine = make_engine(remote=source)
        sink = AsyncMock()
        engine.on_error(sink)

        await engine.refresh()
        result = await engine.refresh()

        assert result is None
        sink.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failures_before_first_success_escalated(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [QuotaApiError("HTTP 400", 400)]))
        sink = AsyncMock()
        engine.on_error(sink)

        await engine.refresh()

        sink.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [raw("a")]))
        listener = AsyncMock()
        engine.on_snapshot(listener)

        await engine.start()
        for _ in range(5):
            await asyncio.sleep(0)
        await engine.stop()

        assert engine.has_synced
        assert listener.await_count >= 1


class TestSourceSwitch:

    @pytest.mark.asyncio
    async def test_in_flight_result_discarded_after_switch(self, make_engine, test_settings):
        remote = ScriptedSource("remote", [raw("slow")])
        remote.gate = asyncio.Event()
        local = ScriptedSource("local", [raw("fast", email=None)])
        engine = make_engine(remote=remote, local=local)
        listener = AsyncMock()
        engine.on_snapshot(listener)

        pending = asyncio.create_task(engine.sync())
        await asyncio.sleep(0)
        engine.set_source("local")
        remote.gate.set()

        assert await pending is None
        listener.assert_not_awaited()
        assert test_settings.quota_source == "local"

    def test_unknown_source_rejected(self, make_engine):
        engine = make_engine(remote=ScriptedSource("remote", [raw("a")]))
        with pytest.raises(ValueError):
            engine.set_source("carrier-pigeon")

    @pytest.mark.asyncio
    async def test_switch_bumps_generation(self, make_engine):
        engine = make_engine(
            remote=ScriptedSource("remote", [raw("a")]),
            local=ScriptedSource("local", [raw("b")]),
        )
        before = engine.generation
        engine.set_source("local")
        assert engine.generation == before + 1

    @pytest.mark.asyncio
    async def test_switch_cancels_pending_initial_sync(self, make_engine):
        remote = ScriptedSource("remote", [raw("slow")])
        remote.gate = asyncio.Event()
        engine = make_engine(remote=remote, local=ScriptedSource("local", [raw("fast", email=None)]))

        await engine.start()
        await asyncio.sleep(0)
        old_task = engine._init_task

        engine.set_source("local")
        for _ in range(3):
            await asyncio.sleep(0)

        assert old_task.cancelled()
        assert engine._init_task is not old_task
        await engine.stop()


class TestAccountExpiry:

    @pytest.mark.asyncio
    async def test_expired_last_selected_account_disables_schedule(
        self, make_engine, store, credentials, tokens, clock, test_settings
    ):
        credentials.delete_credential("b@example.com")
        orchestrator = TriggerOrchestrator(
            store,
            WakeDispatcher(FakeWakeClient(), credentials, tokens),
            ResetDetector(store, clock=clock),
            TriggerHistory(store, clock=clock),
            credentials,
            AsyncMock(),
            config=test_settings,
            clock=clock,
        )
        await orchestrator.save_schedule({
            "policy": {"kind": "daily", "times": ["07:00"]},
            "selected_accounts": ["a@example.com"],
        })
        assert orchestrator.registered_timers() == ["schedule"]

        engine = make_engine(remote=ScriptedSource("remote", [AuthExpiredError("rejected", email="a@example.com")]))
        lock = AccountLock()
        manager = AccountManager(credentials, lock, orchestrator, engine)
        engine.on_auth_expired(manager.expire_account)

        snapshot = await engine.sync()

        assert snapshot.is_connected is False
        assert credentials.get_credential("a@example.com") is None
        assert credentials.get_active_account() is None
        assert orchestrator.config.mode == "off"
        assert orchestrator.registered_timers() == []
        assert lock.locked is False
        await orchestrator.stop()
