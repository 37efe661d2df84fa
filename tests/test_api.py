"""
HTTP API: authorization, config overrides, schedule, trigger, history, accounts and quota history.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

import quota_waker.config
from quota_waker.accounts.lock import AccountLock
from quota_waker.accounts.manager import AccountManager
from quota_waker.api import create_app
from quota_waker.storage import SCHEDULE_CONFIG_KEY
from quota_waker.telemetry.accounts_refresh import AccountsQuotaRefresher
from quota_waker.telemetry.history import QuotaHistory
from quota_waker.telemetry.snapshot import SnapshotBuilder
from quota_waker.telemetry.sources import RawQuota
from quota_waker.triggers.dispatcher import WakeDispatcher
from quota_waker.triggers.history import TriggerHistory
from quota_waker.triggers.orchestrator import TriggerOrchestrator
from quota_waker.triggers.reset_detector import ResetDetector
from tests.fixtures.fakes import FakeWakeClient, make_entry

SECRET = "test-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.current_source = "remote"
    engine.has_synced = False
    engine.last_snapshot = None
    engine.refresh = AsyncMock(return_value=None)
    engine.reprocess_and_publish = AsyncMock(return_value=None)
    return engine


@pytest.fixture
def history(store, clock):
    return TriggerHistory(store, clock=clock)


@pytest.fixture
def orchestrator(store, credentials, tokens, clock, history, test_settings):
    return TriggerOrchestrator(
        store,
        WakeDispatcher(FakeWakeClient(), credentials, tokens),
        ResetDetector(store, clock=clock),
        history,
        credentials,
        AsyncMock(),
        config=test_settings,
        clock=clock,
    )


@pytest.fixture
def builder():
    return MagicMock()


@pytest.fixture
def quota_history(store, clock):
    return QuotaHistory(store, clock=clock)


@pytest.fixture
def refresher(store, credentials, quota_history, clock, test_settings):
    remote = MagicMock()
    remote.fetch_for_account = AsyncMock(side_effect=lambda email: RawQuota(
        entries=(make_entry("MODEL_PLACEHOLDER_M18", 0.5),),
        account_email=email,
    ))
    return AccountsQuotaRefresher(
        remote,
        SnapshotBuilder(store, config=test_settings, clock=clock),
        credentials,
        store,
        quota_history,
        config=test_settings,
        clock=clock,
    )


@pytest.fixture
def client(
    monkeypatch, tmp_path, orchestrator, engine, credentials, builder, history, quota_history, refresher, test_settings
):
    monkeypatch.setenv("API_SECRET_KEY", SECRET)
    monkeypatch.setattr(quota_waker.config.settings, "data_dir", tmp_path)
    accounts = AccountManager(credentials, AccountLock(), orchestrator, engine)
    app = create_app(
        orchestrator, engine, accounts, builder, history, quota_history, refresher, config=test_settings
    )
    return TestClient(app)


class TestAuth:

    def test_health_is_open(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "source": "remote", "synced": False, "policy": "off"}

    def test_wrong_token(self, client):
        resp = client.get("/schedule", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_secret_not_configured(self, client, monkeypatch):
        monkeypatch.delenv("API_SECRET_KEY")
        resp = client.get("/schedule", headers=AUTH)
        assert resp.status_code == 503


class TestConfig:

    def test_secrets_masked(self, client, test_settings):
        test_settings.oauth_client_secret = "supersecretvalue"
        body = client.get("/config", headers=AUTH).json()

        assert body["oauth_client_secret"] == {"value": "supe********alue", "mutable": False, "type": "secret"}
        assert body["quota_source"]["type"] == "enum"
        assert body["visible_models"]["type"] == "list[str]"
        assert body["grouping_enabled"]["mutable"] is True

    def test_patch_applies_and_persists(self, client, engine, test_settings, tmp_path):
        resp = client.patch("/config", headers=AUTH, json={"grouping_enabled": False, "quota_source": "local"})

        assert resp.status_code == 200
        assert test_settings.grouping_enabled is False
        engine.set_source.assert_called_once_with("local")
        engine.reprocess_and_publish.assert_awaited_once()
        saved = json.loads((tmp_path / "config_overrides.json").read_text())
        assert saved == {"grouping_enabled": False, "quota_source": "local"}

    def test_patch_source_only_skips_reprocess(self, client, engine):
        client.patch("/config", headers=AUTH, json={"quota_source": "local"})
        engine.reprocess_and_publish.assert_not_awaited()

    def test_patch_empty(self, client):
        assert client.patch("/config", headers=AUTH, json={}).status_code == 400


class TestSchedule:

    def test_invalid_config_rejected_and_not_saved(self, client, store):
        resp = client.put("/schedule", headers=AUTH, json={"policy": {"kind": "daily", "times": ["25:00"]}})

        assert resp.status_code == 422
        assert store.get(SCHEDULE_CONFIG_KEY) is None

    def test_unknown_kind_rejected(self, client):
        resp = client.put("/schedule", headers=AUTH, json={"policy": {"kind": "hourly"}})
        assert resp.status_code == 422

    def test_save_quota_reset_without_window(self, client, store):
        resp = client.put("/schedule", headers=AUTH, json={"policy": {"kind": "quota_reset"}})

        assert resp.status_code == 200
        assert resp.json()["mode"] == "quota_reset"
        assert store.get(SCHEDULE_CONFIG_KEY)["policy"]["kind"] == "quota_reset"

        schedule = client.get("/schedule", headers=AUTH).json()
        assert schedule["mode"] == "quota_reset"
        assert schedule["timers"] == []
        assert schedule["next_run"] is None

    def test_next_runs_preview(self, client, store):
        store.set(SCHEDULE_CONFIG_KEY, {"policy": {"kind": "daily", "times": ["07:00"]}})

        resp = client.get("/schedule/next-runs", headers=AUTH, params={"count": 2})

        assert resp.json() == ["2024-01-01T07:00:00+00:00", "2024-01-02T07:00:00+00:00"]

    def test_next_runs_count_bounds(self, client):
        assert client.get("/schedule/next-runs", headers=AUTH, params={"count": 0}).status_code == 422

    def test_presets(self, client):
        presets = client.get("/schedule/presets", headers=AUTH).json()
        assert presets["morning"] == {"kind": "daily", "times": ["07:00"]}
        assert set(presets) == {"morning", "workday", "every4h"}


class TestTriggerAndHistory:

    def test_manual_trigger_recorded(self, client):
        resp = client.post("/trigger", headers=AUTH, json={"models": ["gemini-3-flash"]})

        assert resp.status_code == 200
        [record] = resp.json()
        assert record["success"] is True
        assert record["trigger_source"] == "manual"
        assert record["account_email"] == "a@example.com"

        history = client.get("/history", headers=AUTH).json()
        assert [h["id"] for h in history] == [record["id"]]

        client.delete("/history", headers=AUTH)
        assert client.get("/history", headers=AUTH).json() == []

    def test_trigger_without_usable_accounts(self, client):
        resp = client.post("/trigger", headers=AUTH, json={"accounts": ["ghost@example.com"]})
        assert resp.status_code == 400


class TestAccountsEndpoints:

    def test_list(self, client):
        emails = [a["email"] for a in client.get("/accounts", headers=AUTH).json()]
        assert emails == ["a@example.com", "b@example.com"]

    def test_switch(self, client, credentials, engine):
        resp = client.post("/accounts/active", headers=AUTH, json={"email": "b@example.com"})

        assert resp.status_code == 200
        assert credentials.get_active_account() == "b@example.com"
        engine.refresh.assert_awaited_once()

    def test_switch_unknown(self, client):
        resp = client.post("/accounts/active", headers=AUTH, json={"email": "ghost@example.com"})
        assert resp.status_code == 404

    def test_remove_unknown(self, client):
        assert client.delete("/accounts/ghost@example.com", headers=AUTH).status_code == 404

    def test_import(self, client, credentials):
        resp = client.post("/accounts", headers=AUTH, json={"email": "c@example.com", "refresh_token": "r-c"})

        assert resp.status_code == 200
        assert credentials.get_credential("c@example.com").refresh_token == "r-c"


class TestGroups:

    def test_rename_group(self, client, builder, engine):
        resp = client.put("/groups/name", headers=AUTH, json={"model_ids": ["a", "b"], "name": "Flash"})

        assert resp.status_code == 200
        builder.set_group_name.assert_called_once_with(["a", "b"], "Flash")
        engine.reprocess_and_publish.assert_awaited_once()

    def test_rename_requires_models(self, client):
        resp = client.put("/groups/name", headers=AUTH, json={"model_ids": [], "name": "Flash"})
        assert resp.status_code == 422

    def test_reset_mappings(self, client, builder):
        client.delete("/groups/mappings", headers=AUTH)
        builder.reset_group_mappings.assert_called_once()


class TestAccountQuotasAndHistory:

    def test_quotas_before_refresh(self, client):
        body = client.get("/accounts/quotas", headers=AUTH).json()

        assert [s["email"] for s in body] == ["a@example.com", "b@example.com"]
        assert all(s["snapshot"] is None for s in body)

    def test_refresh_feeds_active_account_history(self, client):
        resp = client.post("/accounts/quotas/refresh", headers=AUTH)

        assert resp.status_code == 200
        assert all(s["error"] is None for s in resp.json())

        history = client.get("/quota-history", headers=AUTH, params={"range_days": 1}).json()
        assert history["email"] == "a@example.com"
        assert history["model_id"] == "g3-flash"
        assert [p["remaining_percentage"] for p in history["points"]] == [50.0]

    def test_refresh_unknown_account(self, client):
        resp = client.post("/accounts/ghost@example.com/quota/refresh", headers=AUTH)
        assert resp.status_code == 404

    def test_history_invalid_email(self, client):
        resp = client.get("/quota-history", headers=AUTH, params={"email": "not-an-email"})
        assert resp.status_code == 404

    def test_clear_history(self, client):
        client.post("/accounts/a@example.com/quota/refresh", headers=AUTH)

        first = client.delete("/quota-history", headers=AUTH, params={"email": "a@example.com"})
        second = client.delete("/quota-history", headers=AUTH, params={"email": "a@example.com"})

        assert first.json() == {"cleared": True}
        assert second.json() == {"cleared": False}
