"""
Pytest configuration and fixtures for the test suite.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from quota_waker.accounts.credentials import Credential, StoredCredentials
from quota_waker.config import Settings
from quota_waker.storage import MemoryStateStore
from tests.fixtures.fakes import FakeClock, FakeTokens


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_settings(tmp_path):
    """Изолированные настройки без чтения .env."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path,
        timezone="UTC",
        quota_source="remote",
        recommended_models_only=False,
        visible_models=[],
        grouping_enabled=True,
        refresh_interval_seconds=120,
    )


@pytest.fixture
def credentials(store):
    creds = StoredCredentials(store)
    creds.save_credential(Credential(email="a@example.com", refresh_token="r-a", project_id="proj-a"))
    creds.save_credential(Credential(email="b@example.com", refresh_token="r-b", project_id="proj-b"))
    creds.set_active_account("a@example.com")
    return creds


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def fake_sleep():
    """asyncio.sleep без ожидания; записывает запрошенные задержки."""
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.sleep(0)

    sleep.delays = delays
    return sleep
