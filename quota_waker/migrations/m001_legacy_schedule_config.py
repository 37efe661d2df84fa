"""Перевод плоского schedule_config (флаги enabled/wakeOnReset/crontab) в tagged union."""

import json
from pathlib import Path

import aiosqlite
from loguru import logger

from quota_waker.scheduler.config import from_legacy, is_legacy_schedule
from quota_waker.storage import SCHEDULE_CONFIG_KEY


async def apply(data_dir: Path) -> None:
    db_path = data_dir / "state.sqlite"
    if not db_path.exists():
        return

    db = await aiosqlite.connect(str(db_path))
    try:
        cursor = await db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='state'"
        )
        if not await cursor.fetchone():
            return

        cursor = await db.execute("SELECT value FROM state WHERE key = ?", (SCHEDULE_CONFIG_KEY,))
        row = await cursor.fetchone()
        if not row:
            return

        data = json.loads(row[0])
        if not isinstance(data, dict) or not is_legacy_schedule(data):
            return

        config = from_legacy(data)
        await db.execute(
            "UPDATE state SET value = ?, updated_at = CURRENT_TIMESTAMP WHERE key = ?",
            (json.dumps(config.model_dump(mode="json"), ensure_ascii=False), SCHEDULE_CONFIG_KEY),
        )
        await db.commit()
        logger.info(f"Legacy schedule config migrated to policy '{config.policy.kind}'")
    finally:
        await db.close()
