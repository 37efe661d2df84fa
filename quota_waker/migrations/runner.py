"""
Простая миграционная система для state.sqlite.

Миграции — модули m001_*, m002_* в этом пакете.
Каждый экспортирует `async def apply(data_dir: Path)`.
Применённые миграции трекаются в data_dir/.migrations.json.
Запускаются до открытия StateStore.
"""

import importlib
import json
import pkgutil
from pathlib import Path

from loguru import logger

_RECORD_FILE = ".migrations.json"


def _load_applied(data_dir: Path) -> set[str]:
    path = data_dir / _RECORD_FILE
    if not path.exists():
        return set()
    return set(json.loads(path.read_text()))


def _save_applied(data_dir: Path, applied: set[str]) -> None:
    path = data_dir / _RECORD_FILE
    path.write_text(json.dumps(sorted(applied), indent=2) + "\n")


def discover_migrations() -> list[str]:
    """Имена модулей m001_*, m002_*, ... по порядку."""
    import quota_waker.migrations as pkg

    names: list[str] = []
    for info in pkgutil.iter_modules(pkg.__path__):
        if info.name.startswith("m") and len(info.name) > 4 and info.name[1:4].isdigit():
            names.append(info.name)
    return sorted(names)


async def run_migrations(data_dir: Path) -> list[str]:
    """Обнаружить и запустить pending-миграции. Возвращает применённые сейчас."""
    data_dir.mkdir(parents=True, exist_ok=True)
    applied = _load_applied(data_dir)
    done: list[str] = []

    for name in discover_migrations():
        if name in applied:
            continue
        mod = importlib.import_module(f"quota_waker.migrations.{name}")
        await mod.apply(data_dir)
        applied.add(name)
        _save_applied(data_dir, applied)
        done.append(name)
        logger.info(f"Migration applied: {name}")
    return done
