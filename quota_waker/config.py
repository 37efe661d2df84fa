import json
from datetime import datetime
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo

from loguru import logger
from pydantic import Field, TypeAdapter, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _detect_system_timezone() -> str:
    """Определяет системный timezone."""
    import os

    # Сначала смотрим явную переменную TZ
    tz_env = os.environ.get("TZ")
    if tz_env:
        return tz_env

    try:
        local_tz = datetime.now().astimezone().tzinfo
        if local_tz is not None and hasattr(local_tz, "key"):
            return local_tz.key
    except (OSError, ValueError) as e:
        logger.debug(f"System timezone detection failed: {e}")

    return "UTC"


class Settings(BaseSettings):
    """Конфигурация приложения."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Источник телеметрии: local = процесс IDE на 127.0.0.1, remote = Cloud Code API
    quota_source: Literal["local", "remote"] = "remote"
    refresh_interval_seconds: int = 120

    @field_validator("refresh_interval_seconds", mode="before")
    @classmethod
    def _empty_str_to_default(cls, v: object) -> object:
        """Пустая строка из env var → дефолт."""
        if isinstance(v, str) and v.strip() == "":
            return 120
        return v

    # Опрос квот всех сохранённых аккаунтов (0 — только по запросу через API)
    accounts_refresh_interval_seconds: int = Field(300, ge=0)

    # Сеть
    request_timeout_seconds: float = 30.0
    cloudcode_base_url: str = "https://cloudcode-pa.googleapis.com"
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""

    # Локальный probe (порт и csrf-токен находит внешний discovery)
    local_probe_port: int = 0
    local_probe_csrf_token: str = ""

    # Отображение
    grouping_enabled: bool = True
    recommended_models_only: bool = True
    visible_models: list[str] = []  # JSON array в env: VISIBLE_MODELS=["MODEL_PLACEHOLDER_M18"]

    # Timezone (auto = определить из системы, или явно: Europe/Moscow, UTC, etc.)
    timezone: str = "auto"

    def get_timezone(self) -> ZoneInfo:
        """Возвращает timezone для работы с временем."""
        tz_name = self.timezone if self.timezone != "auto" else _detect_system_timezone()
        return ZoneInfo(tz_name)

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    log_level: str = "DEBUG"

    # Paths
    data_dir: Path = Path("data")

    @property
    def db_path(self) -> Path:
        return self.data_dir / "state.sqlite"


settings = Settings()

# Поля, которые можно менять через HTTP API без рестарта.
# Интервалы опроса исключены: циклы читают их один раз при старте.
MUTABLE_FIELDS: frozenset[str] = frozenset({
    "quota_source",
    "grouping_enabled",
    "recommended_models_only",
    "visible_models",
    "timezone",
})

OVERRIDES_FILE = "config_overrides.json"


def _overrides_path() -> Path:
    return settings.data_dir / OVERRIDES_FILE


def get_current_overrides() -> dict[str, object]:
    """Прочитать текущий файл overrides (пустой dict если файла нет)."""
    path = _overrides_path()
    if not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def save_overrides(overrides: dict[str, object]) -> None:
    """Сохранить overrides в JSON файл."""
    path = _overrides_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(overrides, ensure_ascii=False, indent=2), encoding="utf-8")


def apply_overrides(overrides: dict[str, object], target: Settings | None = None) -> None:
    """Применить overrides к in-memory settings (только mutable-поля, с валидацией типов)."""
    target = target or settings
    for key, value in overrides.items():
        if key not in MUTABLE_FIELDS:
            continue
        field_info = Settings.model_fields.get(key)
        if field_info is None:
            continue
        validated = TypeAdapter(field_info.annotation).validate_python(value)
        setattr(target, key, validated)


def load_overrides() -> None:
    """Загрузить overrides из файла и применить к settings."""
    overrides = get_current_overrides()
    if overrides:
        apply_overrides(overrides)
        logger.info(f"Config overrides loaded: {list(overrides.keys())}")
