"""
Telemetry Models — структуры данных квот.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def to_iso(value: datetime) -> str:
    """UTC ISO-8601 с суффиксом Z."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RawQuotaEntry:
    """Сырая запись от источника, до нормализации."""

    model_id: str                          # "MODEL_PLACEHOLDER_M18"
    label: str                             # "Gemini 3 Flash"
    remaining_fraction: float | None = None
    reset_time: str | None = None          # ISO-строка как пришла от API
    alias: str | None = None               # ключ в remote API: "gemini-3-flash"
    supports_images: bool = False
    is_recommended: bool = False
    tag_title: str | None = None


@dataclass(frozen=True)
class ModelQuotaRecord:
    """Квота одной модели в снапшоте."""

    model_id: str
    label: str
    remaining_fraction: float
    reset_time: datetime
    reset_time_valid: bool = True
    alias: str | None = None
    supports_images: bool = False
    is_recommended: bool = False
    tag_title: str | None = None

    @property
    def is_exhausted(self) -> bool:
        return self.remaining_fraction <= 0

    @property
    def remaining_percentage(self) -> float:
        return self.remaining_fraction * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "label": self.label,
            "alias": self.alias,
            "remaining_fraction": self.remaining_fraction,
            "remaining_percentage": self.remaining_percentage,
            "is_exhausted": self.is_exhausted,
            "reset_time": to_iso(self.reset_time),
            "reset_time_valid": self.reset_time_valid,
            "supports_images": self.supports_images,
            "is_recommended": self.is_recommended,
            "tag_title": self.tag_title,
        }


@dataclass(frozen=True)
class QuotaGroup:
    """Группа моделей с общим состоянием квоты."""

    group_id: str
    name: str
    model_ids: tuple[str, ...]
    remaining_fraction: float              # минимум по участникам
    reset_time: datetime                   # reset первого участника

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "name": self.name,
            "model_ids": list(self.model_ids),
            "remaining_fraction": self.remaining_fraction,
            "reset_time": to_iso(self.reset_time),
        }


@dataclass(frozen=True)
class QuotaSnapshot:
    """Опубликованное состояние квот. Не мутируется, только заменяется."""

    timestamp: datetime
    models: tuple[ModelQuotaRecord, ...] = ()
    groups: tuple[QuotaGroup, ...] | None = None
    is_connected: bool = True
    error_message: str | None = None
    source: str | None = None
    account_email: str | None = None

    @classmethod
    def offline(
        cls,
        error_message: str | None = None,
        source: str | None = None,
    ) -> "QuotaSnapshot":
        """Пустой снапшот без соединения."""
        return cls(
            timestamp=datetime.now(timezone.utc),
            is_connected=False,
            error_message=error_message,
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "source": self.source,
            "account_email": self.account_email,
            "is_connected": self.is_connected,
            "error_message": self.error_message,
            "models": [m.to_dict() for m in self.models],
            "groups": [g.to_dict() for g in self.groups] if self.groups is not None else None,
        }
