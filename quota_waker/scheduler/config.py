"""
ScheduleConfig — конфигурация автоматических wake-триггеров.

Политика — tagged union: ровно один из режимов daily / weekly / interval /
cron / quota_reset / off. Взаимоисключение режимов обеспечено типом.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from quota_waker.errors import ScheduleValidationError
from quota_waker.scheduler.cron import CronExpression

DEFAULT_MODEL = "gemini-3-flash"
DEFAULT_PROMPT = "hi"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: str) -> tuple[int, int]:
    """'07:30' → (7, 30)."""
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError(f"Некорректное время '{value}', ожидается HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Некорректное время '{value}', ожидается HH:MM")
    return hour, minute


def _normalize_times(times: list[str]) -> list[str]:
    parsed = sorted({parse_hhmm(t) for t in times})
    return [f"{h:02d}:{m:02d}" for h, m in parsed]


class _Policy(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DailySchedule(_Policy):
    """N раз в день."""

    kind: Literal["daily"] = "daily"
    times: list[str] = Field(min_length=1)

    @field_validator("times")
    @classmethod
    def _check_times(cls, v: list[str]) -> list[str]:
        return _normalize_times(v)


class WeeklySchedule(_Policy):
    """Дни недели (0 = воскресенье) × время."""

    kind: Literal["weekly"] = "weekly"
    days: list[int] = Field(min_length=1)
    times: list[str] = Field(min_length=1)

    @field_validator("times")
    @classmethod
    def _check_times(cls, v: list[str]) -> list[str]:
        return _normalize_times(v)

    @field_validator("days")
    @classmethod
    def _check_days(cls, v: list[int]) -> list[int]:
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"День недели {day} вне диапазона 0-6")
        return sorted(set(v))


class IntervalSchedule(_Policy):
    """Каждые N часов между start и end."""

    kind: Literal["interval"] = "interval"
    hours: int = Field(4, ge=1, le=23)
    start: str = "07:00"
    end: str | None = "22:00"

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, v: str | None) -> str | None:
        if v is None:
            return None
        hour, minute = parse_hhmm(v)
        return f"{hour:02d}:{minute:02d}"


class CronSchedule(_Policy):
    kind: Literal["cron"] = "cron"
    expression: str

    @field_validator("expression")
    @classmethod
    def _check_expression(cls, v: str) -> str:
        CronExpression.parse(v)
        return " ".join(v.split())


class TimeWindow(BaseModel):
    """Окно [start, end) по локальным часам. start > end — окно через полночь."""

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, v: str) -> str:
        hour, minute = parse_hhmm(v)
        return f"{hour:02d}:{minute:02d}"

    @model_validator(mode="after")
    def _check_not_empty(self) -> "TimeWindow":
        if self.start == self.end:
            raise ValueError("Начало и конец окна совпадают")
        return self


class QuotaResetPolicy(_Policy):
    """Триггер по восстановлению квоты, с окном и резервными таймерами."""

    kind: Literal["quota_reset"] = "quota_reset"
    time_window: TimeWindow | None = None
    fallback_times: list[str] = []

    @field_validator("fallback_times")
    @classmethod
    def _check_fallback_times(cls, v: list[str]) -> list[str]:
        return _normalize_times(v)


class DisabledPolicy(_Policy):
    kind: Literal["off"] = "off"


Policy = Annotated[
    Union[DailySchedule, WeeklySchedule, IntervalSchedule, CronSchedule, QuotaResetPolicy, DisabledPolicy],
    Field(discriminator="kind"),
]

FIXED_TIME_KINDS = frozenset({"daily", "weekly", "interval"})


class ScheduleConfig(BaseModel):
    """Полная конфигурация: политика + кого и чем будить."""

    model_config = ConfigDict(extra="forbid")

    policy: Policy = Field(default_factory=DisabledPolicy)
    # None — выбор ни разу не настраивался (берём активный аккаунт)
    selected_accounts: list[str] | None = None
    selected_models: list[str] = Field(default_factory=lambda: [DEFAULT_MODEL])
    custom_prompt: str | None = None
    max_output_tokens: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_selection(self) -> "ScheduleConfig":
        if not self.selected_models:
            raise ValueError("Нужно выбрать хотя бы одну модель")
        if self.selected_accounts is not None and not self.selected_accounts and self.policy.kind != "off":
            raise ValueError("Нужно выбрать хотя бы один аккаунт")
        return self

    @property
    def mode(self) -> Literal["fixed", "cron", "quota_reset", "off"]:
        kind = self.policy.kind
        if kind in FIXED_TIME_KINDS:
            return "fixed"
        return kind  # type: ignore[return-value]


def validate_schedule(data: dict[str, Any] | ScheduleConfig) -> ScheduleConfig:
    """Валидирует конфигурацию. Ошибка → ScheduleValidationError, ничего не сохраняется."""
    try:
        if isinstance(data, ScheduleConfig):
            return ScheduleConfig.model_validate(data.model_dump())
        return ScheduleConfig.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise ScheduleValidationError(details) from e


# ==================== Presets ====================

PRESETS: dict[str, Policy] = {
    "morning": DailySchedule(times=["07:00"]),
    "workday": WeeklySchedule(days=[1, 2, 3, 4, 5], times=["09:00"]),
    "every4h": IntervalSchedule(hours=4, start="07:00", end="23:00"),
}


def preset_policy(name: str) -> Policy:
    if name not in PRESETS:
        available = ", ".join(PRESETS)
        raise ScheduleValidationError(f"Неизвестный пресет: {name}. Доступные: {available}")
    return PRESETS[name].model_copy(deep=True)


# ==================== Legacy ====================


_LEGACY_KEYS = frozenset({"enabled", "wakeOnReset", "crontab", "repeatMode", "dailyTimes"})


def is_legacy_schedule(data: dict[str, Any]) -> bool:
    return "policy" not in data and bool(_LEGACY_KEYS & data.keys())


def from_legacy(data: dict[str, Any]) -> ScheduleConfig:
    """
    Старый плоский формат (флаги enabled / wakeOnReset / crontab / repeatMode)
    → tagged union.

    Приоритет: quota_reset (wakeOnReset + enabled) > cron > fixed-time > off.
    """
    enabled = bool(data.get("enabled"))
    policy: dict[str, Any]

    if enabled and data.get("wakeOnReset"):
        window = None
        if data.get("timeWindowEnabled") and data.get("timeWindowStart") and data.get("timeWindowEnd"):
            window = {"start": data["timeWindowStart"], "end": data["timeWindowEnd"]}
        policy = {
            "kind": "quota_reset",
            "time_window": window,
            "fallback_times": list(data.get("fallbackTimes") or []) if window else [],
        }
    elif enabled and (data.get("crontab") or "").strip():
        policy = {"kind": "cron", "expression": data["crontab"]}
    elif enabled:
        mode = data.get("repeatMode", "daily")
        if mode == "weekly":
            policy = {"kind": "weekly", "days": data.get("weeklyDays") or [], "times": data.get("weeklyTimes") or []}
        elif mode == "interval":
            policy = {
                "kind": "interval",
                "hours": data.get("intervalHours") or 4,
                "start": data.get("intervalStartTime") or "07:00",
                "end": data.get("intervalEndTime"),
            }
        else:
            policy = {"kind": "daily", "times": data.get("dailyTimes") or []}
    else:
        policy = {"kind": "off"}

    return validate_schedule({
        "policy": policy,
        "selected_accounts": data.get("selectedAccounts"),
        "selected_models": data.get("selectedModels") or [DEFAULT_MODEL],
        "custom_prompt": data.get("customPrompt") or None,
        "max_output_tokens": data.get("maxOutputTokens") or 0,
    })
