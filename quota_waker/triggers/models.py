"""
Trigger Models — структуры данных для wake-триггеров.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from quota_waker.scheduler.config import DEFAULT_MODEL, DEFAULT_PROMPT

TriggerType = Literal["manual", "auto"]
TriggerSourceName = Literal["manual", "scheduled", "cron", "quota_reset", "fallback"]


@dataclass
class ModelOutcome:
    """Результат wake-запроса к одной модели."""

    model: str
    ok: bool
    message: str                           # ответ модели или текст ошибки
    duration_ms: int = 0
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    trace_id: str | None = None

    def summary_line(self) -> str:
        if not self.ok:
            return f"[{self.model}]: ERROR {self.message} ({self.duration_ms}ms)"
        parts = [f"{self.duration_ms}ms"]
        if self.prompt_tokens is not None or self.completion_tokens is not None or self.total_tokens is not None:
            parts.append(
                f"tokens={_fmt(self.prompt_tokens)}+{_fmt(self.completion_tokens)}={_fmt(self.total_tokens)}"
            )
        if self.trace_id:
            parts.append(f"traceId={self.trace_id}")
        return f"[{self.model}]: {self.message} ({', '.join(parts)})"


def _fmt(value: int | None) -> str:
    return "?" if value is None else str(value)


@dataclass
class TriggerRecord:
    """Одна запись истории: результат одного dispatch для одного аккаунта."""

    success: bool
    prompt: str
    message: str
    duration_ms: int
    trigger_type: TriggerType
    trigger_source: TriggerSourceName
    account_email: str | None = None
    models: list[str] = field(default_factory=list)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriggerRecord":
        data = dict(data)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)
