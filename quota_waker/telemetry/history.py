"""
QuotaHistory — история остатка квоты по группам моделей, на аккаунт.

Точка добавляется, когда меняется процент. На 100% последняя точка
перезаписывается, пока обратный отсчёт до reset идёт ровно; скачок
отсчёта вверх — это reset, резкое падение — начало расхода.
Хранится не больше 30 дней и 5000 точек на группу.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

from loguru import logger

from quota_waker.storage import QUOTA_HISTORY_KEY, StateStore
from quota_waker.telemetry.models import QuotaSnapshot

HISTORY_DAYS_LIMIT = 30
MAX_POINTS_PER_MODEL = 5000
DEFAULT_RANGE_DAYS = 7

PointAction = Literal["add", "overwrite", "skip"]


@dataclass(frozen=True)
class HistoryGroup:
    group_id: str
    label: str
    model_ids: tuple[str, ...]


# Порядок групп = порядок моделей в ответе query()
HISTORY_GROUPS: tuple[HistoryGroup, ...] = (
    HistoryGroup(
        "claude",
        "Claude",
        ("MODEL_PLACEHOLDER_M35", "MODEL_PLACEHOLDER_M26", "MODEL_OPENAI_GPT_OSS_120B_MEDIUM"),
    ),
    HistoryGroup("g3-pro", "G3-Pro", ("MODEL_PLACEHOLDER_M37", "MODEL_PLACEHOLDER_M36")),
    HistoryGroup("g3-flash", "G3-Flash", ("MODEL_PLACEHOLDER_M18",)),
    HistoryGroup("g3-image", "G3-Image", ("MODEL_PLACEHOLDER_M9",)),
)

_GROUP_RANK = {group.group_id: index for index, group in enumerate(HISTORY_GROUPS)}


@dataclass
class HistoryPoint:
    timestamp: int                          # unix ms
    remaining_percentage: float
    reset_time: int | None = None           # unix ms
    countdown_seconds: int | None = None
    is_start: bool = False
    is_reset: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryPoint":
        return cls(
            timestamp=int(data["timestamp"]),
            remaining_percentage=float(data["remaining_percentage"]),
            reset_time=data.get("reset_time"),
            countdown_seconds=data.get("countdown_seconds"),
            is_start=bool(data.get("is_start")),
            is_reset=bool(data.get("is_reset")),
        )


@dataclass
class HistoryModel:
    """Точки одной группы моделей."""

    model_id: str
    label: str
    points: list[HistoryPoint] = field(default_factory=list)
    # Падение отсчёта на 100% уже отмечено как старт
    countdown_drop_at_100: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "label": self.label,
            "points": [p.to_dict() for p in self.points],
            "countdown_drop_at_100": self.countdown_drop_at_100,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryModel":
        return cls(
            model_id=data["model_id"],
            label=data.get("label") or data["model_id"],
            points=[HistoryPoint.from_dict(p) for p in data.get("points", [])],
            countdown_drop_at_100=bool(data.get("countdown_drop_at_100")),
        )


@dataclass(frozen=True)
class GroupReading:
    group: HistoryGroup
    remaining_percentage: float
    reset_time: int | None
    countdown_seconds: int | None


# ==================== Helpers ====================


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str | None) -> bool:
    return isinstance(email, str) and "@" in email


def normalize_range_days(range_days: float | None) -> int:
    """Диапазон запроса: 1, 7 или 30 дней."""
    if range_days is None or not math.isfinite(range_days) or range_days <= 0:
        return DEFAULT_RANGE_DAYS
    if range_days <= 1:
        return 1
    if range_days <= 7:
        return 7
    return HISTORY_DAYS_LIMIT


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _countdown_minutes(seconds: int | None) -> int | None:
    if seconds is None:
        return None
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def extract_groups(snapshot: QuotaSnapshot, now: datetime) -> list[GroupReading]:
    """По каждой группе — участник с минимальным остатком."""
    by_id = {model.model_id: model for model in snapshot.models}
    readings: list[GroupReading] = []
    for group in HISTORY_GROUPS:
        candidates = [by_id[m] for m in group.model_ids if m in by_id]
        if not candidates:
            continue
        selected = min(candidates, key=lambda m: m.remaining_fraction)
        reset_time = countdown = None
        if selected.reset_time_valid:
            reset_time = _epoch_ms(selected.reset_time)
            countdown = max(0, round((selected.reset_time - now).total_seconds()))
        readings.append(GroupReading(
            group=group,
            remaining_percentage=round(selected.remaining_fraction * 100, 2),
            reset_time=reset_time,
            countdown_seconds=countdown,
        ))
    return readings


def resolve_point_action(
    last: HistoryPoint | None,
    point: HistoryPoint,
    model: HistoryModel,
) -> tuple[PointAction, bool, bool]:
    """
    Что сделать с новой точкой.

    Returns:
        (action, is_start, is_reset). Обновляет model.countdown_drop_at_100.
    """
    if last is None:
        return "add", False, False

    last_pct = last.remaining_percentage
    next_pct = point.remaining_percentage

    if next_pct < 100:
        model.countdown_drop_at_100 = False
        if last_pct == 100:
            return "add", True, False
        if last_pct == next_pct:
            return "skip", False, False
        if next_pct > last_pct:
            return "add", False, True
        return "add", False, False

    if last_pct < 100:
        model.countdown_drop_at_100 = False
        return "add", False, True

    last_minutes = _countdown_minutes(last.countdown_seconds)
    next_minutes = _countdown_minutes(point.countdown_seconds)
    if last_minutes is None or next_minutes is None:
        return "overwrite", False, False

    delta = next_minutes - last_minutes
    if delta > 1:
        model.countdown_drop_at_100 = False
        return "add", False, True
    if delta < -2:
        if model.countdown_drop_at_100:
            return "overwrite", False, False
        model.countdown_drop_at_100 = True
        return "add", True, False
    return "overwrite", False, False


# ==================== Store ====================


class QuotaHistory:
    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def on_snapshot(self, snapshot: QuotaSnapshot) -> None:
        """Listener TelemetryEngine: пишет историю аккаунта, с которого снят снапшот."""
        if snapshot.account_email:
            self.record(snapshot.account_email, snapshot)

    def record(self, email: str | None, snapshot: QuotaSnapshot) -> bool:
        """
        Добавляет точки по всем группам снапшота.

        Returns:
            True, если история изменилась.
        """
        if not snapshot.is_connected or not is_valid_email(email):
            return False

        now = self._clock()
        readings = extract_groups(snapshot, now)
        if not readings:
            return False

        email = normalize_email(email)
        models = self._load(email)
        now_ms = _epoch_ms(now)
        cutoff_ms = _epoch_ms(now - timedelta(days=HISTORY_DAYS_LIMIT))
        changed = False

        for reading in readings:
            group = reading.group
            model = models.get(group.group_id)
            if model is None:
                model = HistoryModel(model_id=group.group_id, label=group.label)
                models[group.group_id] = model
                changed = True
            elif model.label != group.label:
                model.label = group.label
                changed = True

            point = HistoryPoint(
                timestamp=now_ms,
                remaining_percentage=reading.remaining_percentage,
                reset_time=reading.reset_time,
                countdown_seconds=reading.countdown_seconds,
            )
            last = model.points[-1] if model.points else None
            action, is_start, is_reset = resolve_point_action(last, point, model)
            if action == "skip":
                continue

            point.is_start = is_start
            point.is_reset = is_reset
            if action == "overwrite" and last is not None:
                point.is_start = point.is_start or last.is_start
                point.is_reset = point.is_reset or last.is_reset
                model.points[-1] = point
            else:
                model.points.append(point)

            fresh = [p for p in model.points if p.timestamp >= cutoff_ms]
            model.points = fresh[-MAX_POINTS_PER_MODEL:]
            changed = True

        if changed:
            self._save(email, models, now_ms)
        return changed

    def query(
        self,
        email: str | None,
        range_days: float | None = None,
        model_id: str | None = None,
    ) -> dict[str, Any] | None:
        """
        Точки одной группы за 1/7/30 дней.

        Неизвестный model_id → первая группа. None, если email невалиден.
        """
        if not is_valid_email(email):
            return None
        email = normalize_email(email)
        days = normalize_range_days(range_days)
        models = self._load(email)

        options = sorted(
            ({"model_id": m.model_id, "label": m.label} for m in models.values()),
            key=lambda o: (_GROUP_RANK.get(o["model_id"], len(_GROUP_RANK)), o["label"]),
        )
        known = {o["model_id"] for o in options}
        selected = model_id if model_id in known else (options[0]["model_id"] if options else None)

        points: list[HistoryPoint] = []
        if selected is not None:
            cutoff_ms = _epoch_ms(self._clock() - timedelta(days=days))
            points = sorted(
                (p for p in models[selected].points if p.timestamp >= cutoff_ms),
                key=lambda p: p.timestamp,
            )

        return {
            "email": email,
            "range_days": days,
            "model_id": selected,
            "models": options,
            "points": [p.to_dict() for p in points],
        }

    def clear(self, email: str | None = None) -> bool:
        """Удаляет историю аккаунта, без email — всю."""
        index: list[str] = self._store.get(QUOTA_HISTORY_KEY, []) or []
        if email is None:
            for known in index:
                self._store.delete(_record_key(known))
            self._store.set(QUOTA_HISTORY_KEY, [])
            logger.info(f"Quota history cleared for {len(index)} accounts")
            return True

        if not is_valid_email(email):
            return False
        email = normalize_email(email)
        if email not in index:
            return False
        self._store.delete(_record_key(email))
        self._store.set(QUOTA_HISTORY_KEY, [e for e in index if e != email])
        logger.info(f"Quota history cleared for {email}")
        return True

    def _load(self, email: str) -> dict[str, HistoryModel]:
        data = self._store.get(_record_key(email)) or {}
        models: dict[str, HistoryModel] = {}
        for group_id, item in (data.get("models") or {}).items():
            try:
                models[group_id] = HistoryModel.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt quota history for {email}/{group_id}: {e}")
        return models

    def _save(self, email: str, models: dict[str, HistoryModel], updated_at: int) -> None:
        self._store.set(_record_key(email), {
            "email": email,
            "updated_at": updated_at,
            "models": {group_id: m.to_dict() for group_id, m in models.items()},
        })
        index: list[str] = self._store.get(QUOTA_HISTORY_KEY, []) or []
        if email not in index:
            self._store.set(QUOTA_HISTORY_KEY, [*index, email])


def _record_key(email: str) -> str:
    digest = hashlib.sha256(email.encode()).hexdigest()
    return f"{QUOTA_HISTORY_KEY}:{digest}"
