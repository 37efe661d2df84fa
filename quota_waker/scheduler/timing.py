"""
Расчёт ближайших срабатываний и проверка временного окна.

Все функции чистые: `now` — aware datetime в локальной timezone.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Callable, Sequence

from quota_waker.scheduler.config import (
    CronSchedule,
    DailySchedule,
    IntervalSchedule,
    ScheduleConfig,
    TimeWindow,
    WeeklySchedule,
    parse_hhmm,
)
from quota_waker.scheduler.cron import CronExpression


def _js_weekday(day: datetime) -> int:
    """0 = воскресенье ... 6 = суббота."""
    return (day.weekday() + 1) % 7


def next_time_of_day(
    times: Sequence[str],
    now: datetime,
    day_allowed: Callable[[datetime], bool] | None = None,
) -> datetime | None:
    """
    Ближайший момент строго позже now: сначала оставшиеся времена сегодня,
    затем первое время ближайшего подходящего дня.
    """
    points = sorted(parse_hhmm(t) for t in times)
    if not points:
        return None

    for offset in range(8):
        day = now + timedelta(days=offset)
        if day_allowed is not None and not day_allowed(day):
            continue
        for hour, minute in points:
            candidate = datetime.combine(day.date(), time(hour, minute), tzinfo=now.tzinfo)
            if candidate > now:
                return candidate
    return None


def interval_time_points(hours: int, start: str, end: str | None) -> list[str]:
    """Точки start, start+h, ... пока час не превысит end (все в минуту start)."""
    start_h, start_m = parse_hhmm(start)
    end_h = parse_hhmm(end)[0] if end else 23
    points: list[str] = []
    hour = start_h
    while hour <= end_h:
        points.append(f"{hour:02d}:{start_m:02d}")
        hour += hours
    return points


def next_run(config: ScheduleConfig, now: datetime) -> datetime | None:
    """Ближайшее срабатывание fixed-time / cron политики. None для остальных."""
    policy = config.policy
    if isinstance(policy, DailySchedule):
        return next_time_of_day(policy.times, now)
    if isinstance(policy, WeeklySchedule):
        days = set(policy.days)
        return next_time_of_day(policy.times, now, lambda d: _js_weekday(d) in days)
    if isinstance(policy, IntervalSchedule):
        return next_time_of_day(interval_time_points(policy.hours, policy.start, policy.end), now)
    if isinstance(policy, CronSchedule):
        try:
            return CronExpression.parse(policy.expression).next_after(now)
        except ValueError:
            return None
    return None


def next_runs(config: ScheduleConfig, now: datetime, count: int = 5) -> list[datetime]:
    """Превью следующих count срабатываний."""
    result: list[datetime] = []
    cursor = now
    for _ in range(count):
        upcoming = next_run(config, cursor)
        if upcoming is None:
            break
        result.append(upcoming)
        cursor = upcoming
    return result


def in_time_window(window: TimeWindow | None, now: datetime) -> bool:
    """
    now в [start, end) по минутам суток. start > end — окно через полночь
    (22:00–06:00). Без окна — всегда True.
    """
    if window is None:
        return True
    start_h, start_m = parse_hhmm(window.start)
    end_h, end_m = parse_hhmm(window.end)
    start = start_h * 60 + start_m
    end = end_h * 60 + end_m
    current = now.hour * 60 + now.minute

    if start <= end:
        return start <= current < end
    return current >= start or current < end
