"""
Scheduler — конфигурация расписания, cron и таймеры.
"""

from quota_waker.scheduler.config import (
    DEFAULT_MODEL,
    DEFAULT_PROMPT,
    PRESETS,
    CronSchedule,
    DailySchedule,
    DisabledPolicy,
    IntervalSchedule,
    QuotaResetPolicy,
    ScheduleConfig,
    TimeWindow,
    WeeklySchedule,
    from_legacy,
    is_legacy_schedule,
    preset_policy,
    validate_schedule,
)
from quota_waker.scheduler.cron import CronExpression
from quota_waker.scheduler.runner import TimerRunner
from quota_waker.scheduler.timing import in_time_window, next_run, next_runs

__all__ = [
    "DEFAULT_MODEL",
    "DEFAULT_PROMPT",
    "PRESETS",
    "CronExpression",
    "CronSchedule",
    "DailySchedule",
    "DisabledPolicy",
    "IntervalSchedule",
    "QuotaResetPolicy",
    "ScheduleConfig",
    "TimeWindow",
    "TimerRunner",
    "WeeklySchedule",
    "from_legacy",
    "in_time_window",
    "is_legacy_schedule",
    "next_run",
    "next_runs",
    "preset_policy",
    "validate_schedule",
]
