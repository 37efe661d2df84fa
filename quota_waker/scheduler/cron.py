"""
Стандартный 5-польный cron: minute hour day-of-month month day-of-week.

Поддерживается: *, списки (1,5), диапазоны (1-5), шаги (*/15, 1-10/2),
имена месяцев и дней (JAN, MON). День недели 0-7, 0 и 7 — воскресенье.
Если ограничены оба поля дня (месяца и недели), достаточно совпадения любого.
Расширения (секунды, ?, L, W, #) не поддерживаются.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

# Поиск следующего срабатывания ограничен (например, "0 0 30 2 *" не наступит никогда)
MAX_LOOKAHEAD_DAYS = 366 * 5

_MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"], start=1
    )
}
_DAY_NAMES = {name: index for index, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])}


def _parse_value(token: str, names: dict[str, int]) -> int:
    upper = token.upper()
    if upper in names:
        return names[upper]
    if not token.isdigit():
        raise ValueError(f"Некорректное значение '{token}'")
    return int(token)


def _parse_field(spec: str, low: int, high: int, names: dict[str, int] | None = None) -> frozenset[int]:
    names = names or {}
    values: set[int] = set()
    for part in spec.split(","):
        if not part:
            raise ValueError(f"Пустой элемент в '{spec}'")

        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) == 0:
                raise ValueError(f"Некорректный шаг в '{spec}'")
            step = int(step_str)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_str, end_str = part.split("-", 1)
            start, end = _parse_value(start_str, names), _parse_value(end_str, names)
        else:
            start = _parse_value(part, names)
            # "5/15" — от 5 до конца диапазона с шагом
            end = high if step > 1 else start

        if start < low or end > high or start > end:
            raise ValueError(f"Значение вне диапазона {low}-{high} в '{spec}'")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]          # 0 = воскресенье
    dom_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron-выражение должно содержать 5 полей, получено {len(fields)}: '{expression}'"
            )
        minute, hour, dom, month, dow = fields
        days_of_week = _parse_field(dow, 0, 7, _DAY_NAMES)
        if 7 in days_of_week:
            days_of_week = (days_of_week - {7}) | {0}
        return cls(
            minutes=_parse_field(minute, 0, 59),
            hours=_parse_field(hour, 0, 23),
            days_of_month=_parse_field(dom, 1, 31),
            months=_parse_field(month, 1, 12, _MONTH_NAMES),
            days_of_week=frozenset(days_of_week),
            dom_restricted=not dom.startswith("*"),
            dow_restricted=not dow.startswith("*"),
        )

    def _day_matches(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days_of_month
        dow_ok = (day.weekday() + 1) % 7 in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def next_after(self, after: datetime) -> datetime:
        """Ближайший момент строго позже `after` (в его же timezone)."""
        start = (after + timedelta(minutes=1)).replace(second=0, microsecond=0)
        day = start.date()
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)
        for _ in range(MAX_LOOKAHEAD_DAYS):
            if self._day_matches(day):
                for hour in hours:
                    for minute in minutes:
                        candidate = datetime.combine(day, time(hour, minute), tzinfo=after.tzinfo)
                        if candidate >= start:
                            return candidate
            day += timedelta(days=1)
        raise ValueError("Cron-выражение не срабатывает в обозримом будущем")
