"""Five-field cron expressions (minute hour day-of-month month day-of-week).

Supports ``*``, comma lists, ``a-b`` ranges and ``/n`` steps. When both
day-of-month and day-of-week are restricted a day matches if either does,
matching classic cron. Day-of-week accepts 0-7 with both 0 and 7 meaning Sunday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from pulse.shared.clock import ensure_utc

_FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)
_SEARCH_LIMIT = timedelta(days=366 * 4)


class CronError(ValueError):
    pass


def _parse_field(raw: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in raw.split(","):
        if not part:
            raise CronError(f"empty {name} entry")
        step = 1
        if "/" in part:
            part, step_raw = part.split("/", 1)
            if not step_raw.isdigit() or int(step_raw) < 1:
                raise CronError(f"invalid {name} step: {step_raw}")
            step = int(step_raw)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_raw, end_raw = part.split("-", 1)
            if not (start_raw.isdigit() and end_raw.isdigit()):
                raise CronError(f"invalid {name} range: {part}")
            start, end = int(start_raw), int(end_raw)
        elif part.isdigit():
            start = int(part)
            end = high if step > 1 else start
        else:
            raise CronError(f"invalid {name} value: {part}")
        if start < low or end > high or start > end:
            raise CronError(f"{name} out of range: {part}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        fields = expression.split()
        if len(fields) != 5:
            raise CronError(f"expected 5 fields, got {len(fields)}: {expression!r}")
        parsed = [
            _parse_field(raw, name, low, high)
            for raw, (name, low, high) in zip(fields, _FIELD_RANGES)
        ]
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])
        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            day_restricted=not fields[2].startswith("*"),
            weekday_restricted=not fields[4].startswith("*"),
        )

    def _day_matches(self, moment: datetime) -> bool:
        # Python: Monday=0; cron: Sunday=0
        cron_weekday = (moment.weekday() + 1) % 7
        day_ok = moment.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """Return the first matching minute strictly after ``moment``."""
        start = ensure_utc(moment).replace(second=0, microsecond=0) + timedelta(minutes=1)
        candidate = start
        while candidate - start <= _SEARCH_LIMIT:
            if candidate.month not in self.months:
                month = candidate.month + 1
                year = candidate.year + (1 if month > 12 else 0)
                candidate = candidate.replace(
                    year=year, month=1 if month > 12 else month, day=1, hour=0, minute=0
                )
                continue
            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise CronError(f"no run time found for {self.expression!r}")
