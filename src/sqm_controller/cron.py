"""
Five-field cron expressions for the calibration schedule

Supports the usual subset: "*", numbers, ranges "a-b", lists "a,b" and
steps "*/n" or "a-b/n". Day-of-week uses cron numbering (0 or 7 = Sunday).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Optional

# (name, low, high)
_FIELDS = (
    ('minute', 0, 59),
    ('hour', 0, 23),
    ('day of month', 1, 31),
    ('month', 1, 12),
    ('day of week', 0, 7),
)


def _parse_field(text: str, name: str, low: int, high: int) -> FrozenSet[int]:
    values = set()
    for part in text.split(','):
        step = 1
        if '/' in part:
            part, step_text = part.split('/', 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"{name}: step must be positive")

        if part == '*':
            start, end = low, high
        elif '-' in part:
            start_text, end_text = part.split('-', 1)
            start, end = int(start_text), int(end_text)
        else:
            start = end = int(part)

        if start < low or end > high or start > end:
            raise ValueError(f"{name}: {part!r} outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    any_day: bool
    any_weekday: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        fields = str(expression).split()
        if len(fields) != 5:
            raise ValueError(f"expected 5 fields, got {len(fields)}")

        parsed = [_parse_field(text, *limits) for text, limits in zip(fields, _FIELDS)]
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])
        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            any_day=fields[2] == '*',
            any_weekday=fields[4] == '*',
        )

    def matches(self, when: datetime) -> bool:
        if when.minute not in self.minutes or when.hour not in self.hours:
            return False
        if when.month not in self.months:
            return False

        # Python: Monday=0; cron: Sunday=0
        weekday = (when.weekday() + 1) % 7
        day_ok = when.day in self.days
        weekday_ok = weekday in self.weekdays
        if self.any_day or self.any_weekday:
            return day_ok and weekday_ok
        # Both restricted: either may match
        return day_ok or weekday_ok

    def next_after(self, when: datetime, horizon_days: int = 366) -> Optional[datetime]:
        """First matching minute strictly after `when`."""
        candidate = when.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=horizon_days)
        while candidate < limit:
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return None


def is_valid(expression) -> bool:
    if not isinstance(expression, str):
        return False
    try:
        CronExpression.parse(expression)
    except ValueError:
        return False
    return True
