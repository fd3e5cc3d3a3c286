"""
Schedule cadences: cron expressions, presets, and fixed intervals.

All arithmetic is done on timezone-aware UTC datetimes.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import FrozenSet, Iterator, Optional, Union

from eltflow.exceptions import ConfigError

PRESETS = {
    '@hourly': '0 * * * *',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@weekly': '0 0 * * 0',
    '@monthly': '0 0 1 * *',
    '@yearly': '0 0 1 1 *',
}

INTERVAL_PATTERN = re.compile(r'^(\d+)\s*([mhdw])$')
INTERVAL_UNITS = {'m': 'minutes', 'h': 'hours', 'd': 'days', 'w': 'weeks'}

# (name, low, high) for the five cron fields
CRON_FIELDS = [
    ('minute', 0, 59),
    ('hour', 0, 23),
    ('day of month', 1, 31),
    ('month', 1, 12),
    ('day of week', 0, 7),
]

MAX_LOOKAHEAD = timedelta(days=366 * 5)


def ensure_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


class Cadence(ABC):
    """When scheduled runs fire."""

    expression: str

    @abstractmethod
    def next_after(self, moment: datetime) -> datetime:
        """First fire time strictly after ``moment``."""

    @abstractmethod
    def latest_at_or_before(self, moment: datetime) -> Optional[datetime]:
        """Most recent fire time at or before ``moment``, or None if there is none."""

    def fire_times(self, start: datetime, end: datetime) -> Iterator[datetime]:
        """Fire times ``t`` with ``start <= t <= end``, in order."""
        current = self.next_after(ensure_utc(start) - timedelta(microseconds=1))
        end = ensure_utc(end)
        while current <= end:
            yield current
            current = self.next_after(current)

    @staticmethod
    def parse(expression: Union[str, timedelta], anchor: Optional[datetime] = None) -> 'Cadence':
        """Parse a cadence.

        Args:
            expression: A preset (``@daily``), a five-field cron expression, an
                interval such as ``30m``, ``6h`` or ``1d``, or a timedelta
            anchor: Start of the first interval; required for intervals

        Raises:
            ConfigError: If the expression is not understood
        """
        if isinstance(expression, timedelta):
            return IntervalCadence(expression, ensure_utc(anchor or datetime.now(UTC)))

        text = str(expression).strip()
        if text.lower() in PRESETS:
            return CronCadence.parse(PRESETS[text.lower()], expression=text)

        match = INTERVAL_PATTERN.match(text.lower())
        if match:
            amount, unit = match.groups()
            delta = timedelta(**{INTERVAL_UNITS[unit]: int(amount)})
            return IntervalCadence(delta, ensure_utc(anchor or datetime.now(UTC)), expression=text)

        return CronCadence.parse(text)


class IntervalCadence(Cadence):
    """Fires every ``delta``, counting from ``anchor``."""

    def __init__(self, delta: timedelta, anchor: datetime, expression: Optional[str] = None):
        if delta <= timedelta(0):
            raise ConfigError(f'Schedule interval must be positive, got {delta}')
        self.delta = delta
        self.anchor = ensure_utc(anchor)
        self.expression = expression or str(delta)

    def next_after(self, moment: datetime) -> datetime:
        moment = ensure_utc(moment)
        if moment < self.anchor:
            return self.anchor
        steps = (moment - self.anchor) // self.delta + 1
        return self.anchor + steps * self.delta

    def latest_at_or_before(self, moment: datetime) -> Optional[datetime]:
        moment = ensure_utc(moment)
        if moment < self.anchor:
            return None
        return self.anchor + ((moment - self.anchor) // self.delta) * self.delta

    def __repr__(self) -> str:
        return f'IntervalCadence({self.expression!r})'


def _parse_cron_field(text: str, name: str, low: int, high: int) -> FrozenSet[int]:
    values = set()
    for part in text.split(','):
        step = 1
        if '/' in part:
            part, step_text = part.split('/', 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigError(f'Invalid step "{step_text}" in cron {name} field')
            step = int(step_text)

        if part == '*':
            start, end = low, high
        elif '-' in part:
            start_text, end_text = part.split('-', 1)
            if not (start_text.isdigit() and end_text.isdigit()):
                raise ConfigError(f'Invalid range "{part}" in cron {name} field')
            start, end = int(start_text), int(end_text)
        elif part.isdigit():
            start = int(part)
            end = high if step > 1 else start
        else:
            raise ConfigError(f'Invalid value "{part}" in cron {name} field')

        if start < low or end > high or start > end:
            raise ConfigError(f'Cron {name} field out of range {low}-{high}: "{text}"')
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronCadence(Cadence):
    """Standard five-field cron: minute hour day-of-month month day-of-week."""

    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    def parse(cls, text: str, expression: Optional[str] = None) -> 'CronCadence':
        parts = text.split()
        if len(parts) != 5:
            raise ConfigError(f'Cron expression must have 5 fields, got {len(parts)}: "{text}"')

        fields = [_parse_cron_field(part, *spec) for part, spec in zip(parts, CRON_FIELDS)]
        # Both 0 and 7 mean Sunday
        weekdays = frozenset(0 if d == 7 else d for d in fields[4])
        return cls(
            expression=expression or text,
            minutes=fields[0],
            hours=fields[1],
            days=fields[2],
            months=fields[3],
            weekdays=weekdays,
            days_restricted=parts[2] != '*',
            weekdays_restricted=parts[4] != '*',
        )

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        # Classic cron: when both fields are restricted, either may match
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        if self.days_restricted:
            return day_ok
        if self.weekdays_restricted:
            return weekday_ok
        return True

    def next_after(self, moment: datetime) -> datetime:
        moment = ensure_utc(moment)
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = moment + MAX_LOOKAHEAD

        while candidate <= limit:
            if candidate.month not in self.months:
                year = candidate.year + (candidate.month == 12)
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
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

        raise ConfigError(f'Cron expression "{self.expression}" never fires')

    def latest_at_or_before(self, moment: datetime) -> Optional[datetime]:
        moment = ensure_utc(moment)
        window = timedelta(days=1)
        while window <= MAX_LOOKAHEAD:
            latest = None
            for fire in self.fire_times(moment - window, moment):
                latest = fire
            if latest is not None:
                return latest
            window *= 2
        return None

    def __repr__(self) -> str:
        return f'CronCadence({self.expression!r})'
