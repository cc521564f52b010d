"""Six-field cron expressions with a leading seconds field.

An expression is ``second minute hour day-of-month month day-of-week``.
Each field accepts ``*`` or ``?``, single values, ranges ``a-b``, steps
``x/n`` and comma-separated lists. Months and weekdays may be given by
their three-letter English names. Descriptors such as ``@hourly`` are not
accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Optional, Tuple

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1
    )
}
_DAY_NAMES = {name: number for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))}


@dataclass(frozen=True)
class _Field:
    name: str
    low: int
    high: int
    names: Optional[Dict[str, int]] = None


_FIELDS = (
    _Field("second", 0, 59),
    _Field("minute", 0, 59),
    _Field("hour", 0, 23),
    _Field("day of month", 1, 31),
    _Field("month", 1, 12, _MONTH_NAMES),
    _Field("day of week", 0, 6, _DAY_NAMES),
)

_SEARCH_YEARS = 5


class CronError(ValueError):
    """A cron expression could not be parsed."""


@dataclass(frozen=True)
class CronSchedule:
    """The set of times matched by a parsed cron expression."""

    seconds: FrozenSet[int]
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_star: bool = False
    weekdays_star: bool = False

    def _day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days
        dow = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_star or self.weekdays_star:
            return dom and dow
        return dom or dow

    def next(self, after: datetime) -> Optional[datetime]:
        """The first matching time strictly after ``after``, to the second.

        Returns None when nothing matches within five years.
        """
        moment = after.replace(microsecond=0) + timedelta(seconds=1)
        limit = moment.year + _SEARCH_YEARS
        while moment.year <= limit:
            moment, wrapped = _fit(
                moment,
                lambda m: m.month in self.months,
                lambda m: m.replace(day=1, hour=0, minute=0, second=0),
                _add_month,
                lambda m: m.month == 1,
            )
            if wrapped:
                continue
            moment, wrapped = _fit(
                moment,
                self._day_matches,
                lambda m: m.replace(hour=0, minute=0, second=0),
                lambda m: m + timedelta(days=1),
                lambda m: m.day == 1,
            )
            if wrapped:
                continue
            moment, wrapped = _fit(
                moment,
                lambda m: m.hour in self.hours,
                lambda m: m.replace(minute=0, second=0),
                lambda m: m + timedelta(hours=1),
                lambda m: m.hour == 0,
            )
            if wrapped:
                continue
            moment, wrapped = _fit(
                moment,
                lambda m: m.minute in self.minutes,
                lambda m: m.replace(second=0),
                lambda m: m + timedelta(minutes=1),
                lambda m: m.minute == 0,
            )
            if wrapped:
                continue
            moment, wrapped = _fit(
                moment,
                lambda m: m.second in self.seconds,
                lambda m: m,
                lambda m: m + timedelta(seconds=1),
                lambda m: m.second == 0,
            )
            if wrapped:
                continue
            return moment
        return None


def _add_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


def _fit(
    moment: datetime,
    matches: Callable[[datetime], bool],
    truncate: Callable[[datetime], datetime],
    advance: Callable[[datetime], datetime],
    wrapped: Callable[[datetime], bool],
) -> Tuple[datetime, bool]:
    """Advance one field until it matches; report whether a higher field rolled over."""
    truncated = False
    while not matches(moment):
        if not truncated:
            moment = truncate(moment)
            truncated = True
        moment = advance(moment)
        if wrapped(moment):
            return moment, True
    return moment, False


def _parse_value(text: str, field: _Field) -> int:
    lowered = text.lower()
    if field.names and lowered in field.names:
        return field.names[lowered]
    if not text.isdigit():
        raise CronError(f"failed to parse {field.name} value {text!r}")
    return int(text)


def _parse_range(expr: str, field: _Field) -> Tuple[FrozenSet[int], bool]:
    pieces = expr.split("/")
    if len(pieces) > 2:
        raise CronError(f"too many slashes in {field.name}: {expr!r}")
    bounds = pieces[0].split("-")
    if len(bounds) > 2:
        raise CronError(f"too many hyphens in {field.name}: {expr!r}")

    star = False
    if bounds[0] in ("*", "?"):
        if len(bounds) > 1:
            raise CronError(f"invalid range in {field.name}: {expr!r}")
        start, end, star = field.low, field.high, True
    else:
        start = _parse_value(bounds[0], field)
        end = _parse_value(bounds[1], field) if len(bounds) == 2 else start

    step = 1
    if len(pieces) == 2:
        if not pieces[1].isdigit():
            raise CronError(f"failed to parse step in {field.name}: {expr!r}")
        step = int(pieces[1])
        if len(bounds) == 1:
            end = field.high
        if step > 1:
            star = False

    if start < field.low:
        raise CronError(f"beginning of {field.name} range ({start}) below minimum ({field.low}): {expr!r}")
    if end > field.high:
        raise CronError(f"end of {field.name} range ({end}) above maximum ({field.high}): {expr!r}")
    if start > end:
        raise CronError(f"beginning of {field.name} range ({start}) beyond end ({end}): {expr!r}")
    if step == 0:
        raise CronError(f"step of {field.name} range should be a positive number: {expr!r}")
    return frozenset(range(start, end + 1, step)), star


def _parse_field(text: str, field: _Field) -> Tuple[FrozenSet[int], bool]:
    values: FrozenSet[int] = frozenset()
    star = False
    for part in text.split(","):
        part_values, part_star = _parse_range(part, field)
        values |= part_values
        star = star or part_star
    return values, star


def parse_cron(expr: str) -> CronSchedule:
    """Parse a six-field cron expression; raise CronError when it is malformed."""
    if not expr:
        raise CronError("empty spec string")
    if expr.startswith("@"):
        raise CronError(f"parser does not accept descriptors: {expr}")
    parts = expr.split()
    if len(parts) != len(_FIELDS):
        raise CronError(f"expected exactly {len(_FIELDS)} fields, found {len(parts)}: {expr}")
    parsed = [_parse_field(part, field) for part, field in zip(parts, _FIELDS)]
    (seconds, _), (minutes, _), (hours, _), (days, days_star), (months, _), (weekdays, weekdays_star) = parsed
    return CronSchedule(
        seconds=seconds,
        minutes=minutes,
        hours=hours,
        days=days,
        months=months,
        weekdays=weekdays,
        days_star=days_star,
        weekdays_star=weekdays_star,
    )