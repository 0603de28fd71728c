from __future__ import annotations

import enum
import logging
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Iterable, Iterator

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule

from orgsync.calendar_math import at
from orgsync.models import Exclusion, Occurrence, RecurrenceCondition


logger = logging.getLogger(__name__)

NTH_WEEK_PATTERN = re.compile(r"^(?:(?P<ordinal>\d+)(?:st|nd|rd|th)?|(?P<last>last))week$")

# index is the wire ``week`` value: 0 = Sunday .. 6 = Saturday
SUNDAY_FIRST_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)
WORKING_DAYS = (MO, TU, WE, TH, FR)
MAX_WEEK_ORDINAL = 5


class RecurrenceKind(enum.Enum):
    DAY = "day"
    WEEKDAY = "weekday"
    WEEK = "week"
    NTH_WEEK = "nth_week"
    MONTH = "month"

    @classmethod
    def parse(cls, value: str) -> "RecurrenceKind | None":
        text = str(value or "").strip().lower()
        if text in {"day", "weekday", "week", "month"}:
            return cls(text)
        if NTH_WEEK_PATTERN.match(text):
            return cls.NTH_WEEK
        return None


def nth_week_ordinal(value: str) -> int | None:
    """1-based block number for ``1stweek``..``5thweek``; ``None`` for ``lastweek``."""
    match = NTH_WEEK_PATTERN.match(str(value or "").strip().lower())
    if match is None or match.group("last"):
        return None
    return int(match.group("ordinal"))


def _rule_days(freq: int, first: date, until: date, **rule: Any) -> Iterator[date]:
    for moment in rrule(
        freq,
        dtstart=datetime.combine(first, time.min),
        until=datetime.combine(until, time.min),
        **rule,
    ):
        yield moment.date()


def _interval(
    first: date,
    last: date,
    start_time: time | None,
    end_time: time | None,
    tz: tzinfo | None,
) -> Occurrence:
    if start_time is None or end_time is None:
        # only a span across several days keeps an end
        end = at(last, None, tz) if last != first else None
    else:
        end = at(last, end_time, tz)
    return Occurrence(start=at(first, start_time, tz), end=end, all_day=start_time is None)


def _single_day(condition: RecurrenceCondition, tz: tzinfo | None) -> Iterator[Occurrence]:
    yield _interval(
        condition.start_date,
        condition.end_date,
        condition.start_time,
        condition.end_time,
        tz,
    )


def _weekday_runs(condition: RecurrenceCondition, tz: tzinfo | None) -> Iterator[Occurrence]:
    run_first: date | None = None
    run_last: date | None = None
    days = _rule_days(
        DAILY,
        condition.start_date,
        condition.end_date - timedelta(days=1),
        byweekday=WORKING_DAYS,
    )
    for day in days:
        if run_last is not None and (day - run_last).days > 1:
            yield _interval(run_first, run_last, condition.start_time, condition.end_time, tz)
            run_first = None
        if run_first is None:
            run_first = day
        run_last = day
    if run_first is not None and run_last is not None:
        yield _interval(run_first, run_last, condition.start_time, condition.end_time, tz)


def _weekly(condition: RecurrenceCondition, tz: tzinfo | None, *, nth: bool) -> Iterator[Occurrence]:
    if condition.week is None or not 0 <= condition.week < len(SUNDAY_FIRST_WEEKDAYS):
        return
    weekday = SUNDAY_FIRST_WEEKDAYS[condition.week]
    if nth:
        ordinal = nth_week_ordinal(condition.type)
        if ordinal is not None and not 1 <= ordinal <= MAX_WEEK_ORDINAL:
            return
        # weekday(+n) falls on days 7n-6..7n, weekday(-1) in the last seven days
        days = _rule_days(
            MONTHLY,
            condition.start_date,
            condition.end_date,
            byweekday=weekday(-1 if ordinal is None else ordinal),
        )
    else:
        days = _rule_days(WEEKLY, condition.start_date, condition.end_date, byweekday=weekday)
    for day in days:
        yield _interval(day, day, condition.start_time, condition.end_time, tz)


def _monthly(condition: RecurrenceCondition, tz: tzinfo | None) -> Iterator[Occurrence]:
    if condition.day is None or not 1 <= condition.day <= 31:
        return
    for day in _rule_days(MONTHLY, condition.start_date, condition.end_date, bymonthday=condition.day):
        yield Occurrence(start=at(day, None, tz), end=None, all_day=True)


def generate(condition: RecurrenceCondition, tz: tzinfo | None = None) -> Iterator[Occurrence]:
    """Lazily yield the occurrences of ``condition`` in chronological order, before exclusions."""
    if condition.end_date < condition.start_date:
        return iter(())
    kind = RecurrenceKind.parse(condition.type)
    if kind is None:
        logger.debug("Unknown recurrence type %r yields no occurrences", condition.type)
        return iter(())
    if kind is RecurrenceKind.DAY:
        return _single_day(condition, tz)
    if kind is RecurrenceKind.WEEKDAY:
        return _weekday_runs(condition, tz)
    if kind is RecurrenceKind.WEEK:
        return _weekly(condition, tz, nth=False)
    if kind is RecurrenceKind.NTH_WEEK:
        return _weekly(condition, tz, nth=True)
    return _monthly(condition, tz)


def is_excluded(occurrence: Occurrence, exclusions: Iterable[Exclusion]) -> bool:
    return any(exclusion.contains(occurrence) for exclusion in exclusions)


def expand(
    condition: RecurrenceCondition,
    exclusions: Iterable[Exclusion] = (),
    tz: tzinfo | None = None,
) -> list[Occurrence]:
    exclusion_list = list(exclusions)
    return [item for item in generate(condition, tz) if not is_excluded(item, exclusion_list)]
