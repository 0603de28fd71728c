from __future__ import annotations

from datetime import date, datetime, time, timezone, tzinfo


END_OF_DAY = time(23, 59, 59)


def same_day(left: datetime, right: datetime) -> bool:
    return left.date() == right.date()


def at(day: date, moment: time | None, tz: tzinfo | None = None) -> datetime:
    return datetime.combine(day, moment or time.min, tzinfo=tz or timezone.utc)


def end_of_day(day: date, tz: tzinfo | None = None) -> datetime:
    return at(day, END_OF_DAY, tz)
