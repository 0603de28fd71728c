from __future__ import annotations

from datetime import date, timezone, tzinfo

from orgsync.calendar_math import at
from orgsync.models import (
    DEFAULT_HORIZON_DAYS,
    Exclusion,
    MalformedEventError,
    MaterializedEvent,
    Occurrence,
    RawEvent,
    RecurrenceCondition,
    parse_iso_date,
    parse_iso_datetime,
)
from orgsync.recurrence import expand


PARTICIPANT_KINDS = ("user", "organization")
RESOURCE_KINDS = ("facility",)


def _has_time_component(value: str) -> bool:
    return "T" in value or " " in value.strip()


def _when_interval(event_id: str, span: dict[str, str], tz: tzinfo) -> Occurrence:
    start_text = str(span.get("start", "") or "").strip()
    end_text = str(span.get("end", "") or "").strip()
    if not start_text:
        raise MalformedEventError(event_id, "when block without start")
    try:
        if _has_time_component(start_text):
            # values without an offset are local to the configured zone
            start = parse_iso_datetime(start_text, tz)
            end = parse_iso_datetime(end_text, tz) if end_text else None
            return Occurrence(
                start=start.astimezone(tz),
                end=end.astimezone(tz) if end is not None else None,
            )
        day = parse_iso_date(start_text)
        return Occurrence(start=at(day, None, tz), end=None, all_day=True)
    except ValueError as exc:
        raise MalformedEventError(event_id, f"invalid when datetime {start_text!r}: {exc}") from exc


def _exclusions(event: RawEvent, tz: tzinfo) -> list[Exclusion]:
    output: list[Exclusion] = []
    for item in event.exclusions:
        try:
            start = parse_iso_datetime(item.get("start"), tz)
            end = parse_iso_datetime(item.get("end"), tz)
        except ValueError as exc:
            raise MalformedEventError(event.id, f"invalid exclusive datetime: {exc}") from exc
        if start is None or end is None:
            raise MalformedEventError(event.id, "exclusive datetime without start/end")
        output.append(Exclusion(start=start.astimezone(tz), end=end.astimezone(tz)))
    return output


def build_intervals(
    event: RawEvent,
    tz: tzinfo = timezone.utc,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> list[Occurrence]:
    if event.conditions:
        exclusions = _exclusions(event, tz)
        intervals: list[Occurrence] = []
        for raw_condition in event.conditions:
            condition = RecurrenceCondition.from_dict(
                raw_condition,
                event_id=event.id,
                horizon_days=horizon_days,
            )
            # last condition wins
            intervals = expand(condition, exclusions, tz)
        return intervals
    return [_when_interval(event.id, span, tz) for span in event.when]


def compute_expiration(intervals: list[Occurrence]) -> date | None:
    if not intervals:
        return None
    return max(item.effective_end for item in intervals).date()


def materialize(
    event: RawEvent,
    tz: tzinfo = timezone.utc,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> MaterializedEvent:
    if not event.id:
        raise MalformedEventError("", "event record without id")
    intervals = build_intervals(event, tz, horizon_days)
    return MaterializedEvent(
        id=event.id,
        version=event.version,
        plan=event.plan,
        description=event.description,
        summary=event.detail,
        intervals=intervals,
        expiration=compute_expiration(intervals),
        participants=[member.name for member in event.members if member.kind in PARTICIPANT_KINDS],
        resources=[member.name for member in event.members if member.kind in RESOURCE_KINDS],
    )
