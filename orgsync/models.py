from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo


PASSWORD_ENV_VAR = "ORGSYNC_REMOTE_PASSWORD"
DEFAULT_HORIZON_DAYS = 14
OPERATIONS = ("add", "modify", "remove")


class SyncError(Exception):
    """Base exception for sync errors."""


class ConfigurationError(SyncError):
    """A required setting is missing; raised before any network call."""


class RemoteError(SyncError):
    """Fault, malformed or missing payload from the remote service."""


class MalformedEventError(RemoteError):
    """An event record cannot be interpreted."""

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"event {event_id or '?'}: {reason}")
        self.event_id = event_id
        self.reason = reason


def _ensure_tz(dt: datetime, default_tz: tzinfo | None = None) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=default_tz or timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None, default_tz: tzinfo | None = None) -> datetime | None:
    """Parse an ISO 8601 timestamp; values without an offset are read in ``default_tz`` (UTC if unset)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value, default_tz)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed, default_tz)


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def parse_time_of_day(value: str | time | None) -> time | None:
    if value is None:
        return None
    if isinstance(value, time):
        return value
    text = value.strip()
    if not text:
        return None
    return time.fromisoformat(text)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


@dataclass
class RemoteConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def resolved_password(self) -> str:
        if self.password:
            return self.password
        return os.getenv(PASSWORD_ENV_VAR, "").strip()


@dataclass
class SyncConfig:
    horizon_days: int = DEFAULT_HORIZON_DAYS
    interval_seconds: int = 900
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            horizon_days=max(1, int(data.get("horizon_days", DEFAULT_HORIZON_DAYS))),
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class DocumentConfig:
    path: str = ""
    archive_path: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DocumentConfig":
        data = data or {}
        return cls(
            path=str(data.get("path", "")).strip(),
            archive_path=str(data.get("archive_path", "")).strip(),
        )

    def resolved_archive_path(self) -> str:
        if self.archive_path:
            return self.archive_path
        return f"{self.path}_archive" if self.path else ""


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    document: DocumentConfig = field(default_factory=DocumentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote")),
            sync=SyncConfig.from_dict(data.get("sync")),
            document=DocumentConfig.from_dict(data.get("document")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        missing = []
        if not self.remote.base_url:
            missing.append("remote.base_url")
        if not self.remote.username:
            missing.append("remote.username")
        if not self.document.path:
            missing.append("document.path")
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


@dataclass(frozen=True)
class Occurrence:
    start: datetime
    end: datetime | None = None
    # date-only occurrence; times are midnight placeholders
    all_day: bool = False

    @property
    def effective_end(self) -> datetime:
        return self.end if self.end is not None else self.start


@dataclass(frozen=True)
class Exclusion:
    start: datetime
    end: datetime

    def contains(self, occurrence: Occurrence) -> bool:
        return self.start < occurrence.start and self.end > occurrence.effective_end


@dataclass
class RecurrenceCondition:
    type: str
    start_date: date
    end_date: date
    day: int | None = None
    week: int | None = None
    start_time: time | None = None
    end_time: time | None = None

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        *,
        event_id: str = "",
        horizon_days: int = DEFAULT_HORIZON_DAYS,
    ) -> "RecurrenceCondition":
        try:
            start_date = parse_iso_date(data.get("start_date"))
            if start_date is None:
                raise MalformedEventError(event_id, "repeat condition without start_date")
            end_date = parse_iso_date(data.get("end_date")) or start_date + timedelta(days=horizon_days)
            day = data.get("day")
            week = data.get("week")
            return cls(
                type=str(data.get("type", "")).strip(),
                start_date=start_date,
                end_date=end_date,
                day=int(day) if day not in (None, "") else None,
                week=int(week) if week not in (None, "") else None,
                start_time=parse_time_of_day(data.get("start_time")),
                end_time=parse_time_of_day(data.get("end_time")),
            )
        except ValueError as exc:
            raise MalformedEventError(event_id, f"invalid repeat condition: {exc}") from exc


@dataclass
class Member:
    kind: str
    id: str = ""
    name: str = ""


@dataclass
class RawEvent:
    id: str
    version: str
    event_type: str = "normal"
    plan: str = ""
    detail: str = ""
    description: str = ""
    when: list[dict[str, str]] = field(default_factory=list)
    conditions: list[dict[str, str]] = field(default_factory=list)
    exclusions: list[dict[str, str]] = field(default_factory=list)
    members: list[Member] = field(default_factory=list)


@dataclass
class MaterializedEvent:
    id: str
    version: str
    plan: str = ""
    description: str = ""
    summary: str = ""
    intervals: list[Occurrence] = field(default_factory=list)
    expiration: date | None = None
    participants: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "plan": self.plan,
            "description": self.description,
            "summary": self.summary,
            "intervals": [
                {
                    "start": serialize_datetime(item.start),
                    "end": serialize_datetime(item.end),
                    "all_day": item.all_day,
                }
                for item in self.intervals
            ],
            "expiration": self.expiration.isoformat() if self.expiration else None,
            "participants": list(self.participants),
            "resources": list(self.resources),
        }


@dataclass(frozen=True)
class VersionEntry:
    id: str
    version: str
    operation: str


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    added: int = 0
    modified: int = 0
    removed: int = 0
    archived: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        return self.added + self.modified + self.removed + self.archived

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "added": self.added,
            "modified": self.modified,
            "removed": self.removed,
            "archived": self.archived,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def lookahead_window(now: datetime, horizon_days: int, tz: tzinfo | None = None) -> tuple[date, date]:
    local_now = _ensure_tz(now).astimezone(tz) if tz is not None else _ensure_tz(now)
    start = local_now.date()
    return start, start + timedelta(days=max(1, horizon_days))
