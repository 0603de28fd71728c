from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, Mapping

from orgsync.calendar_math import end_of_day
from orgsync.models import OPERATIONS, RemoteError, VersionEntry


@dataclass
class DiffResult:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    # modified ids whose local version already matches; informational only
    unchanged: list[str] = field(default_factory=list)

    @property
    def to_fetch(self) -> list[str]:
        return self.added + self.modified

    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "added": list(self.added),
            "modified": list(self.modified),
            "removed": list(self.removed),
            "unchanged": list(self.unchanged),
        }


def diff(
    manifest: Iterable[VersionEntry],
    local_versions: Mapping[str, str] | None = None,
) -> DiffResult:
    """Classify manifest ids by the operation the remote service reported.

    An id listed twice keeps its first position and its last operation.
    """
    latest: dict[str, VersionEntry] = {}
    for entry in manifest:
        operation = str(entry.operation or "").strip().lower()
        if operation not in OPERATIONS:
            raise RemoteError(f"Unknown operation {entry.operation!r} for event {entry.id} in version manifest")
        if not entry.id:
            raise RemoteError("Version manifest entry without id")
        latest[entry.id] = VersionEntry(id=entry.id, version=entry.version, operation=operation)

    known = local_versions or {}
    result = DiffResult()
    for event_id, entry in latest.items():
        if entry.operation == "add":
            result.added.append(event_id)
        elif entry.operation == "modify":
            result.modified.append(event_id)
            if known.get(event_id) == entry.version:
                result.unchanged.append(event_id)
        else:
            result.removed.append(event_id)
    return result


def should_archive(expiration: date, now: datetime, tz: tzinfo | None = None) -> bool:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return end_of_day(expiration, tz) < now
