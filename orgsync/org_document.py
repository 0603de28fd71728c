from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from orgsync.calendar_math import same_day
from orgsync.models import MaterializedEvent, Occurrence, parse_iso_date


logger = logging.getLogger(__name__)

ID_PROPERTY = "EVENT_ID"
VERSION_PROPERTY = "EVENT_VERSION"
EXPIRATION_PROPERTY = "EXPIRATION"
PARTICIPANTS_PROPERTY = "PARTICIPANTS"
RESOURCES_PROPERTY = "RESOURCES"
REMOVED_PROPERTY = "REMOVED"
ARCHIVE_TIME_PROPERTY = "ARCHIVE_TIME"
ARCHIVE_FILE_PROPERTY = "ARCHIVE_FILE"

WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
INDENT = "  "

TOP_HEADING_PATTERN = re.compile(r"^\* ")
SUB_HEADING_PATTERN = re.compile(r"^\*{2,} ")
DRAWER_START_PATTERN = re.compile(r"^\s*:PROPERTIES:\s*$")
DRAWER_END_PATTERN = re.compile(r"^\s*:END:\s*$")
PROPERTY_PATTERN = re.compile(r"^\s*:(?P<key>[A-Za-z0-9_\-]+):\s*(?P<value>.*?)\s*$")
TIMESTAMP_LINE_PATTERN = re.compile(
    r"^\s*[<\[]\d{4}-\d{2}-\d{2}[^>\]]*[>\]](?:--[<\[]\d{4}-\d{2}-\d{2}[^>\]]*[>\]])?\s*$"
)
ACTIVE_TIMESTAMP_PATTERN = re.compile(r"<(\d{4}-\d{2}-\d{2}[^>]*)>")


@dataclass(frozen=True)
class EntryHandle:
    entry_id: str


@dataclass
class EntryState:
    handle: EntryHandle
    heading: str
    version: str
    expiration: date | None
    removed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.handle.entry_id,
            "heading": self.heading,
            "version": self.version,
            "expiration": self.expiration.isoformat() if self.expiration else None,
            "removed": self.removed,
        }


def _stamp(value: datetime, with_time: bool) -> str:
    text = f"{value:%Y-%m-%d} {WEEKDAY_NAMES[value.weekday()]}"
    if with_time:
        text += f" {value:%H:%M}"
    return text


def format_timestamp(occurrence: Occurrence, active: bool = True) -> str:
    opening, closing = ("<", ">") if active else ("[", "]")
    start, end = occurrence.start, occurrence.end
    all_day = occurrence.all_day
    if end is None:
        return f"{opening}{_stamp(start, not all_day)}{closing}"
    if same_day(start, end):
        if all_day:
            return f"{opening}{_stamp(start, False)}{closing}"
        return f"{opening}{_stamp(start, True)}-{end:%H:%M}{closing}"
    return f"{opening}{_stamp(start, not all_day)}{closing}--{opening}{_stamp(end, not all_day)}{closing}"


def deactivate_timestamps(line: str) -> str:
    return ACTIVE_TIMESTAMP_PATTERN.sub(r"[\1]", line)


def render_heading(event: MaterializedEvent) -> str:
    title = event.summary.strip() or "(no title)"
    if event.plan.strip():
        return f"* {event.plan.strip()}: {title}"
    return f"* {title}"


def render_entry(event: MaterializedEvent) -> list[str]:
    lines = [render_heading(event), f"{INDENT}:PROPERTIES:"]
    lines.append(f"{INDENT}:{ID_PROPERTY}: {event.id}")
    lines.append(f"{INDENT}:{VERSION_PROPERTY}: {event.version}")
    if event.expiration is not None:
        lines.append(f"{INDENT}:{EXPIRATION_PROPERTY}: {event.expiration.isoformat()}")
    if event.participants:
        lines.append(f"{INDENT}:{PARTICIPANTS_PROPERTY}: {', '.join(event.participants)}")
    if event.resources:
        lines.append(f"{INDENT}:{RESOURCES_PROPERTY}: {', '.join(event.resources)}")
    lines.append(f"{INDENT}:END:")
    lines.extend(f"{INDENT}{format_timestamp(item)}" for item in event.intervals)
    for text_line in (event.description or "").splitlines():
        lines.append(f"{INDENT}{text_line}".rstrip())
    return lines


def _drawer_bounds(block: list[str]) -> tuple[int, int] | None:
    if len(block) < 2 or not DRAWER_START_PATTERN.match(block[1]):
        return None
    for index in range(2, len(block)):
        if DRAWER_END_PATTERN.match(block[index]):
            return 1, index
        if TOP_HEADING_PATTERN.match(block[index]) or SUB_HEADING_PATTERN.match(block[index]):
            break
    return None


def get_property(block: list[str], key: str) -> str | None:
    bounds = _drawer_bounds(block)
    if bounds is None:
        return None
    start, end = bounds
    for line in block[start + 1 : end]:
        match = PROPERTY_PATTERN.match(line)
        if match and match.group("key").upper() == key.upper():
            return match.group("value")
    return None


def set_property(block: list[str], key: str, value: str) -> None:
    bounds = _drawer_bounds(block)
    if bounds is None:
        block[1:1] = [f"{INDENT}:PROPERTIES:", f"{INDENT}:END:"]
        bounds = (1, 2)
    start, end = bounds
    new_line = f"{INDENT}:{key}: {value}"
    for index in range(start + 1, end):
        match = PROPERTY_PATTERN.match(block[index])
        if match and match.group("key").upper() == key.upper():
            block[index] = new_line
            return
    block.insert(end, new_line)


def _subtree_start(block: list[str]) -> int:
    for index in range(1, len(block)):
        if SUB_HEADING_PATTERN.match(block[index]):
            return index
    return len(block)


class OrgDocument:
    """Org file holding one top-level heading per remote event.

    Headings without an event id and any text before the first heading are
    kept verbatim. Mutations stay in memory until :meth:`persist`.
    """

    def __init__(self, path: str | Path, archive_path: str | Path | None = None) -> None:
        self.path = Path(path)
        self.archive_path = Path(archive_path) if archive_path else Path(f"{self.path}_archive")
        self.preamble: list[str] = []
        self.blocks: list[list[str]] = []
        self._archived: list[list[str]] = []
        self._dirty = False

    def load(self) -> "OrgDocument":
        self.preamble = []
        self.blocks = []
        self._archived = []
        self._dirty = False
        if not self.path.exists():
            return self
        text = self.path.read_text(encoding="utf-8")
        current: list[str] | None = None
        for line in text.splitlines():
            if TOP_HEADING_PATTERN.match(line):
                current = [line]
                self.blocks.append(current)
            elif current is None:
                self.preamble.append(line)
            else:
                current.append(line)
        return self

    def _locate(self, handle: EntryHandle) -> int:
        for index, block in enumerate(self.blocks):
            if get_property(block, ID_PROPERTY) == handle.entry_id:
                return index
        raise KeyError(f"Entry not found: {handle.entry_id}")

    def find_by_id(self, entry_id: str) -> EntryHandle | None:
        for block in self.blocks:
            if get_property(block, ID_PROPERTY) == entry_id:
                return EntryHandle(entry_id=entry_id)
        return None

    def entries(self) -> list[EntryState]:
        states: list[EntryState] = []
        for block in self.blocks:
            entry_id = get_property(block, ID_PROPERTY)
            if not entry_id:
                continue
            expiration_text = get_property(block, EXPIRATION_PROPERTY)
            try:
                expiration = parse_iso_date(expiration_text) if expiration_text else None
            except ValueError:
                logger.warning("Ignoring invalid %s %r on entry %s", EXPIRATION_PROPERTY, expiration_text, entry_id)
                expiration = None
            states.append(
                EntryState(
                    handle=EntryHandle(entry_id=entry_id),
                    heading=block[0][2:].strip(),
                    version=get_property(block, VERSION_PROPERTY) or "",
                    expiration=expiration,
                    removed=bool(get_property(block, REMOVED_PROPERTY)),
                )
            )
        return states

    def local_versions(self) -> dict[str, str]:
        return {state.handle.entry_id: state.version for state in self.entries() if not state.removed}

    def is_removed(self, handle: EntryHandle) -> bool:
        return bool(get_property(self.blocks[self._locate(handle)], REMOVED_PROPERTY))

    def insert(self, event: MaterializedEvent) -> EntryHandle:
        self.blocks.append(render_entry(event))
        self._dirty = True
        return EntryHandle(entry_id=event.id)

    def rewrite(self, handle: EntryHandle, event: MaterializedEvent) -> None:
        index = self._locate(handle)
        block = self.blocks[index]
        # user notes in sub-headings survive a rewrite
        self.blocks[index] = render_entry(event) + block[_subtree_start(block) :]
        self._dirty = True

    def mark_removed(self, handle: EntryHandle) -> None:
        block = self.blocks[self._locate(handle)]
        body_start = (_drawer_bounds(block) or (0, 0))[1] + 1
        for index in range(body_start, _subtree_start(block)):
            if TIMESTAMP_LINE_PATTERN.match(block[index]):
                block[index] = deactivate_timestamps(block[index])
        set_property(block, REMOVED_PROPERTY, "t")
        self._dirty = True

    def archive(self, handle: EntryHandle, now: datetime | None = None) -> None:
        index = self._locate(handle)
        block = self.blocks.pop(index)
        stamp_at = now or datetime.now(timezone.utc)
        set_property(block, ARCHIVE_TIME_PROPERTY, _stamp(stamp_at, True))
        set_property(block, ARCHIVE_FILE_PROPERTY, str(self.path))
        self._archived.append(block)
        self._dirty = True

    def render(self) -> str:
        lines = list(self.preamble)
        for block in self.blocks:
            lines.extend(block)
        return "\n".join(lines) + "\n" if lines else ""

    def persist(self) -> None:
        if not self._dirty:
            return
        if self._archived:
            existing = ""
            if self.archive_path.exists():
                existing = self.archive_path.read_text(encoding="utf-8")
            if existing and not existing.endswith("\n"):
                existing += "\n"
            archived_text = "\n".join(line for block in self._archived for line in block) + "\n"
            _atomic_write(self.archive_path, existing + archived_text)
            self._archived = []
        _atomic_write(self.path, self.render())
        self._dirty = False


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(content)
    tmp_path.replace(path)
