from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timezone, tzinfo
from typing import Any

from orgsync.config_manager import ConfigManager
from orgsync.garoon_client import GaroonService, describe_manifest
from orgsync.materializer import materialize
from orgsync.models import (
    AppConfig,
    MaterializedEvent,
    RemoteError,
    SyncResult,
    lookahead_window,
    resolve_timezone,
)
from orgsync.org_document import OrgDocument
from orgsync.reconciler import DiffResult, diff, should_archive
from orgsync.state_store import StateStore


logger = logging.getLogger(__name__)

LAST_SUCCESS_META_KEY = "last_success_at"

# (event_id, action, details) held until the document is persisted
PendingAudit = tuple[str, str, dict[str, Any]]


def _duration_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _stage(pending: list[PendingAudit], event_id: str, action: str, **details: Any) -> None:
    pending.append((event_id, action, details))


def _materialize_all(
    raw_events: list[Any],
    requested_ids: list[str],
    tz: tzinfo,
    horizon_days: int,
) -> dict[str, MaterializedEvent]:
    materialized: dict[str, MaterializedEvent] = {}
    for raw_event in raw_events:
        event = materialize(raw_event, tz, horizon_days)
        materialized[event.id] = event
    missing = [event_id for event_id in requested_ids if event_id not in materialized]
    if missing:
        raise RemoteError(f"Remote service did not return events: {', '.join(missing)}")
    return materialized


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._run_lock = threading.Lock()

    def _audit(self, run_id: int, event_id: str, action: str, **details: Any) -> None:
        self.state_store.record_audit_event(
            run_id=run_id,
            event_id=event_id,
            action=action,
            details=details,
        )

    def _flush_audit(self, run_id: int, pending: list[PendingAudit]) -> None:
        for event_id, action, details in pending:
            self._audit(run_id, event_id, action, **details)

    def _apply_changes(
        self,
        *,
        pending: list[PendingAudit],
        document: OrgDocument,
        changes: DiffResult,
        events: dict[str, MaterializedEvent],
        result: SyncResult,
    ) -> None:
        for event_id in changes.added:
            event = events[event_id]
            handle = document.find_by_id(event_id)
            if handle is None:
                document.insert(event)
                _stage(pending, event_id, "insert_entry", version=event.version, summary=event.summary)
            else:
                document.rewrite(handle, event)
                _stage(pending, event_id, "rewrite_entry", version=event.version, reason="added_but_present")
            result.added += 1

        for event_id in changes.modified:
            event = events[event_id]
            handle = document.find_by_id(event_id)
            if handle is None:
                document.insert(event)
                _stage(pending, event_id, "insert_entry", version=event.version, reason="modified_but_missing")
            else:
                document.rewrite(handle, event)
                _stage(
                    pending,
                    event_id,
                    "rewrite_entry",
                    version=event.version,
                    unchanged_version=event_id in changes.unchanged,
                )
            result.modified += 1

        for event_id in changes.removed:
            handle = document.find_by_id(event_id)
            if handle is None or document.is_removed(handle):
                continue
            document.mark_removed(handle)
            _stage(pending, event_id, "mark_removed")
            result.removed += 1

    def _archive_expired(
        self,
        *,
        pending: list[PendingAudit],
        document: OrgDocument,
        now: datetime,
        tz: tzinfo,
        result: SyncResult,
    ) -> None:
        for state in document.entries():
            if state.expiration is None or not should_archive(state.expiration, now, tz):
                continue
            document.archive(state.handle, now=now.astimezone(tz))
            _stage(pending, state.handle.entry_id, "archive_entry", expiration=state.expiration.isoformat())
            result.archived += 1

    def _sync(self, config: AppConfig, now: datetime, result: SyncResult) -> list[PendingAudit]:
        """Apply one round of remote changes; returns the audit events to record once persisted."""
        pending: list[PendingAudit] = []
        tz = resolve_timezone(config.sync.timezone)
        document = OrgDocument(config.document.path, config.document.resolved_archive_path()).load()
        local_versions = document.local_versions()

        service = GaroonService(config.remote)
        window_start, window_end = lookahead_window(now, config.sync.horizon_days, tz)
        manifest = service.get_version_manifest(window_start, window_end, local_versions, tz=tz)
        changes = diff(manifest, local_versions)
        logger.info(
            "Manifest for %s..%s: %s",
            window_start.isoformat(),
            window_end.isoformat(),
            describe_manifest(manifest),
        )

        raw_events = service.get_events_by_id(changes.to_fetch)
        events = _materialize_all(raw_events, changes.to_fetch, tz, config.sync.horizon_days)

        self._apply_changes(pending=pending, document=document, changes=changes, events=events, result=result)
        self._archive_expired(pending=pending, document=document, now=now, tz=tz, result=result)
        document.persist()
        return pending

    def run_once(self, trigger: str = "manual", now: datetime | None = None) -> SyncResult:
        with self._run_lock:
            return self._run_once(trigger, now)

    def _run_once(self, trigger: str, now: datetime | None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        current = now or started_at
        result = SyncResult(status="running", message="", duration_ms=0, trigger=trigger)
        run_id = self.state_store.start_sync_run(trigger=trigger)

        try:
            config = self.config_manager.load()
            config.validate()
            pending = self._sync(config, current, result)
            self._flush_audit(run_id, pending)
            result.status = "success"
            result.message = (
                f"Added {result.added}, modified {result.modified}, "
                f"removed {result.removed}, archived {result.archived}."
            )
            self.state_store.set_meta(LAST_SUCCESS_META_KEY, current.isoformat())
            logger.info("Sync run %s (%s): %s", run_id, trigger, result.message)
        except Exception as exc:
            # nothing is persisted when a step fails; staged entry events are dropped
            result.added = result.modified = result.removed = result.archived = 0
            result.status = "error"
            result.message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync run %s (%s) failed: %s", run_id, trigger, result.message)
            self._audit(
                run_id,
                "sync",
                "run_error",
                trigger=trigger,
                error=result.message,
                traceback=traceback.format_exc(limit=5),
            )

        result.duration_ms = _duration_ms(started_at)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=result.status,
            message=result.message,
            duration_ms=result.duration_ms,
            added=result.added,
            modified=result.modified,
            removed=result.removed,
            archived=result.archived,
        )
        return result
