from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from orgsync.config_manager import MASK, ConfigManager
from orgsync.garoon_client import GaroonService
from orgsync.models import ConfigurationError
from orgsync.org_document import OrgDocument
from orgsync.scheduler import SyncScheduler
from orgsync.state_store import StateStore
from orgsync.sync_engine import LAST_SUCCESS_META_KEY, SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    has_password = bool(config_dict.get("remote", {}).get("password", "").strip())
    return {"remote": {"password": {"is_masked": has_password}}}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("remote", {}).get("password", ""))

    remote = sanitized.get("remote")
    if isinstance(remote, dict):
        remote = dict(remote)
        password = remote.get("password")
        if password is not None:
            password_text = str(password).strip()
            if password_text in {"", MASK}:
                if current_password:
                    remote.pop("password", None)
                else:
                    remote["password"] = ""
        if remote:
            sanitized["remote"] = remote
        else:
            sanitized.pop("remote", None)

    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("ORGSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ORGSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="orgsync admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            updated = app.state.context.config_manager.update(sanitized_payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        config = updated.to_dict()
        if config["remote"]["password"]:
            config["remote"]["password"] = MASK
        return {"message": "config updated", "config": config}

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.post("/api/remote/test")
    def test_remote() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        ok, message = GaroonService(config.remote).test_connectivity()
        return {"ok": ok, "message": message}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        result = app.state.context.sync_engine.run_once(trigger="manual-now")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
            "last_success_at": app.state.context.state_store.get_meta(LAST_SUCCESS_META_KEY),
            "scheduler": app.state.context.scheduler.status(),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)
        return {"run": run, "events": events}

    @app.get("/api/entries")
    def list_entries() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        if not config.document.path:
            raise HTTPException(status_code=400, detail=str(ConfigurationError("document.path is not set")))
        document = OrgDocument(config.document.path, config.document.resolved_archive_path()).load()
        return {"entries": [state.to_dict() for state in document.entries()]}

    return app
