from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

from orgsync.config_manager import ConfigManager
from orgsync.models import ConfigurationError
from orgsync.state_store import StateStore
from orgsync.sync_engine import SyncEngine


def _configure_logging(config_manager: ConfigManager) -> None:
    try:
        level = config_manager.load().logging.level
    except ConfigurationError:
        level = "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_sync(config_path: str, state_path: str) -> int:
    config_manager = ConfigManager(config_path)
    _configure_logging(config_manager)
    engine = SyncEngine(config_manager, StateStore(state_path))
    result = engine.run_once(trigger="cli")
    print(f"{result.status}: {result.message}")
    return 0 if result.status == "success" else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="orgsync", description="Sync a remote schedule into an Org document.")
    parser.add_argument("command", nargs="?", choices=("serve", "sync"), default="serve")
    parser.add_argument("--config", default=os.getenv("ORGSYNC_CONFIG_PATH", "config.yaml"))
    parser.add_argument("--state", default=os.getenv("ORGSYNC_STATE_PATH", "data/state.db"))
    args = parser.parse_args(argv)

    if args.command == "sync":
        return run_sync(args.config, args.state)

    os.environ["ORGSYNC_CONFIG_PATH"] = args.config
    os.environ["ORGSYNC_STATE_PATH"] = args.state
    _configure_logging(ConfigManager(args.config))
    host = os.getenv("ORGSYNC_HOST", "127.0.0.1")
    port = int(os.getenv("ORGSYNC_PORT", "8080"))
    uvicorn.run("orgsync.web_admin:create_app", host=host, port=port, reload=False, factory=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
