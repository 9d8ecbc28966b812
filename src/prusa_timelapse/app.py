"""FastAPI application exposing the timelapse monitor's status."""
from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool

from .config import AppConfig, load_config, resolve_config_path
from .errors import ConfigError
from .monitor import TimelapseMonitor
from .version import APP_VERSION

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 50
MAX_EVENT_LIMIT = 200


def _resolve_config(config: AppConfig | Path | str | None) -> AppConfig:
    if isinstance(config, AppConfig):
        return config
    path = resolve_config_path(str(config) if config is not None else None)
    if path is None:
        raise ConfigError(
            "No configuration file given; pass a path or set PRUSA_TIMELAPSE_CONFIG"
        )
    return load_config(path)


def create_app(
    config: AppConfig | Path | str | None = None,
    *,
    monitor: TimelapseMonitor | None = None,
) -> FastAPI:
    """Return an app that runs ``monitor`` for the lifetime of the server."""

    if monitor is None:
        monitor = TimelapseMonitor(_resolve_config(config))

    app = FastAPI(title="Prusa Timelapse", version=APP_VERSION)
    app.state.monitor = monitor

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        logger.info("Prusa timelapse %s starting", APP_VERSION)
        monitor.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        logger.info("Prusa timelapse shutting down")
        await monitor.aclose()

    @app.get("/api/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "version": APP_VERSION, "monitoring": monitor.running}

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        # Frame enumeration touches the filesystem.
        status = await run_in_threadpool(monitor.status)
        return status.to_dict()

    @app.get("/api/events")
    async def get_events(
        limit: int = DEFAULT_EVENT_LIMIT, category: str | None = None
    ) -> dict[str, object]:
        if limit <= 0:
            raise HTTPException(status_code=400, detail="limit must be a positive integer")
        entries = monitor.event_log.tail(min(limit, MAX_EVENT_LIMIT), category=category)
        return {"events": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
