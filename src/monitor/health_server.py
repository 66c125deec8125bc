"""Health endpoint: an aiohttp server exposing keeper status.

Exposes:
- ``GET /health`` → JSON status; 503 while any monitor alert is active
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable

from aiohttp import web
from pydantic import BaseModel

from src.monitor.service_monitor import MonitorSet

SnapshotFn = Callable[[], dict[str, Any]]


def _default(o: Any) -> Any:
    if isinstance(o, BaseModel):
        return o.model_dump(mode="json")
    if isinstance(o, (set, frozenset, tuple)):
        return list(o)
    return str(o)


def build_health_payload(
    monitors: MonitorSet,
    snapshot_fn: SnapshotFn | None = None,
) -> tuple[int, dict[str, Any]]:
    """Return (http_status, body) for the current keeper state."""
    degraded = monitors.any_alert_active()
    body: dict[str, Any] = {
        "status": "degraded" if degraded else "ok",
        "timestamp": time.time(),
        "monitors": monitors.statuses(),
    }
    if snapshot_fn is not None:
        body.update(snapshot_fn())
    return (503 if degraded else 200), body


async def _handle_health(request: web.Request) -> web.Response:
    monitors: MonitorSet = request.app["monitors"]
    snapshot_fn: SnapshotFn | None = request.app.get("snapshot_fn")
    status, body = build_health_payload(monitors, snapshot_fn)
    return web.json_response(
        body, status=status, dumps=lambda o: json.dumps(o, default=_default),
    )


def create_health_app(
    monitors: MonitorSet,
    snapshot_fn: SnapshotFn | None = None,
) -> web.Application:
    """Create the aiohttp health application."""
    app = web.Application()
    app["monitors"] = monitors
    app["snapshot_fn"] = snapshot_fn
    app.router.add_get("/health", _handle_health)
    return app


async def start_health_server(
    monitors: MonitorSet,
    snapshot_fn: SnapshotFn | None = None,
    host: str = "0.0.0.0",
    port: int = 8081,
) -> web.AppRunner:
    """Start the health server. Returns the runner for cleanup."""
    app = create_health_app(monitors, snapshot_fn)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner
