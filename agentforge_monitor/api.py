"""Read-mostly HTTP API over the monitor's latest state, for dashboards and CLIs."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from .errors import AdapterError, NotDeployedError
from .models import StackStatus
from .scheduler import MonitorScheduler


def _status_payload(monitor: MonitorScheduler, status: StackStatus) -> dict[str, Any]:
    return {
        "key": status.stack_key,
        "name": monitor.config.display_name(status.stack_key),
        "status": status.outcome.status.value,
        "report": status.report.to_dict(),
        "outcome": status.outcome.to_dict(),
    }


def create_app(monitor: MonitorScheduler) -> FastAPI:
    app = FastAPI(title="AgentForge Monitor", version="0.1.0")
    app.state.monitor = monitor

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, **monitor.status()}

    @app.get("/api/v1/stacks")
    def list_stacks() -> dict[str, Any]:
        statuses = monitor.latest_statuses()
        return {
            "stacks": [_status_payload(monitor, s) for s in statuses],
            "all_healthy": bool(statuses) and all(s.outcome.ok for s in statuses),
        }

    @app.get("/api/v1/stacks/{stack_key}")
    def get_stack(stack_key: str) -> dict[str, Any]:
        status = monitor.latest_status(stack_key)
        if status is None:
            raise HTTPException(status_code=404, detail=f"No health data for {stack_key!r}")
        return _status_payload(monitor, status)

    @app.post("/api/v1/stacks/{stack_key}/check")
    async def check_stack(stack_key: str) -> dict[str, Any]:
        outcome = await monitor.check_stack(stack_key)
        return {"name": monitor.config.display_name(stack_key), **outcome.to_dict()}

    @app.get("/api/v1/stacks/{stack_key}/logs")
    async def stack_logs(stack_key: str, tail: int = Query(default=100, ge=1, le=5000)) -> dict[str, Any]:
        try:
            logs = await asyncio.to_thread(monitor.controller.logs, stack_key, tail)
        except NotDeployedError:
            raise HTTPException(status_code=404, detail=f"Stack {stack_key!r} is not deployed")
        except AdapterError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        return {"key": stack_key, "tail": tail, "logs": logs}

    @app.get("/api/v1/history")
    def history(n: int = Query(default=10, ge=1, le=1000)) -> dict[str, Any]:
        entries = monitor.store.recent(n)
        return {"entries": [e.to_dict() for e in entries], "capacity": monitor.store.capacity}

    return app
