"""Monitor status and observability API."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ccpulse.routers.conversations import _get_monitor

monitor_router = APIRouter(prefix="/api/monitor", tags=["monitor"])


@monitor_router.get("/status")
async def get_monitor_status(request: Request):
    """Watcher, cache, store and connection status plus live operations."""
    monitor = _get_monitor(request)
    observability = monitor.pipeline.operations_snapshot()
    return {
        "status": "active" if monitor.is_running else "stopped",
        **monitor.status(),
        "operations": observability,
    }


@monitor_router.get("/operations")
async def list_monitor_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent scan operations."""
    monitor = _get_monitor(request)
    operations = monitor.pipeline.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@monitor_router.get("/operations/{operation_id}")
async def get_monitor_operation(request: Request, operation_id: str):
    monitor = _get_monitor(request)
    operation = monitor.pipeline.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@monitor_router.get("/notifications")
async def list_notifications(
    request: Request,
    event_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(100, ge=1, le=1000),
):
    """Recently published notifications, oldest first."""
    monitor = _get_monitor(request)
    items = monitor.notifications.get_history(event_type=event_type, limit=limit)
    return {"status": "ok", "count": len(items), "items": items}


@monitor_router.delete("/notifications")
async def clear_notifications(request: Request, event_type: Optional[str] = Query(None, alias="type")):
    monitor = _get_monitor(request)
    removed = monitor.notifications.clear_history(event_type=event_type)
    return {"status": "ok", "removed": removed}
