"""Live update WebSocket endpoint."""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

ws_router = APIRouter(tags=["live"])


@ws_router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    monitor = getattr(websocket.app.state, "monitor", None)
    if monitor is None:
        await websocket.close(code=1013)
        return
    await monitor.hub.handle(websocket)
