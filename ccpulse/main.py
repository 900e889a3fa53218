"""CCPulse FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ccpulse import config
from ccpulse.monitor import ConversationMonitor
from ccpulse.observability import initialize as initialize_observability, shutdown as shutdown_observability
from ccpulse.routers.conversations import conversations_router
from ccpulse.routers.monitor import monitor_router
from ccpulse.routers.ws import ws_router
from ccpulse.settings import MonitorSettings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ccpulse")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("CCPulse starting up")
    initialize_observability(app)

    monitor = ConversationMonitor(MonitorSettings.from_config())
    # A missing or unwatchable root is fatal and aborts startup.
    await monitor.start()
    app.state.monitor = monitor

    yield

    logger.info("CCPulse shutting down")
    await monitor.stop()
    shutdown_observability(app)


app = FastAPI(
    title="CCPulse API",
    description="Live activity states for coding-assistant conversations",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router)
app.include_router(monitor_router)
app.include_router(ws_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    monitor = getattr(app.state, "monitor", None)
    return {
        "status": "ok",
        "monitor": "running" if monitor is not None and monitor.is_running else "stopped",
        "watcher": "running" if monitor is not None and monitor.watcher.is_running else "stopped",
    }


def run() -> None:
    uvicorn.run("ccpulse.main:app", host=config.HOST, port=config.PORT)
