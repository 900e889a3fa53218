"""Composition root for the monitoring core.

`ConversationMonitor` owns every component and their lifecycle; nothing in
the core is a module-level singleton, so tests can run several monitors side
by side with their own settings.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from ccpulse.date_utils import format_iso, utc_now
from ccpulse.errors import WatchError
from ccpulse.ingest.cache import FileContentCache
from ccpulse.ingest.file_watcher import ConversationWatcher
from ccpulse.ingest.pipeline import IngestionPipeline
from ccpulse.models import Conversation, ConversationState
from ccpulse.notifications.hub import ConnectionHub
from ccpulse.notifications.manager import NotificationManager
from ccpulse.settings import MonitorSettings
from ccpulse.store import ConversationStore

logger = logging.getLogger("ccpulse.monitor")


class ConversationMonitor:
    def __init__(self, settings: Optional[MonitorSettings] = None):
        self.settings = settings or MonitorSettings()
        self.root = self.settings.watch_dir.expanduser()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.worker_threads,
            thread_name_prefix="ccpulse-io",
        )
        self.hub = ConnectionHub(send_timeout_seconds=self.settings.send_timeout_seconds)
        self.notifications = NotificationManager.from_settings(self.hub, self.settings)
        self.store = ConversationStore(self.notifications, self.settings)
        self.cache = FileContentCache.from_settings(self.settings, executor=self._executor)
        self.pipeline = IngestionPipeline(self.cache, self.store, self.root, executor=self._executor)
        self.watcher = ConversationWatcher(
            self.root,
            self.pipeline,
            self.cache,
            self.store,
            self.settings,
            executor=self._executor,
        )
        self._refresh_task: Optional[asyncio.Task] = None
        self._started_at = None
        self._running = False

    async def start(self) -> None:
        """Start watching the root, scan it, then start the periodic state refresh.

        The watcher is up before the scan so appends made while it runs are
        re-ingested. Raises `WatchError` when the root cannot be watched; a
        failed start releases the worker pool and the monitor cannot be
        restarted.
        """
        if self._running:
            logger.warning("Monitor already running")
            return

        logger.info("Starting conversation monitor for %s", self.root)
        try:
            if not self.root.is_dir():
                raise WatchError(str(self.root), "not an existing directory")
            await self.watcher.start()
            await self.pipeline.ingest_all(self.root, trigger="startup")
        except Exception:
            await self.watcher.stop()
            self._executor.shutdown(wait=False, cancel_futures=True)
            raise
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        self._started_at = utc_now()
        self._running = True
        logger.info("Conversation monitor running (%d conversations)", len(self.store))

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        await self.watcher.stop()
        await self.hub.close_all()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._running = False
        logger.info("Conversation monitor stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _refresh_loop(self) -> None:
        interval = self.settings.refresh_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                events = await self.store.refresh()
                if events:
                    logger.debug("Refresh produced %d state change(s)", len(events))
            except Exception as exc:  # noqa: BLE001
                logger.error("State refresh failed: %s", exc)

    # ── Read API ───────────────────────────────────────────────────

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.store.get(conversation_id)

    def list_conversations(self) -> list[Conversation]:
        return self.store.all()

    def get_all_states(self) -> dict[str, ConversationState]:
        return self.store.states()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "root": str(self.root),
            "startedAt": format_iso(self._started_at),
            "conversationCount": len(self.store),
            "store": dict(self.store.metrics),
            "watcher": self.watcher.stats(),
            "cache": self.cache.stats(),
            "notifications": self.notifications.stats(),
            "connections": self.hub.stats(),
        }
