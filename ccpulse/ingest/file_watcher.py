"""File watcher service using watchfiles.

Monitors the conversation root for appended, created and deleted `.jsonl`
logs. Raw events are debounced per path; once a path has been quiet for the
debounce window a single change is queued and ingested.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from concurrent.futures import Executor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from watchfiles import Change, awatch

from ccpulse.date_utils import mtime_to_datetime
from ccpulse.errors import WatchError
from ccpulse.ingest.cache import FileContentCache
from ccpulse.ingest.pipeline import CONVERSATION_SUFFIX, IngestionPipeline
from ccpulse.parsers.conversations import conversation_id_for_path, project_path_for
from ccpulse.settings import MonitorSettings
from ccpulse.store import ConversationStore

logger = logging.getLogger("ccpulse.watcher")

_CHANGE_KINDS = {
    Change.added: "added",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


@dataclass(frozen=True)
class FileChange:
    path: Path
    kind: str


def _is_conversation_file(change: Change, path: str) -> bool:
    return path.endswith(CONVERSATION_SUFFIX)


class ConversationWatcher:
    """Background watcher that feeds settled file changes to the ingestion pipeline.

    Only one ingestion runs at a time; a change that settles while a file is
    being parsed waits in the queue until that parse has finished.
    """

    def __init__(
        self,
        root: Path,
        pipeline: IngestionPipeline,
        cache: FileContentCache,
        store: ConversationStore,
        settings: Optional[MonitorSettings] = None,
        executor: Optional[Executor] = None,
    ):
        self.root = Path(root)
        self.pipeline = pipeline
        self.cache = cache
        self.store = store
        self.settings = settings or MonitorSettings()
        self._executor = executor
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._ingest_task: Optional[asyncio.Task] = None
        self._running = False
        self.metrics = {"rawEvents": 0, "coalesced": 0, "queued": 0, "processed": 0, "errors": 0}

    async def start(self) -> None:
        """Start watching the root in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return
        if not self.root.is_dir():
            raise WatchError(str(self.root), "not an existing directory")

        self._queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._running = True
        self._ingest_task = asyncio.create_task(self._ingest_loop(self._queue))
        self._watch_task = asyncio.create_task(self._watch_loop())
        logger.info("File watcher started for %s", self.root)

    async def stop(self) -> None:
        """Stop watching; an ingestion already in progress is allowed to finish."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None

        if self._ingest_task is not None and self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
            self._queue.put_nowait(None)
            with contextlib.suppress(asyncio.CancelledError):
                await self._ingest_task
            self._ingest_task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def handle_raw_change(self, change: Change, raw_path: str) -> None:
        """Process a single raw filesystem event for `raw_path`."""
        if not _is_conversation_file(change, raw_path):
            return
        path = Path(raw_path)
        key = str(path)
        conversation_id = conversation_id_for_path(path)
        kind = _CHANGE_KINDS.get(change, "modified")
        self.metrics["rawEvents"] += 1
        self.cache.invalidate(path)

        if kind != "deleted":
            loop = asyncio.get_running_loop()
            try:
                st = await loop.run_in_executor(self._executor, os.stat, key)
            except FileNotFoundError:
                kind = "deleted"
            except OSError as exc:
                error = WatchError(key, exc.strerror or str(exc))
                logger.warning("%s", error)
                self.metrics["errors"] += 1
                await self.store.mark_unreachable(conversation_id, error.reason)
                return
            else:
                if conversation_id in self.store:
                    await self.store.record_activity(conversation_id, st.st_size)
                else:
                    await self.store.seed(
                        conversation_id,
                        project_path=project_path_for(path, self.root),
                        source_path=key,
                        last_modified=mtime_to_datetime(st.st_mtime_ns),
                        file_size=st.st_size,
                    )

        self._schedule(key, kind)

    def _schedule(self, key: str, kind: str) -> None:
        loop = asyncio.get_running_loop()
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
            self.metrics["coalesced"] += 1
        self._timers[key] = loop.call_later(self.settings.debounce_seconds, self._settle, key, kind)

    def _settle(self, key: str, kind: str) -> None:
        self._timers.pop(key, None)
        if self._queue is None:
            return
        self._queue.put_nowait(FileChange(path=Path(key), kind=kind))
        self.metrics["queued"] += 1

    async def wait_idle(self, poll_seconds: float = 0.01) -> None:
        """Wait until no debounce timer is pending and the queue has drained."""
        while self._timers:
            await asyncio.sleep(poll_seconds)
        if self._queue is not None:
            await self._queue.join()

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=_is_conversation_file,
                stop_event=self._stop_event,
                step=self.settings.raw_event_step_ms,
                debounce=max(self.settings.raw_event_step_ms, self.settings.debounce_ms),
                recursive=True,
            ):
                if not self._running:
                    break
                for change, raw_path in changes:
                    try:
                        await self.handle_raw_change(change, raw_path)
                    except Exception as exc:  # noqa: BLE001
                        self.metrics["errors"] += 1
                        logger.error("Error handling change for %s: %s", raw_path, exc)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("%s", WatchError(str(self.root), str(exc)))
            self._running = False

    async def _ingest_loop(self, queue: asyncio.Queue) -> None:
        while True:
            change = await queue.get()
            try:
                if change is None:
                    return
                await self.pipeline.ingest(change.path, trigger="watcher")
                self.metrics["processed"] += 1
            except Exception as exc:  # noqa: BLE001
                self.metrics["errors"] += 1
                logger.error("Error ingesting %s: %s", change.path, exc)
            finally:
                queue.task_done()

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "root": str(self.root),
            "pendingTimers": len(self._timers),
            "queueDepth": self._queue.qsize() if self._queue is not None else 0,
            "debounceMs": self.settings.debounce_ms,
            **self.metrics,
        }
