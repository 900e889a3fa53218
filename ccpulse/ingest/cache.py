"""Read-through content cache for conversation files.

Entries are keyed by path and validated against a (size, mtime) signature on
every lookup, so content for a path whose on-disk signature has changed is
never returned. Concurrent lookups for the same path and signature share a
single in-flight read.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import OrderedDict
from concurrent.futures import Executor
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from ccpulse.errors import ReadError
from ccpulse.settings import MonitorSettings

logger = logging.getLogger("ccpulse.cache")


@dataclass(frozen=True)
class FileSignature:
    size: int
    mtime_ns: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "FileSignature":
        return cls(size=int(st.st_size), mtime_ns=int(st.st_mtime_ns))


@dataclass(frozen=True)
class CacheEntry:
    path: str
    signature: FileSignature
    content: str
    fetched_at: float


def stat_signature(path: str) -> FileSignature:
    return FileSignature.from_stat(os.stat(path))


def _read_snapshot(path: str) -> tuple[FileSignature, str]:
    """Read exactly the bytes covered by the handle's signature.

    Appends that land while the file is open are left for the next read, so
    the returned content always matches the returned signature.
    """
    with open(path, "rb") as handle:
        st = os.fstat(handle.fileno())
        data = handle.read(st.st_size)
    return FileSignature.from_stat(st), data.decode("utf-8", errors="replace")


class FileContentCache:
    """Size-bounded LRU of file contents with optional idle TTL."""

    def __init__(
        self,
        max_entries: int = 50,
        ttl_seconds: float = 300.0,
        max_file_bytes: int = 20_000_000,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = float(ttl_seconds)
        self.max_file_bytes = int(max_file_bytes)
        self._executor = executor
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._last_access: dict[str, float] = {}
        self._inflight: dict[tuple[str, FileSignature], asyncio.Future] = {}
        self.metrics = {
            "hits": 0,
            "misses": 0,
            "coalesced": 0,
            "evictions": 0,
            "invalidations": 0,
            "readErrors": 0,
        }

    @classmethod
    def from_settings(cls, settings: MonitorSettings, executor: Optional[Executor] = None) -> "FileContentCache":
        return cls(
            max_entries=settings.cache_max_entries,
            ttl_seconds=settings.cache_ttl_seconds,
            max_file_bytes=settings.cache_max_file_bytes,
            executor=executor,
        )

    async def get(self, path: str | Path) -> str:
        """Return the current content of `path`, reading it only on a miss."""
        entry = await self.fetch(path)
        return entry.content

    async def fetch(self, path: str | Path) -> CacheEntry:
        key = str(path)
        signature = await self._stat(key)
        self._evict_expired()

        entry = self._entries.get(key)
        if entry is not None:
            if entry.signature == signature:
                self.metrics["hits"] += 1
                self._touch(key)
                return entry
            self._drop(key)

        inflight_key = (key, signature)
        task = self._inflight.get(inflight_key)
        if task is not None:
            self.metrics["coalesced"] += 1
        else:
            self.metrics["misses"] += 1
            task = asyncio.ensure_future(self._load(key))
            self._inflight[inflight_key] = task
            task.add_done_callback(partial(self._forget_inflight, inflight_key))
        # Shield so one cancelled caller does not cancel the read others await.
        return await asyncio.shield(task)

    def invalidate(self, path: str | Path) -> bool:
        key = str(path)
        if key not in self._entries:
            return False
        self._drop(key)
        self.metrics["invalidations"] += 1
        logger.debug("Invalidated cached content for %s", key)
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._last_access.clear()

    def peek(self, path: str | Path) -> Optional[CacheEntry]:
        """Return the stored entry without validating or touching it."""
        return self._entries.get(str(path))

    def stats(self) -> dict[str, Any]:
        lookups = self.metrics["hits"] + self.metrics["misses"] + self.metrics["coalesced"]
        return {
            **self.metrics,
            "entries": len(self._entries),
            "maxEntries": self.max_entries,
            "inFlight": len(self._inflight),
            "hitRate": (self.metrics["hits"] / lookups) if lookups else 0.0,
        }

    async def _stat(self, key: str) -> FileSignature:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, stat_signature, key)
        except OSError as exc:
            self.metrics["readErrors"] += 1
            self.invalidate(key)
            raise ReadError(key, exc) from exc

    async def _load(self, key: str) -> CacheEntry:
        loop = asyncio.get_running_loop()
        try:
            signature, content = await loop.run_in_executor(self._executor, _read_snapshot, key)
        except OSError as exc:
            self.metrics["readErrors"] += 1
            raise ReadError(key, exc) from exc

        entry = CacheEntry(path=key, signature=signature, content=content, fetched_at=self._clock())
        if signature.size <= self.max_file_bytes:
            self._store(entry)
        else:
            logger.info("Not caching %s (%d bytes exceeds limit)", key, signature.size)
        return entry

    def _store(self, entry: CacheEntry) -> None:
        self._entries[entry.path] = entry
        self._touch(entry.path)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._last_access.pop(evicted, None)
            self.metrics["evictions"] += 1

    def _touch(self, key: str) -> None:
        self._entries.move_to_end(key)
        self._last_access[key] = self._clock()

    def _drop(self, key: str) -> None:
        self._entries.pop(key, None)
        self._last_access.pop(key, None)

    def _evict_expired(self) -> None:
        if self.ttl_seconds <= 0:
            return
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, accessed in self._last_access.items() if accessed < cutoff]
        for key in expired:
            self._drop(key)
            self.metrics["evictions"] += 1

    def _forget_inflight(self, inflight_key: tuple[str, FileSignature], task: asyncio.Future) -> None:
        if self._inflight.get(inflight_key) is task:
            del self._inflight[inflight_key]
        if not task.cancelled():
            # Mark the exception retrieved; callers awaiting the task still see it.
            task.exception()
