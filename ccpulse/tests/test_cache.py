import asyncio
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from ccpulse.errors import ReadError
from ccpulse.ingest import cache as cache_module
from ccpulse.ingest.cache import FileContentCache


class FileContentCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)

    def _write(self, name: str, text: str, mtime_ns: int | None = None) -> Path:
        path = self.root / name
        path.write_text(text, encoding="utf-8")
        if mtime_ns is not None:
            os.utime(path, ns=(mtime_ns, mtime_ns))
        return path

    async def test_hit_returns_content_without_rereading(self) -> None:
        path = self._write("a.jsonl", '{"role": "user"}\n')
        cache = FileContentCache()

        first = await cache.get(path)
        with patch.object(cache_module, "_read_snapshot", side_effect=AssertionError("unexpected read")):
            second = await cache.get(path)

        self.assertEqual(first, second)
        self.assertEqual(cache.stats()["hits"], 1)
        self.assertEqual(cache.stats()["misses"], 1)

    async def test_changed_signature_never_returns_old_content(self) -> None:
        path = self._write("a.jsonl", "old-content\n", mtime_ns=1_700_000_000_000_000_000)
        cache = FileContentCache()
        self.assertEqual(await cache.get(path), "old-content\n")

        # Same size, different mtime.
        self._write("a.jsonl", "new-content\n", mtime_ns=1_700_000_001_000_000_000)
        self.assertEqual(await cache.get(path), "new-content\n")

        # Different size, same mtime.
        self._write("a.jsonl", "newer-content!\n", mtime_ns=1_700_000_001_000_000_000)
        self.assertEqual(await cache.get(path), "newer-content!\n")

        entry = cache.peek(path)
        self.assertEqual(entry.signature.size, len("newer-content!\n"))

    async def test_concurrent_gets_share_one_read(self) -> None:
        path = self._write("a.jsonl", "shared\n")
        cache = FileContentCache()
        calls = []
        real_read = cache_module._read_snapshot

        def slow_read(key):
            calls.append(key)
            time.sleep(0.05)
            return real_read(key)

        with patch.object(cache_module, "_read_snapshot", side_effect=slow_read):
            results = await asyncio.gather(*(cache.get(path) for _ in range(5)))

        self.assertEqual(results, ["shared\n"] * 5)
        self.assertEqual(len(calls), 1)
        stats = cache.stats()
        self.assertEqual(stats["coalesced"] + stats["hits"], 4)
        self.assertEqual(cache.stats()["inFlight"], 0)

    async def test_read_error_is_raised_and_not_cached(self) -> None:
        path = self._write("a.jsonl", "content\n")
        cache = FileContentCache()

        with patch.object(cache_module, "_read_snapshot", side_effect=PermissionError("denied")):
            with self.assertRaises(ReadError) as ctx:
                await cache.get(path)
        self.assertIsInstance(ctx.exception.cause, PermissionError)
        self.assertIsNone(cache.peek(path))

        self.assertEqual(await cache.get(path), "content\n")

    async def test_missing_file_raises_read_error(self) -> None:
        cache = FileContentCache()
        with self.assertRaises(ReadError) as ctx:
            await cache.get(self.root / "missing.jsonl")
        self.assertIsInstance(ctx.exception.cause, FileNotFoundError)
        self.assertEqual(cache.stats()["readErrors"], 1)

    async def test_lru_eviction_drops_least_recently_used(self) -> None:
        a = self._write("a.jsonl", "a\n")
        b = self._write("b.jsonl", "b\n")
        c = self._write("c.jsonl", "c\n")
        cache = FileContentCache(max_entries=2)

        await cache.get(a)
        await cache.get(b)
        await cache.get(a)
        await cache.get(c)

        self.assertIsNotNone(cache.peek(a))
        self.assertIsNone(cache.peek(b))
        self.assertIsNotNone(cache.peek(c))
        self.assertEqual(cache.stats()["evictions"], 1)

    async def test_idle_entries_expire_after_ttl(self) -> None:
        path = self._write("a.jsonl", "a\n")
        now = [100.0]
        cache = FileContentCache(ttl_seconds=10, clock=lambda: now[0])

        await cache.get(path)
        now[0] += 11
        await cache.get(path)

        self.assertEqual(cache.stats()["misses"], 2)
        self.assertEqual(cache.stats()["evictions"], 1)

    async def test_large_files_are_returned_but_not_cached(self) -> None:
        path = self._write("big.jsonl", "x" * 64)
        cache = FileContentCache(max_file_bytes=16)

        self.assertEqual(len(await cache.get(path)), 64)
        self.assertIsNone(cache.peek(path))

    async def test_invalidate_forces_reread(self) -> None:
        path = self._write("a.jsonl", "a\n")
        cache = FileContentCache()
        await cache.get(path)

        self.assertTrue(cache.invalidate(path))
        self.assertFalse(cache.invalidate(path))
        await cache.get(path)

        self.assertEqual(cache.stats()["misses"], 2)
        self.assertEqual(cache.stats()["invalidations"], 1)


if __name__ == "__main__":
    unittest.main()
