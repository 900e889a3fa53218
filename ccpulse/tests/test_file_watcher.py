import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

from ccpulse.errors import WatchError
from ccpulse.ingest.cache import FileContentCache
from ccpulse.ingest.file_watcher import ConversationWatcher
from ccpulse.settings import MonitorSettings
from ccpulse.store import ConversationStore


async def _idle_awatch(*paths, stop_event=None, **kwargs):
    await stop_event.wait()
    return
    yield


class _RecordingPipeline:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[tuple[Path, str]] = []
        self.started = asyncio.Event()
        self.finished = 0

    async def ingest(self, path, trigger="watcher"):
        self.calls.append((Path(path), trigger))
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.finished += 1
        return {"status": "ok"}


class ConversationWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.settings = MonitorSettings(watch_dir=self.root, debounce_ms=80)
        self.store = ConversationStore(settings=self.settings)
        self.cache = FileContentCache()
        self.awatch_patch = patch("ccpulse.ingest.file_watcher.awatch", _idle_awatch)
        self.awatch_patch.start()
        self.addCleanup(self.awatch_patch.stop)

    async def _watcher(self, pipeline) -> ConversationWatcher:
        watcher = ConversationWatcher(self.root, pipeline, self.cache, self.store, self.settings)
        await watcher.start()
        self.addAsyncCleanup(watcher.stop)
        return watcher

    def _append(self, relative: str, text: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text)
        return path

    async def test_burst_of_writes_triggers_one_ingestion(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)

        for index in range(6):
            path = self._append("proj/burst.jsonl", f'{{"n": {index}}}\n')
            await watcher.handle_raw_change(Change.modified, str(path))
            await asyncio.sleep(0.01)
        await watcher.wait_idle()

        self.assertEqual(pipeline.calls, [(path, "watcher")])
        self.assertEqual(watcher.stats()["coalesced"], 5)
        self.assertEqual(watcher.stats()["processed"], 1)

    async def test_writes_separated_by_quiet_period_ingest_twice(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)

        path = self._append("proj/slow.jsonl", "{}\n")
        await watcher.handle_raw_change(Change.modified, str(path))
        await watcher.wait_idle()
        self._append("proj/slow.jsonl", "{}\n")
        await watcher.handle_raw_change(Change.modified, str(path))
        await watcher.wait_idle()

        self.assertEqual(len(pipeline.calls), 2)

    async def test_paths_are_debounced_independently(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)

        first = self._append("a/one.jsonl", "{}\n")
        second = self._append("b/two.jsonl", "{}\n")
        await watcher.handle_raw_change(Change.added, str(first))
        await watcher.handle_raw_change(Change.added, str(second))
        await watcher.wait_idle()

        self.assertEqual({call[0] for call in pipeline.calls}, {first, second})

    async def test_new_file_is_seeded_before_debounce_settles(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)

        path = self._append("proj/fresh.jsonl", '{"partial": ')
        await watcher.handle_raw_change(Change.added, str(path))

        conversation = self.store.get("fresh")
        self.assertIsNotNone(conversation)
        self.assertEqual(conversation.projectPath, "proj")
        self.assertEqual(pipeline.calls, [])
        await watcher.wait_idle()
        self.assertEqual(len(pipeline.calls), 1)

    async def test_raw_events_report_file_growth(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)
        path = self._append("proj/grow.jsonl", "{}\n")
        await self.store.seed("grow", source_path=str(path))

        self._append("proj/grow.jsonl", '{"more": true}\n')
        await watcher.handle_raw_change(Change.modified, str(path))

        self.assertEqual(self.store.get("grow").fileSizeDelta, path.stat().st_size)

    async def test_raw_event_invalidates_cached_content(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)
        path = self._append("proj/cached.jsonl", "{}\n")
        await self.cache.get(path)

        await watcher.handle_raw_change(Change.modified, str(path))

        self.assertIsNone(self.cache.peek(path))

    async def test_deleted_file_is_still_ingested_after_debounce(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)
        path = self.root / "proj" / "gone.jsonl"

        await watcher.handle_raw_change(Change.deleted, str(path))
        await watcher.wait_idle()

        self.assertEqual(pipeline.calls, [(path, "watcher")])
        self.assertIsNone(self.store.get("gone"))

    async def test_permission_error_marks_unreachable(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)
        path = self._append("proj/locked.jsonl", "{}\n")
        await self.store.seed("locked", source_path=str(path))

        with patch("ccpulse.ingest.file_watcher.os.stat", side_effect=PermissionError(13, "Permission denied")):
            await watcher.handle_raw_change(Change.modified, str(path))

        conversation = self.store.get("locked")
        self.assertFalse(conversation.reachable)
        self.assertEqual(conversation.unreachableReason, "Permission denied")
        self.assertEqual(watcher.stats()["pendingTimers"], 0)
        self.assertTrue(watcher.is_running)

    async def test_non_conversation_files_are_ignored(self) -> None:
        pipeline = _RecordingPipeline()
        watcher = await self._watcher(pipeline)
        path = self._append("proj/notes.md", "# notes\n")

        await watcher.handle_raw_change(Change.modified, str(path))

        self.assertEqual(watcher.stats()["rawEvents"], 0)
        self.assertEqual(watcher.stats()["pendingTimers"], 0)

    async def test_stop_lets_in_progress_ingestion_finish(self) -> None:
        pipeline = _RecordingPipeline(delay=0.2)
        watcher = ConversationWatcher(self.root, pipeline, self.cache, self.store, self.settings)
        await watcher.start()
        path = self._append("proj/busy.jsonl", "{}\n")
        await watcher.handle_raw_change(Change.modified, str(path))
        await asyncio.wait_for(pipeline.started.wait(), timeout=2)

        await watcher.stop()

        self.assertEqual(pipeline.finished, 1)
        self.assertFalse(watcher.is_running)

    async def test_missing_root_cannot_be_watched(self) -> None:
        watcher = ConversationWatcher(self.root / "missing", _RecordingPipeline(), self.cache, self.store, self.settings)
        with self.assertRaises(WatchError):
            await watcher.start()


if __name__ == "__main__":
    unittest.main()
