import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

from ccpulse.date_utils import format_iso, utc_now
from ccpulse.errors import WatchError
from ccpulse.models import ConversationState
from ccpulse.monitor import ConversationMonitor
from ccpulse.settings import MonitorSettings
from ccpulse.tests.fakes import FakeWebSocket


async def _idle_awatch(*paths, stop_event=None, **kwargs):
    await stop_event.wait()
    return
    yield


def _entry(uuid: str, role: str, content, parent: str | None = None) -> str:
    return json.dumps({
        "type": role,
        "uuid": uuid,
        "parentUuid": parent,
        "timestamp": format_iso(utc_now()),
        "message": {"role": role, "content": content},
    }) + "\n"


class ConversationMonitorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.settings = MonitorSettings(watch_dir=self.root, debounce_ms=50, refresh_interval_seconds=60)
        awatch_patch = patch("ccpulse.ingest.file_watcher.awatch", _idle_awatch)
        awatch_patch.start()
        self.addCleanup(awatch_patch.stop)

    def _append(self, relative: str, text: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text)
        return path

    async def test_start_fails_for_missing_root(self) -> None:
        monitor = ConversationMonitor(MonitorSettings(watch_dir=self.root / "missing"))
        self.addAsyncCleanup(monitor.stop)
        with self.assertRaises(WatchError):
            await monitor.start()
        self.assertFalse(monitor.is_running)

    async def test_initial_scan_populates_read_api(self) -> None:
        self._append("proj/session-1.jsonl", _entry("u1", "user", "Fix the tests"))
        self._append("proj/session-2.jsonl", "not json\n")
        monitor = ConversationMonitor(self.settings)
        self.addAsyncCleanup(monitor.stop)

        await monitor.start()

        self.assertTrue(monitor.is_running)
        self.assertEqual({item.id for item in monitor.list_conversations()}, {"session-1", "session-2"})
        self.assertEqual(monitor.get_all_states()["session-1"], ConversationState.ASSISTANT_WORKING)
        self.assertEqual(monitor.get_conversation("session-2").cachedSummary.warningCount, 1)
        self.assertIsNone(monitor.get_conversation("missing"))
        status = monitor.status()
        self.assertEqual(status["conversationCount"], 2)
        self.assertTrue(status["watcher"]["running"])

    async def test_append_during_initial_scan_is_ingested(self) -> None:
        self._append("proj/racing.jsonl", _entry("u1", "user", "Run the build"))
        monitor = ConversationMonitor(self.settings)
        self.addAsyncCleanup(monitor.stop)
        ingest = monitor.pipeline.ingest
        watcher_running_during_scan = []

        async def ingest_then_append(target, trigger="watcher"):
            result = await ingest(target, trigger=trigger)
            if trigger == "startup":
                watcher_running_during_scan.append(monitor.watcher.is_running)
                self._append("proj/racing.jsonl", _entry("a1", "assistant", "Building now.", parent="u1"))
                await monitor.watcher.handle_raw_change(Change.modified, str(target))
            return result

        monitor.pipeline.ingest = ingest_then_append
        await monitor.start()
        await monitor.watcher.wait_idle()

        self.assertEqual(watcher_running_during_scan, [True])
        self.assertEqual([message.id for message in monitor.get_conversation("racing").messages], ["u1", "a1"])
        self.assertEqual(monitor.watcher.stats()["processed"], 1)

    async def test_failed_scan_releases_worker_pool(self) -> None:
        monitor = ConversationMonitor(self.settings)
        self.addAsyncCleanup(monitor.stop)

        with patch.object(monitor.pipeline, "ingest_all", side_effect=RuntimeError("disk gone")):
            with self.assertRaises(RuntimeError):
                await monitor.start()

        self.assertFalse(monitor.is_running)
        self.assertFalse(monitor.watcher.is_running)
        with self.assertRaises(RuntimeError):
            monitor._executor.submit(len, "")

    async def test_appended_tool_call_is_pushed_to_subscribers(self) -> None:
        path = self._append("proj/live.jsonl", _entry("u1", "user", "Run the build"))
        monitor = ConversationMonitor(self.settings)
        self.addAsyncCleanup(monitor.stop)
        await monitor.start()

        websocket = FakeWebSocket()
        client = asyncio.create_task(monitor.hub.handle(websocket))
        websocket.push({"type": "subscribe", "channel": "conversation:live"})
        while len(websocket.sent_messages) < 2:
            await asyncio.sleep(0.01)

        self._append(
            "proj/live.jsonl",
            _entry("a1", "assistant", [{"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {}}], parent="u1"),
        )
        await monitor.watcher.handle_raw_change(Change.modified, str(path))
        await monitor.watcher.wait_idle()

        self.assertEqual(monitor.get_all_states()["live"], ConversationState.EXECUTING_TOOLS)
        state_changes = [message for message in websocket.sent_messages if message["type"] == "conversation_state_change"]
        self.assertEqual(len(state_changes), 1)
        self.assertEqual(state_changes[0]["data"]["previousState"], "AssistantWorking")
        self.assertEqual(state_changes[0]["data"]["newState"], "ExecutingTools")
        self.assertIn("new_message", websocket.types_sent())

        websocket.hang_up()
        await client

    async def test_deleted_file_becomes_unreachable(self) -> None:
        path = self._append("proj/temp.jsonl", _entry("u1", "user", "hello"))
        monitor = ConversationMonitor(self.settings)
        self.addAsyncCleanup(monitor.stop)
        await monitor.start()

        path.unlink()
        await monitor.watcher.handle_raw_change(Change.deleted, str(path))
        await monitor.watcher.wait_idle()

        conversation = monitor.get_conversation("temp")
        self.assertFalse(conversation.reachable)
        self.assertTrue(monitor.watcher.is_running)

    async def test_stop_closes_live_connections(self) -> None:
        monitor = ConversationMonitor(self.settings)
        await monitor.start()
        websocket = FakeWebSocket()
        await monitor.hub.connect(websocket)

        await monitor.stop()

        self.assertTrue(websocket.closed)
        self.assertFalse(monitor.is_running)
        self.assertFalse(monitor.watcher.is_running)


if __name__ == "__main__":
    unittest.main()
