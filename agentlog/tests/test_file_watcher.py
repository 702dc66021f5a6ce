import asyncio
import tempfile
import unittest
from pathlib import Path

from watchfiles import Change

from agentlog.db.file_watcher import AgentRootFilter, FileWatcher
from agentlog.events import EventBroadcaster


class _FakeSyncEngine:
    def __init__(self, root: Path, fail: bool = False) -> None:
        self.root = root
        self.fail = fail
        self.paths: list[str] = []

    async def handle_file_change(self, path):
        self.paths.append(str(path))
        if self.fail:
            raise RuntimeError("importer blew up")
        return "session-updated"


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class FileWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.engine = _FakeSyncEngine(self.root)
        self.broadcaster = EventBroadcaster()
        self.events = self.broadcaster.subscribe()
        self.watcher = FileWatcher(self.engine, self.broadcaster, debounce_ms=20)
        self.watcher.root = self.root

    async def asyncTearDown(self) -> None:
        await self.watcher.stop()
        self.tmp.cleanup()

    async def test_burst_of_writes_dispatches_once(self) -> None:
        path = str(self.root / "projects" / "-work" / "S1.jsonl")

        for _ in range(5):
            self.watcher.schedule(path)
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.1)

        self.assertEqual(self.engine.paths, [path])
        notifications = _drain(self.events)
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0].topic, "session-updated")
        self.assertEqual(notifications[0].payload, {"path": path, "source": "watcher"})

    async def test_distinct_paths_debounce_independently(self) -> None:
        first = str(self.root / "history.jsonl")
        second = str(self.root / "stats-cache.json")

        self.watcher.schedule(first)
        self.watcher.schedule(second)
        await asyncio.sleep(0.1)

        self.assertEqual(sorted(self.engine.paths), sorted([first, second]))

    async def test_deny_listed_paths_are_ignored(self) -> None:
        self.watcher.schedule(str(self.root / "statsig" / "events.json"))
        self.watcher.schedule(str(self.root / ".credentials.json"))
        await asyncio.sleep(0.1)

        self.assertEqual(self.engine.paths, [])

    async def test_stop_drops_pending_changes(self) -> None:
        self.watcher.schedule(str(self.root / "history.jsonl"))

        await self.watcher.stop()
        await asyncio.sleep(0.1)

        self.assertEqual(self.engine.paths, [])
        # Never started, so no status change is announced
        self.assertEqual(_drain(self.events), [])

    async def test_dispatch_errors_are_contained(self) -> None:
        self.engine.fail = True
        path = str(self.root / "history.jsonl")

        with self.assertLogs("agentlog.watcher", level="ERROR"):
            self.watcher.schedule(path)
            await asyncio.sleep(0.1)

        self.assertEqual(self.engine.paths, [path])
        self.assertEqual(_drain(self.events), [])

    async def test_start_and_stop_publish_status(self) -> None:
        self.assertTrue(await self.watcher.start())
        self.assertTrue(self.watcher.is_running)
        self.assertTrue(await self.watcher.start())

        await self.watcher.stop()

        self.assertFalse(self.watcher.is_running)
        statuses = [n.payload["running"] for n in _drain(self.events) if n.topic == "watcher-status"]
        self.assertEqual(statuses, [True, False])

    async def test_start_without_root_directory_fails(self) -> None:
        self.assertFalse(await self.watcher.start(self.root / "missing"))
        self.assertFalse(self.watcher.is_running)


class AgentRootFilterTests(unittest.TestCase):
    def test_filter_drops_deletions_and_denied_paths(self) -> None:
        root = Path("/home/dev/.claude")
        watch_filter = AgentRootFilter(root)

        self.assertTrue(watch_filter(Change.modified, str(root / "history.jsonl")))
        self.assertFalse(watch_filter(Change.deleted, str(root / "history.jsonl")))
        self.assertFalse(watch_filter(Change.added, str(root / "session-env" / "x.json")))
        self.assertFalse(watch_filter(Change.modified, str(root / "projects" / ".git" / "HEAD")))


if __name__ == "__main__":
    unittest.main()
