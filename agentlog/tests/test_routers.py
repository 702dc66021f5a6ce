import json
import types
import unittest
from pathlib import Path

from fastapi import HTTPException

from agentlog.events import EventBroadcaster
from agentlog.models import IngestResult
from agentlog.routers import hooks as hooks_router
from agentlog.routers import watcher as watcher_router


class _FakeSyncEngine:
    def __init__(self, root: Path, failing: set[str] | None = None) -> None:
        self.root = root
        self.failing = failing or set()
        self.changes: list[str] = []

    async def handle_file_change(self, path):
        self.changes.append(str(path))
        if str(path) in self.failing:
            raise RuntimeError("locked")
        if str(path).endswith(".txt"):
            return None
        return "session-updated"

    async def get_observability_snapshot(self):
        return {"activeOperationCount": 0, "activeOperations": [], "recentOperations": [], "trackedOperationCount": 2}

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "completed"}, {"id": "OP-2", "status": "running"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}

    async def ensure_session_fresh(self, session_id):
        if session_id == "missing":
            return None
        return IngestResult(path=f"/agent/projects/-w/{session_id}.jsonl", applied=2, startOffset=0, endOffset=90)


class _FakeWatcher:
    def __init__(self) -> None:
        self.is_running = False

    async def start(self, root=None):
        self.is_running = True
        return True

    async def stop(self):
        self.is_running = False


class _FakeRequest:
    def __init__(self, body, **state) -> None:
        self._body = body
        self.app = types.SimpleNamespace(state=types.SimpleNamespace(**state))

    async def json(self):
        if isinstance(self._body, bytes):
            return json.loads(self._body)
        return self._body


class HookNotifyTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.root = Path("/home/dev/.claude")
        self.engine = _FakeSyncEngine(self.root)
        self.broadcaster = EventBroadcaster()
        self.events = self.broadcaster.subscribe()

    def _request(self, body):
        return _FakeRequest(body, sync_engine=self.engine, broadcaster=self.broadcaster)

    async def test_transcript_path_is_routed(self) -> None:
        transcript = str(self.root / "projects" / "-w" / "S1.jsonl")

        response = await hooks_router.notify(
            self._request({"transcript_path": transcript, "hook_event_name": "PostToolUse", "session_id": "S1"})
        )

        self.assertEqual(response, {"ok": True})
        self.assertEqual(self.engine.changes, [transcript])
        notification = self.events.get_nowait()
        self.assertEqual(notification.payload, {"path": transcript, "source": "hook"})

    async def test_stop_event_also_routes_history_and_stats(self) -> None:
        transcript = str(self.root / "projects" / "-w" / "S1.jsonl")

        await hooks_router.notify(self._request({"transcript_path": transcript, "hook_event_name": "Stop"}))

        self.assertEqual(
            self.engine.changes,
            [transcript, str(self.root / "history.jsonl"), str(self.root / "stats-cache.json")],
        )
        self.assertEqual(self.events.qsize(), 3)

    async def test_failures_and_bad_payloads_still_return_ok(self) -> None:
        transcript = str(self.root / "projects" / "-w" / "S1.jsonl")
        self.engine.failing.add(transcript)

        with self.assertLogs("agentlog.hooks", level="ERROR"):
            response = await hooks_router.notify(self._request({"transcript_path": transcript}))
        self.assertEqual(response, {"ok": True})

        self.assertEqual(await hooks_router.notify(self._request(b"{not json")), {"ok": True})
        self.assertEqual(await hooks_router.notify(self._request(["a", "list"])), {"ok": True})
        self.assertEqual(await hooks_router.notify(self._request({"transcript_path": 12})), {"ok": True})
        self.assertEqual(self.events.qsize(), 0)

    async def test_unrouted_path_publishes_nothing(self) -> None:
        await hooks_router.notify(self._request({"transcript_path": "/tmp/notes.txt"}))

        self.assertEqual(self.engine.changes, ["/tmp/notes.txt"])
        self.assertEqual(self.events.qsize(), 0)

    async def test_missing_engine_is_tolerated(self) -> None:
        request = _FakeRequest({"transcript_path": "/x.jsonl"})

        self.assertEqual(await hooks_router.notify(request), {"ok": True})


class WatcherRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = _FakeSyncEngine(Path("/home/dev/.claude"))
        self.watcher = _FakeWatcher()
        self.request = _FakeRequest({}, sync_engine=self.engine, file_watcher=self.watcher)

    async def test_toggle_watcher(self) -> None:
        self.assertEqual(await watcher_router.watcher_status(self.request), {"running": False})
        self.assertEqual(await watcher_router.start_watcher(self.request), {"running": True})
        self.assertEqual(await watcher_router.stop_watcher(self.request), {"running": False})

    async def test_missing_watcher_is_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await watcher_router.watcher_status(_FakeRequest({}))
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_ingest_status(self) -> None:
        payload = await watcher_router.ingest_status(self.request)

        self.assertEqual(payload["status"], "active")
        self.assertEqual(payload["root"], "/home/dev/.claude")
        self.assertEqual(payload["watcher"], "stopped")
        self.assertEqual(payload["operations"]["trackedOperationCount"], 2)

    async def test_operations(self) -> None:
        listing = await watcher_router.list_ingest_operations(self.request, limit=1)
        self.assertEqual(listing["count"], 1)
        self.assertEqual(listing["items"][0]["id"], "OP-1")

        self.assertEqual((await watcher_router.get_ingest_operation(self.request, "OP-9"))["id"], "OP-9")
        with self.assertRaises(HTTPException) as ctx:
            await watcher_router.get_ingest_operation(self.request, "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_refresh_session(self) -> None:
        payload = await watcher_router.refresh_session(self.request, "S1")
        self.assertEqual(payload["applied"], 2)
        self.assertEqual(payload["endOffset"], 90)

        with self.assertRaises(HTTPException) as ctx:
            await watcher_router.refresh_session(self.request, "missing")
        self.assertEqual(ctx.exception.status_code, 404)


class EventBroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def test_full_queue_drops_oldest(self) -> None:
        broadcaster = EventBroadcaster(max_queue_size=2)
        queue = broadcaster.subscribe()

        for index in range(3):
            broadcaster.publish("history-appended", {"n": index})

        self.assertEqual([queue.get_nowait().payload["n"] for _ in range(2)], [1, 2])

    async def test_unsubscribe(self) -> None:
        broadcaster = EventBroadcaster()
        queue = broadcaster.subscribe()
        self.assertEqual(broadcaster.subscriber_count, 1)

        broadcaster.unsubscribe(queue)
        notification = broadcaster.publish("plan-changed")

        self.assertEqual(broadcaster.subscriber_count, 0)
        self.assertTrue(queue.empty())
        self.assertEqual(notification.payload, {})
        self.assertGreater(notification.timestamp, 0)

    async def test_slow_subscriber_only_keeps_latest(self) -> None:
        broadcaster = EventBroadcaster(max_queue_size=1)
        queue = broadcaster.subscribe()

        for index in range(10):
            broadcaster.publish("stats-updated", {"n": index})

        self.assertEqual(queue.qsize(), 1)
        self.assertEqual(queue.get_nowait().payload, {"n": 9})


if __name__ == "__main__":
    unittest.main()
