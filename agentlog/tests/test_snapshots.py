import json
import tempfile
import unittest
from pathlib import Path

from agentlog.db.connection import open_connection
from agentlog.db.repositories import (
    SqliteFileHistoryRepository,
    SqlitePlanRepository,
    SqliteProjectRepository,
    SqliteSessionRepository,
    SqliteStatsRepository,
    SqliteTodoRepository,
)
from agentlog.db.sqlite_migrations import run_migrations
from agentlog.parsers.session_index import (
    find_logo,
    import_session_index,
    parse_session_index,
    project_display_name,
    register_transcripts,
)
from agentlog.parsers.snapshots import (
    import_file_history_entry,
    import_plan,
    import_stats,
    import_todos,
    parse_backup_name,
    parse_stats_snapshot,
    scan_file_history,
    todo_owner,
)

STATS = {
    "totalSessions": 5,
    "totalMessages": 40,
    "firstSessionDate": "2026-01-01T09:00:00Z",
    "hourCounts": {"10": 3},
    "dailyActivity": [
        {"date": "2026-01-01", "messageCount": 30, "sessionCount": 4, "toolCallCount": 12},
        {"date": "2026-01-02", "messageCount": 10, "sessionCount": 1, "toolCallCount": 2},
    ],
    "dailyModelTokens": [{"date": "2026-01-01", "tokensByModel": {"claude-sonnet-4-5": 1200}}],
}


class SnapshotParsingTests(unittest.TestCase):
    def test_stats_snapshot_values_are_text(self) -> None:
        values, daily = parse_stats_snapshot(json.dumps(STATS))

        self.assertEqual(values["totalSessions"], "5")
        self.assertEqual(values["totalSpeculationTimeSavedMs"], "0")
        self.assertEqual(json.loads(values["hourCounts"]), {"10": 3})
        self.assertEqual(values["lastComputedDate"], "")
        self.assertEqual(len(daily), 2)
        self.assertEqual(daily[0]["tokens_by_model"], {"claude-sonnet-4-5": 1200})
        self.assertEqual(daily[1]["tokens_by_model"], {})

    def test_stats_snapshot_rejects_bad_shapes(self) -> None:
        with self.assertRaises(ValueError):
            parse_stats_snapshot("[]")
        with self.assertRaises(ValueError):
            parse_stats_snapshot(json.dumps({"dailyActivity": [{"messageCount": 1}]}))

    def test_todo_owner(self) -> None:
        self.assertEqual(todo_owner("S1-agent-A7.json"), ("S1", "A7"))
        self.assertEqual(todo_owner("S1.json"), ("S1", None))

    def test_backup_name(self) -> None:
        self.assertEqual(parse_backup_name("3f9a0c@v12"), ("3f9a0c", 12))
        self.assertIsNone(parse_backup_name("3f9a0c.txt"))

    def test_session_index_requires_original_path(self) -> None:
        with self.assertRaises(ValueError):
            parse_session_index(json.dumps({"entries": []}))
        self.assertEqual(project_display_name("/work/demo-app/"), "demo-app")


class SnapshotImportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self.tmp.cleanup()

    def _write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    async def test_stats_import_replaces_snapshot_and_survives_corruption(self) -> None:
        path = self._write("stats-cache.json", json.dumps(STATS))
        repo = SqliteStatsRepository(self.db)

        self.assertTrue(await import_stats(self.db, path))
        self.assertEqual(await repo.get_value("totalSessions"), "5")
        self.assertEqual(len(await repo.list_daily()), 2)

        path.write_text('{"totalSessions": 6, "dailyAct', encoding="utf-8")
        self.assertFalse(await import_stats(self.db, path))

        self.assertEqual(await repo.get_value("totalSessions"), "5")
        self.assertEqual(len(await repo.list_daily()), 2)

    async def test_missing_stats_file_is_not_an_error(self) -> None:
        self.assertFalse(await import_stats(self.db, self.root / "stats-cache.json"))

    async def test_todo_snapshot_replaces_rows_for_its_file(self) -> None:
        repo = SqliteTodoRepository(self.db)
        items = [
            {"content": "Write parser", "status": "completed", "activeForm": "Writing parser"},
            {"content": "Add tests", "status": "in_progress", "activeForm": "Adding tests"},
        ]
        path = self._write("todos/S1-agent-A1.json", json.dumps(items))

        self.assertTrue(await import_todos(self.db, path))
        rows = await repo.list_for_source("S1-agent-A1.json")
        self.assertEqual([row["content"] for row in rows], ["Write parser", "Add tests"])
        self.assertEqual(rows[0]["session_id"], "S1")
        self.assertEqual(rows[0]["agent_id"], "A1")

        path.write_text(json.dumps(items[1:]), encoding="utf-8")
        await import_todos(self.db, path)
        self.assertEqual(len(await repo.list_for_source("S1-agent-A1.json")), 1)

    async def test_malformed_todo_snapshot_keeps_previous_rows(self) -> None:
        repo = SqliteTodoRepository(self.db)
        path = self._write("todos/S1.json", json.dumps([{"content": "Keep me", "status": "pending"}]))
        await import_todos(self.db, path)

        path.write_text("[{broken", encoding="utf-8")
        self.assertFalse(await import_todos(self.db, path))
        path.write_text('{"content": "not a list"}', encoding="utf-8")
        self.assertFalse(await import_todos(self.db, path))

        rows = await repo.list_for_source("S1.json")
        self.assertEqual([row["content"] for row in rows], ["Keep me"])

    async def test_empty_todo_list_clears_rows(self) -> None:
        repo = SqliteTodoRepository(self.db)
        path = self._write("todos/S1.json", json.dumps([{"content": "Done soon"}]))
        await import_todos(self.db, path)

        path.write_text("[]", encoding="utf-8")

        self.assertTrue(await import_todos(self.db, path))
        self.assertEqual(await repo.list_for_source("S1.json"), [])

    async def test_plan_upsert_keeps_one_row_per_file(self) -> None:
        path = self._write("plans/refactor.md", "# Plan\n\n1. first")
        await import_plan(self.db, path)
        path.write_text("# Plan\n\n1. first\n2. second", encoding="utf-8")
        await import_plan(self.db, path)

        plan = await SqlitePlanRepository(self.db).get("refactor.md")
        self.assertIn("2. second", plan["content"])
        async with self.db.execute("SELECT COUNT(*) FROM plans") as cur:
            self.assertEqual((await cur.fetchone())[0], 1)

    async def test_file_history_is_insert_or_ignore(self) -> None:
        path = self._write("file-history/S1/3f9a0c@v2", "backup body")
        self._write("file-history/S1/3f9a0c@v1", "older body")
        self._write("file-history/S1/notes.txt", "not a backup")

        self.assertTrue(await import_file_history_entry(self.db, path))
        self.assertTrue(await import_file_history_entry(self.db, path))
        self.assertEqual(await scan_file_history(self.db, self.root), 2)

        rows = await SqliteFileHistoryRepository(self.db).list_for_session("S1")
        self.assertEqual([(row["backup_filename"], row["version"]) for row in rows], [("3f9a0c@v1", 1), ("3f9a0c@v2", 2)])
        self.assertEqual(rows[0]["file_path"], "3f9a0c")

    async def test_session_index_created_at_is_first_write_wins(self) -> None:
        sessions = SqliteSessionRepository(self.db)
        index = {
            "originalPath": "/work/demo",
            "entries": [
                {
                    "sessionId": "S1",
                    "fullPath": "/agent/projects/-work-demo/S1.jsonl",
                    "summary": "Fix the build",
                    "messageCount": 4,
                    "created": "2026-01-01T10:00:00.000Z",
                    "modified": "2026-01-01T11:00:00.000Z",
                }
            ],
        }
        path = self._write("projects/-work-demo/sessions-index.json", json.dumps(index))
        project_id = await import_session_index(self.db, path)

        index["entries"][0]["created"] = "2026-01-01T10:30:00.000Z"
        index["entries"][0]["modified"] = "2026-01-01T12:00:00.000Z"
        index["entries"][0]["summary"] = "Fixed the build"
        path.write_text(json.dumps(index), encoding="utf-8")
        self.assertEqual(await import_session_index(self.db, path), project_id)

        session = await sessions.get_by_id("S1")
        self.assertEqual(session["created_at"], "2026-01-01T10:00:00.000Z")
        self.assertEqual(session["modified_at"], "2026-01-01T12:00:00.000Z")
        self.assertEqual(session["summary"], "Fixed the build")
        self.assertEqual(session["jsonl_path"], "/agent/projects/-work-demo/S1.jsonl")

        project = await SqliteProjectRepository(self.db).get_by_id(project_id)
        self.assertEqual(project["display_name"], "demo")
        self.assertEqual(project["session_count"], 1)
        self.assertEqual(project["message_count"], 4)

    async def test_malformed_session_index_is_ignored(self) -> None:
        path = self._write("projects/-work-demo/sessions-index.json", '{"entries": []}')

        self.assertIsNone(await import_session_index(self.db, path))
        self.assertEqual(await SqliteProjectRepository(self.db).list_with_paths(), [])

    async def test_register_transcripts_creates_bare_sessions(self) -> None:
        self._write("projects/-work-demo/S1.jsonl", "")
        self._write("projects/-work-demo/S2.jsonl", "")

        self.assertEqual(await register_transcripts(self.db, self.root), 2)

        session = await SqliteSessionRepository(self.db).get_by_id("S2")
        self.assertTrue(session["jsonl_path"].endswith("S2.jsonl"))
        self.assertIsNone(session["created_at"])
        self.assertEqual(session["indexed_bytes"], 0)

    async def test_find_logo_prefers_earlier_candidates(self) -> None:
        self._write("app/public/favicon.ico", "ico")
        self._write("app/icon.png", "png")

        self.assertEqual(find_logo(self.root / "app"), str(self.root / "app" / "icon.png"))
        self.assertIsNone(find_logo(self.root / "missing"))


if __name__ == "__main__":
    unittest.main()
