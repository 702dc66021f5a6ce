"""SQLite implementations for history entries and snapshot-derived tables."""
from __future__ import annotations

import json

import aiosqlite

from agentlog.models import HistoryRecord, TodoItem


class SqliteHistoryRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, record: HistoryRecord, byte_offset: int) -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO history_entries (display, timestamp, project, session_id, byte_offset)
               VALUES (?, ?, ?, ?, ?)""",
            (record.display, record.timestamp, record.project, record.sessionId or None, byte_offset),
        )

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM history_entries") as cur:
            row = await cur.fetchone()
            return int(row[0])


class SqliteStatsRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def replace(self, values: dict[str, str], daily: list[dict]) -> None:
        """Swap in a whole stats snapshot."""
        await self.db.execute("DELETE FROM stats_cache")
        await self.db.executemany(
            "INSERT INTO stats_cache (key, value) VALUES (?, ?)",
            list(values.items()),
        )
        await self.db.execute("DELETE FROM daily_stats")
        await self.db.executemany(
            """INSERT OR REPLACE INTO daily_stats (date, message_count, session_count, tool_call_count, tokens_by_model)
               VALUES (?, ?, ?, ?, ?)""",
            [
                (
                    row["date"],
                    row.get("message_count", 0),
                    row.get("session_count", 0),
                    row.get("tool_call_count", 0),
                    json.dumps(row.get("tokens_by_model") or {}),
                )
                for row in daily
            ],
        )

    async def get_value(self, key: str) -> str | None:
        async with self.db.execute("SELECT value FROM stats_cache WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
            return row[0] if row else None

    async def list_daily(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM daily_stats ORDER BY date") as cur:
            return [dict(r) for r in await cur.fetchall()]


class SqlitePlanRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, filename: str, content: str, mtime: int) -> None:
        await self.db.execute(
            """INSERT INTO plans (filename, content, mtime) VALUES (?, ?, ?)
               ON CONFLICT(filename) DO UPDATE SET
                 content = excluded.content,
                 mtime = excluded.mtime""",
            (filename, content, mtime),
        )

    async def get(self, filename: str) -> dict | None:
        async with self.db.execute("SELECT * FROM plans WHERE filename = ?", (filename,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None


class SqliteTodoRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def replace_for_source(
        self,
        source_file: str,
        session_id: str,
        agent_id: str | None,
        items: list[TodoItem],
    ) -> None:
        await self.db.execute("DELETE FROM todos WHERE source_file = ?", (source_file,))
        await self.db.executemany(
            """INSERT INTO todos (source_file, session_id, agent_id, content, status, active_form)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [
                (source_file, session_id, agent_id, item.content, item.status, item.activeForm)
                for item in items
            ],
        )

    async def list_for_source(self, source_file: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM todos WHERE source_file = ? ORDER BY id", (source_file,)
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]


class SqliteFileHistoryRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert_ignore(
        self,
        session_id: str,
        backup_filename: str,
        version: int,
        file_path: str | None = None,
    ) -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO file_history (session_id, file_path, backup_filename, version)
               VALUES (?, ?, ?, ?)""",
            (session_id, file_path, backup_filename, version),
        )

    async def list_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM file_history WHERE session_id = ? ORDER BY backup_filename",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
