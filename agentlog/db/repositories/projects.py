"""SQLite implementation of ProjectRepository."""
from __future__ import annotations

import aiosqlite


class SqliteProjectRepository:
    """Projects keyed by their working-copy path."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, path: str, display_name: str) -> int:
        await self.db.execute(
            """INSERT INTO projects (path, display_name, created_at, updated_at)
               VALUES (?, ?, datetime('now'), datetime('now'))
               ON CONFLICT(path) DO UPDATE SET updated_at = datetime('now')""",
            (path, display_name),
        )
        async with self.db.execute("SELECT id FROM projects WHERE path = ?", (path,)) as cur:
            row = await cur.fetchone()
            return int(row[0])

    async def get_by_id(self, project_id: int) -> dict | None:
        async with self.db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_by_path(self, path: str) -> dict | None:
        async with self.db.execute("SELECT * FROM projects WHERE path = ?", (path,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_with_paths(self) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM projects WHERE path IS NOT NULL AND path != '' ORDER BY id"
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def refresh_counts(self, project_id: int) -> None:
        await self.db.execute(
            """UPDATE projects SET
                 session_count = (SELECT COUNT(*) FROM sessions WHERE project_id = ?),
                 message_count = (SELECT COALESCE(SUM(message_count), 0) FROM sessions WHERE project_id = ?)
               WHERE id = ?""",
            (project_id, project_id, project_id),
        )

    async def set_last_indexed_commit(self, project_id: int, commit_hash: str) -> None:
        await self.db.execute(
            "UPDATE projects SET last_indexed_commit = ? WHERE id = ?",
            (commit_hash, project_id),
        )

    async def set_remote_url(self, project_id: int, remote_url: str | None) -> None:
        await self.db.execute(
            "UPDATE projects SET remote_url = ? WHERE id = ?",
            (remote_url, project_id),
        )

    async def set_logo_path(self, project_id: int, logo_path: str | None) -> None:
        await self.db.execute(
            "UPDATE projects SET logo_path = ? WHERE id = ?",
            (logo_path, project_id),
        )
