"""SQLite implementation of CommitRepository."""
from __future__ import annotations

import aiosqlite

from agentlog.models import ParsedCommit


class SqliteCommitRepository:
    """Commits per project and their links to sessions."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert_ignore(self, project_id: int, commit: ParsedCommit) -> int:
        """Insert a commit if new and return its row id either way."""
        await self.db.execute(
            """INSERT OR IGNORE INTO commits (
                   project_id, hash, short_hash, subject, body, author, author_email,
                   timestamp, files_changed, insertions, deletions, is_authored_by_agent
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                project_id,
                commit.hash,
                commit.shortHash,
                commit.subject,
                commit.body,
                commit.author,
                commit.authorEmail,
                commit.timestamp,
                commit.filesChanged,
                commit.insertions,
                commit.deletions,
                1 if commit.isAgentAuthored else 0,
            ),
        )
        async with self.db.execute(
            "SELECT id FROM commits WHERE project_id = ? AND hash = ?",
            (project_id, commit.hash),
        ) as cur:
            row = await cur.fetchone()
            return int(row[0])

    async def link(self, session_id: str, commit_id: int, match_type: str) -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO session_commits (session_id, commit_id, match_type)
               VALUES (?, ?, ?)""",
            (session_id, commit_id, match_type),
        )

    async def list_for_project(self, project_id: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM commits WHERE project_id = ? ORDER BY timestamp DESC",
            (project_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_links(self, session_id: str | None = None) -> list[dict]:
        query = """SELECT sc.session_id, sc.match_type, c.hash, c.id AS commit_id
                   FROM session_commits sc JOIN commits c ON c.id = sc.commit_id"""
        params: tuple = ()
        if session_id:
            query += " WHERE sc.session_id = ?"
            params = (session_id,)
        async with self.db.execute(query + " ORDER BY sc.id", params) as cur:
            return [dict(r) for r in await cur.fetchall()]
