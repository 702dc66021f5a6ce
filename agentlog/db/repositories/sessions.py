"""SQLite implementation of SessionRepository."""
from __future__ import annotations

import json

import aiosqlite

from agentlog.models import SessionIndexEntry


class SqliteSessionRepository:
    """Session rows plus the per-transcript byte ledger they carry."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def ensure(self, session_id: str, jsonl_path: str = "", project_id: int | None = None) -> None:
        """Register a session if missing; fill an empty transcript path or project."""
        await self.db.execute(
            """INSERT INTO sessions (id, project_id, jsonl_path)
               VALUES (?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 jsonl_path = CASE
                   WHEN sessions.jsonl_path IS NULL OR sessions.jsonl_path = ''
                   THEN excluded.jsonl_path ELSE sessions.jsonl_path END,
                 project_id = COALESCE(sessions.project_id, excluded.project_id)""",
            (session_id, project_id, jsonl_path or None),
        )

    async def upsert_from_index(self, entry: SessionIndexEntry, project_id: int) -> None:
        # created_at is first-write-wins; everything else takes the newest index
        await self.db.execute(
            """INSERT INTO sessions (
                   id, project_id, jsonl_path, summary, first_prompt, message_count,
                   created_at, modified_at, git_branch, is_sidechain
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 project_id = excluded.project_id,
                 jsonl_path = CASE
                   WHEN sessions.jsonl_path IS NULL OR sessions.jsonl_path = ''
                   THEN excluded.jsonl_path ELSE sessions.jsonl_path END,
                 summary = excluded.summary,
                 first_prompt = excluded.first_prompt,
                 message_count = excluded.message_count,
                 created_at = COALESCE(NULLIF(sessions.created_at, ''), NULLIF(excluded.created_at, '')),
                 modified_at = excluded.modified_at,
                 git_branch = excluded.git_branch,
                 is_sidechain = excluded.is_sidechain""",
            (
                entry.sessionId,
                project_id,
                entry.fullPath,
                entry.summary,
                entry.firstPrompt,
                entry.messageCount,
                entry.created,
                entry.modified,
                entry.gitBranch,
                1 if entry.isSidechain else 0,
            ),
        )

    async def update_summary(self, session_id: str, summary: str) -> None:
        await self.db.execute(
            "UPDATE sessions SET summary = ? WHERE id = ?",
            (summary, session_id),
        )

    async def finish_batch(
        self,
        session_id: str,
        slug: str,
        git_branch: str,
        created_at: str = "",
        modified_at: str = "",
    ) -> None:
        """Apply what a transcript batch learned about its session.

        Empty values never replace stored ones. ``created_at`` is only filled
        when missing; callers pass ``modified_at`` only when it is newer.
        """
        await self.db.execute(
            """UPDATE sessions SET
                 slug = COALESCE(NULLIF(?, ''), slug),
                 git_branch = COALESCE(NULLIF(?, ''), git_branch),
                 created_at = COALESCE(NULLIF(created_at, ''), NULLIF(?, '')),
                 modified_at = COALESCE(NULLIF(?, ''), modified_at)
               WHERE id = ?""",
            (slug, git_branch, created_at, modified_at, session_id),
        )

    async def refresh_message_count(self, session_id: str) -> None:
        """Recount stored messages. Never lowers a count taken from a session index."""
        await self.db.execute(
            """UPDATE sessions SET message_count = MAX(
                 COALESCE(message_count, 0),
                 (SELECT COUNT(*) FROM messages WHERE session_id = ?)
               ) WHERE id = ?""",
            (session_id, session_id),
        )

    async def get_indexed_bytes(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT indexed_bytes FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return int(row[0] or 0) if row else 0

    async def advance_indexed_bytes(self, session_id: str, indexed_bytes: int) -> None:
        await self.db.execute(
            "UPDATE sessions SET indexed_bytes = MAX(COALESCE(indexed_bytes, 0), ?) WHERE id = ?",
            (indexed_bytes, session_id),
        )

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_for_project(self, project_id: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE project_id = ? ORDER BY created_at",
            (project_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_bash_commands(self, project_id: int) -> list[tuple[str, str]]:
        """(session_id, command) for Bash tool uses in a project that mention commit."""
        async with self.db.execute(
            """SELECT t.session_id, t.input_json FROM tool_uses t
               JOIN sessions s ON s.id = t.session_id
               WHERE s.project_id = ? AND t.tool_name = 'Bash'
                 AND t.input_json LIKE '%commit%'""",
            (project_id,),
        ) as cur:
            rows = await cur.fetchall()
        commands: list[tuple[str, str]] = []
        for session_id, input_json in rows:
            try:
                payload = json.loads(input_json or "{}")
            except json.JSONDecodeError:
                continue
            command = payload.get("command") if isinstance(payload, dict) else None
            if isinstance(command, str):
                commands.append((session_id, command))
        return commands
