"""SQLite implementation of MessageRepository (messages + tool uses)."""
from __future__ import annotations

import aiosqlite


class SqliteMessageRepository:
    """Append-only transcript rows. Replays are absorbed by the identity indexes."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, message: dict) -> int | None:
        """Insert one message; return its row id, or None if it already existed."""
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO messages (
                   session_id, uuid, parent_uuid, type, role, model,
                   content_text, content_json,
                   input_tokens, output_tokens, cache_read_tokens, cache_creation_tokens,
                   timestamp, byte_offset
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message["session_id"],
                message.get("uuid"),
                message.get("parent_uuid"),
                message["type"],
                message.get("role"),
                message.get("model"),
                message.get("content_text"),
                message.get("content_json"),
                message.get("input_tokens", 0),
                message.get("output_tokens", 0),
                message.get("cache_read_tokens", 0),
                message.get("cache_creation_tokens", 0),
                message.get("timestamp"),
                message.get("byte_offset", 0),
            ),
        )
        if cursor.rowcount == 0:
            return None
        return cursor.lastrowid

    async def insert_tool_use(self, tool_use: dict) -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO tool_uses (
                   message_id, session_id, tool_name, tool_use_id, input_json, timestamp
               ) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                tool_use["message_id"],
                tool_use["session_id"],
                tool_use["tool_name"],
                tool_use.get("tool_use_id"),
                tool_use.get("input_json"),
                tool_use.get("timestamp"),
            ),
        )

    async def list_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY id",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_tool_uses(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM tool_uses WHERE session_id = ? ORDER BY id",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def usage_totals(self, session_id: str) -> dict[str, int]:
        """Token totals for a session, summed on read."""
        async with self.db.execute(
            """SELECT
                   COALESCE(SUM(input_tokens), 0) AS input_tokens,
                   COALESCE(SUM(output_tokens), 0) AS output_tokens,
                   COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                   COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens,
                   COUNT(*) AS message_count
               FROM messages WHERE session_id = ?""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
            return {key: int(row[key] or 0) for key in row.keys()}
