"""SQLite implementation of the offset ledger for append-only files."""
from __future__ import annotations

import aiosqlite


class SqliteIndexStateRepository:
    """Track how many bytes of each append-only file have been applied."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_indexed_bytes(self, file_path: str) -> int:
        async with self.db.execute(
            "SELECT indexed_bytes FROM index_state WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return int(row[0] or 0) if row else 0

    async def advance(self, file_path: str, indexed_bytes: int, mtime: float) -> None:
        # MAX() keeps the ledger monotonic even if a stale writer gets here late
        await self.db.execute(
            """INSERT INTO index_state (file_path, indexed_bytes, mtime)
               VALUES (?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                 indexed_bytes = MAX(index_state.indexed_bytes, excluded.indexed_bytes),
                 mtime = excluded.mtime""",
            (file_path, indexed_bytes, mtime),
        )

    async def get_state(self, file_path: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM index_state WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None
