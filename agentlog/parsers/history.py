"""Incremental parser for the command history log (``history.jsonl``)."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import aiosqlite

from agentlog.db.repositories import SqliteHistoryRepository
from agentlog.models import HistoryRecord, IngestResult
from agentlog.parsers.incremental import FileLedger, apply_new_records


class HistoryApplier:
    name = "history"

    def __init__(self, db: aiosqlite.Connection):
        self.repo = SqliteHistoryRepository(db)

    def parse(self, raw: dict[str, Any]) -> HistoryRecord:
        return HistoryRecord.model_validate(raw)

    async def apply(self, record: HistoryRecord, byte_offset: int) -> None:
        # byte_offset is unique, so a replayed range inserts nothing
        await self.repo.insert(record, byte_offset)

    async def finish(self) -> None:
        return None


async def parse_history(db: aiosqlite.Connection, path: Path | str) -> IngestResult:
    return await apply_new_records(db, path, HistoryApplier(db), FileLedger(db, str(path)))
