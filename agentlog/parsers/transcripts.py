"""Incremental parser for per-session transcript files (``<session-id>.jsonl``)."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from agentlog.date_utils import parse_timestamp
from agentlog.db.repositories import (
    SqliteMessageRepository,
    SqliteProjectRepository,
    SqliteSessionRepository,
)
from agentlog.models import IngestResult, ToolUseSegment, TranscriptRecord, segment_text
from agentlog.parsers.incremental import SessionLedger, apply_new_records

logger = logging.getLogger("agentlog.transcripts")

_MESSAGE_TYPES = {"user", "assistant"}


def message_row(session_id: str, record: TranscriptRecord, byte_offset: int) -> dict[str, Any]:
    """Flatten one user/assistant record into a ``messages`` row."""
    msg = record.message
    content_text = ""
    content_json = None
    usage = msg.usage if msg and msg.usage else None

    if msg is not None:
        if isinstance(msg.content, str):
            content_text = msg.content
        elif isinstance(msg.content, list):
            parts = [segment_text(segment) for segment in msg.segments]
            content_text = "\n".join(part for part in parts if part)
            content_json = json.dumps(msg.content)

    return {
        "session_id": session_id,
        "uuid": record.uuid,
        "parent_uuid": record.parentUuid,
        "type": record.type,
        "role": (msg.role if msg and msg.role else record.type),
        "model": msg.model if msg else None,
        "content_text": content_text,
        "content_json": content_json,
        "input_tokens": usage.input_tokens if usage else 0,
        "output_tokens": usage.output_tokens if usage else 0,
        "cache_read_tokens": usage.cache_read_input_tokens if usage else 0,
        "cache_creation_tokens": usage.cache_creation_input_tokens if usage else 0,
        "timestamp": record.timestamp,
        "byte_offset": byte_offset,
    }


def tool_use_rows(session_id: str, record: TranscriptRecord, message_id: int) -> list[dict[str, Any]]:
    if record.type != "assistant" or record.message is None:
        return []
    rows = []
    for segment in record.message.segments:
        if not isinstance(segment, ToolUseSegment) or not segment.name:
            continue
        rows.append(
            {
                "message_id": message_id,
                "session_id": session_id,
                "tool_name": segment.name,
                "tool_use_id": segment.id,
                "input_json": json.dumps(segment.input) if segment.input is not None else None,
                "timestamp": record.timestamp,
            }
        )
    return rows


class TranscriptApplier:
    """Applies transcript records for one session within a single batch."""

    name = "transcript"

    def __init__(self, db: aiosqlite.Connection, session_id: str, jsonl_path: str):
        self.db = db
        self.session_id = session_id
        self.jsonl_path = jsonl_path
        self.sessions = SqliteSessionRepository(db)
        self.messages = SqliteMessageRepository(db)
        self.projects = SqliteProjectRepository(db)
        self._registered = False
        self._slug = ""
        self._branch = ""
        self._cwd = ""
        self._first_ts: tuple[Any, str] | None = None
        self._last_ts: tuple[Any, str] | None = None
        self.inserted_messages = 0
        self.inserted_tool_uses = 0

    def parse(self, raw: dict[str, Any]) -> TranscriptRecord:
        return TranscriptRecord.model_validate(raw)

    async def _ensure_session(self) -> None:
        if not self._registered:
            await self.sessions.ensure(self.session_id, self.jsonl_path)
            self._registered = True

    def _observe(self, record: TranscriptRecord) -> None:
        if record.slug:
            self._slug = record.slug
        if record.gitBranch:
            self._branch = record.gitBranch
        if record.cwd:
            self._cwd = record.cwd
        ts = parse_timestamp(record.timestamp)
        if ts is None:
            return
        if self._first_ts is None or ts < self._first_ts[0]:
            self._first_ts = (ts, record.timestamp)
        if self._last_ts is None or ts > self._last_ts[0]:
            self._last_ts = (ts, record.timestamp)

    async def apply(self, record: TranscriptRecord, byte_offset: int) -> None:
        await self._ensure_session()
        self._observe(record)

        if record.type in _MESSAGE_TYPES:
            message_id = await self.messages.insert(message_row(self.session_id, record, byte_offset))
            if message_id is None:
                # Already stored by an earlier pass; its tool uses came with it
                return
            self.inserted_messages += 1
            for row in tool_use_rows(self.session_id, record, message_id):
                await self.messages.insert_tool_use(row)
                self.inserted_tool_uses += 1
        elif record.type == "summary" and record.summary:
            await self.sessions.update_summary(self.session_id, record.summary)

    async def finish(self) -> None:
        await self._ensure_session()
        session = await self.sessions.get_by_id(self.session_id) or {}

        project_id = session.get("project_id")
        attached = False
        if self._cwd and not project_id:
            project_id = await self.projects.upsert(self._cwd, Path(self._cwd).name or self._cwd)
            await self.sessions.ensure(self.session_id, self.jsonl_path, project_id)
            attached = True

        if self.inserted_messages:
            await self.sessions.refresh_message_count(self.session_id)
        if project_id and (attached or self.inserted_messages):
            await self.projects.refresh_counts(project_id)

        modified_at = ""
        if self._last_ts is not None:
            current = parse_timestamp(session.get("modified_at"))
            if current is None or self._last_ts[0] > current:
                modified_at = self._last_ts[1]

        await self.sessions.finish_batch(
            self.session_id,
            self._slug,
            self._branch,
            created_at=self._first_ts[1] if self._first_ts else "",
            modified_at=modified_at,
        )


def session_id_for(path: Path | str) -> str:
    return Path(path).stem


async def parse_transcript(
    db: aiosqlite.Connection,
    path: Path | str,
    session_id: str | None = None,
) -> IngestResult:
    """Apply any new records of a transcript file to the store."""
    path = Path(path)
    sid = session_id or session_id_for(path)
    applier = TranscriptApplier(db, sid, str(path))
    result = await apply_new_records(db, path, applier, SessionLedger(db, sid))
    if result.advanced:
        logger.debug(
            "Transcript %s: +%d messages, +%d tool uses (bytes %d..%d)",
            sid,
            applier.inserted_messages,
            applier.inserted_tool_uses,
            result.startOffset,
            result.endOffset,
        )
    return result
