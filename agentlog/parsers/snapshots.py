"""Importers for files that are replaced wholesale rather than appended.

Each importer reads and validates the entire file before touching the store.
If anything about the file is malformed the previous rows stay as they were;
the next write to the file gets another chance.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Any

import aiosqlite

from agentlog.db.connection import transaction
from agentlog.db.repositories import (
    SqliteFileHistoryRepository,
    SqlitePlanRepository,
    SqliteStatsRepository,
    SqliteTodoRepository,
)
from agentlog.models import TodoItem
from agentlog.observability import record_ingestion, record_parser_failure

logger = logging.getLogger("agentlog.snapshots")

_TODO_FILENAME = re.compile(r"^(.+?)-agent-(.+)$")
_BACKUP_FILENAME = re.compile(r"^(.+)@v(\d+)$")

# Scalar and object keys copied out of stats-cache.json
_STATS_SCALAR_KEYS = ("totalSessions", "totalMessages", "totalSpeculationTimeSavedMs")
_STATS_TEXT_KEYS = ("firstSessionDate", "lastComputedDate")
_STATS_OBJECT_KEYS = ("longestSession", "hourCounts", "modelUsage")


def _snapshot_failed(kind: str, path: Path, exc: Exception) -> None:
    logger.warning("Ignoring malformed %s snapshot %s: %s", kind, path, exc)
    record_parser_failure(kind)


async def _read_text(path: Path) -> str | None:
    try:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return None


# ── Stats snapshot ──────────────────────────────────────────────────


def parse_stats_snapshot(raw: str) -> tuple[dict[str, str], list[dict[str, Any]]]:
    """Return (stats_cache values, daily_stats rows) for a stats-cache.json body."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("stats snapshot is not a JSON object")

    values: dict[str, str] = {"raw": raw}
    for key in _STATS_SCALAR_KEYS:
        values[key] = str(data.get(key) or 0)
    for key in _STATS_TEXT_KEYS:
        values[key] = str(data.get(key) or "")
    for key in _STATS_OBJECT_KEYS:
        values[key] = json.dumps(data.get(key) or {})

    tokens_by_date: dict[str, Any] = {}
    for entry in data.get("dailyModelTokens") or []:
        if not isinstance(entry, dict):
            raise ValueError("dailyModelTokens entry is not an object")
        if entry.get("date"):
            tokens_by_date[str(entry["date"])] = entry.get("tokensByModel") or {}

    daily: list[dict[str, Any]] = []
    for day in data.get("dailyActivity") or []:
        if not isinstance(day, dict) or not day.get("date"):
            raise ValueError("dailyActivity entry has no date")
        date = str(day["date"])
        daily.append(
            {
                "date": date,
                "message_count": int(day.get("messageCount") or 0),
                "session_count": int(day.get("sessionCount") or 0),
                "tool_call_count": int(day.get("toolCallCount") or 0),
                "tokens_by_model": tokens_by_date.get(date, {}),
            }
        )
    return values, daily


async def import_stats(db: aiosqlite.Connection, path: Path | str) -> bool:
    path = Path(path)
    raw = await _read_text(path)
    if raw is None:
        return False
    t0 = time.monotonic()
    try:
        values, daily = parse_stats_snapshot(raw)
    except (ValueError, TypeError) as exc:
        _snapshot_failed("stats", path, exc)
        return False
    async with transaction(db):
        await SqliteStatsRepository(db).replace(values, daily)
    record_ingestion("stats", "applied", (time.monotonic() - t0) * 1000)
    return True


# ── Plans ───────────────────────────────────────────────────────────


async def import_plan(db: aiosqlite.Connection, path: Path | str) -> bool:
    path = Path(path)
    content = await _read_text(path)
    if content is None:
        return False
    try:
        mtime = int(path.stat().st_mtime * 1000)
    except OSError:
        return False
    async with transaction(db):
        await SqlitePlanRepository(db).upsert(path.name, content, mtime)
    return True


async def scan_plans(db: aiosqlite.Connection, root: Path) -> int:
    plans_dir = Path(root) / "plans"
    if not plans_dir.is_dir():
        return 0
    count = 0
    for plan in sorted(plans_dir.glob("*.md")):
        if await import_plan(db, plan):
            count += 1
    return count


# ── Todos ───────────────────────────────────────────────────────────


def todo_owner(filename: str) -> tuple[str, str | None]:
    """``{session}-agent-{agent}.json`` → (session, agent); plain names have no agent."""
    stem = filename[: -len(".json")] if filename.endswith(".json") else filename
    match = _TODO_FILENAME.match(stem)
    if match:
        return match.group(1), match.group(2)
    return stem, None


def parse_todo_snapshot(raw: str) -> list[TodoItem]:
    items = json.loads(raw)
    if not isinstance(items, list):
        raise ValueError("todo snapshot is not a JSON array")
    return [TodoItem.model_validate(item) for item in items]


async def import_todos(db: aiosqlite.Connection, path: Path | str) -> bool:
    path = Path(path)
    raw = await _read_text(path)
    if raw is None:
        return False
    try:
        items = parse_todo_snapshot(raw)
    except ValueError as exc:
        _snapshot_failed("todos", path, exc)
        return False
    session_id, agent_id = todo_owner(path.name)
    # An empty list is a real snapshot: the agent cleared its todos
    async with transaction(db):
        await SqliteTodoRepository(db).replace_for_source(path.name, session_id, agent_id, items)
    return True


async def scan_todos(db: aiosqlite.Connection, root: Path) -> int:
    todos_dir = Path(root) / "todos"
    if not todos_dir.is_dir():
        return 0
    count = 0
    for todo_file in sorted(todos_dir.glob("*.json")):
        if await import_todos(db, todo_file):
            count += 1
    return count


# ── File-backup listing ─────────────────────────────────────────────


def parse_backup_name(name: str) -> tuple[str, int] | None:
    match = _BACKUP_FILENAME.match(name)
    if not match:
        return None
    return match.group(1), int(match.group(2))


async def import_file_history_entry(db: aiosqlite.Connection, path: Path | str) -> bool:
    """Record one ``file-history/<session>/<name>@v<N>`` backup."""
    path = Path(path)
    parsed = parse_backup_name(path.name)
    if parsed is None:
        return False
    file_hash, version = parsed
    async with transaction(db):
        await SqliteFileHistoryRepository(db).insert_ignore(path.parent.name, path.name, version, file_hash)
    return True


async def scan_file_history(db: aiosqlite.Connection, root: Path) -> int:
    history_dir = Path(root) / "file-history"
    if not history_dir.is_dir():
        return 0
    entries: list[tuple[str, str, int, str]] = []
    for session_dir in sorted(history_dir.iterdir()):
        if not session_dir.is_dir():
            continue
        try:
            names = sorted(p.name for p in session_dir.iterdir())
        except OSError:
            continue
        for name in names:
            parsed = parse_backup_name(name)
            if parsed:
                entries.append((session_dir.name, name, parsed[1], parsed[0]))

    repo = SqliteFileHistoryRepository(db)
    async with transaction(db):
        for session_id, name, version, file_hash in entries:
            await repo.insert_ignore(session_id, name, version, file_hash)
    return len(entries)
