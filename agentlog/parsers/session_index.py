"""Per-project session indexes, transcript registration and project logos."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import aiosqlite

from agentlog.db.connection import transaction
from agentlog.db.repositories import SqliteProjectRepository, SqliteSessionRepository
from agentlog.models import SessionIndex
from agentlog.observability import record_parser_failure

logger = logging.getLogger("agentlog.sessions")

SESSION_INDEX_FILENAME = "sessions-index.json"

# Checked in order relative to the project root; the first hit wins
LOGO_CANDIDATES = (
    "logo.svg", "logo.png", "logo.jpg", "logo.webp",
    "icon.svg", "icon.png",
    "favicon.svg", "favicon.png", "favicon.ico",
    "public/logo.svg", "public/logo.png",
    "public/favicon.svg", "public/favicon.png", "public/favicon.ico",
    "public/favicon-32x32.png",
    "static/logo.svg", "static/logo.png",
    "static/favicon.svg", "static/favicon.png", "static/favicon.ico",
    "static/favicon-32x32.png",
    "app/static/logo.svg", "app/static/logo.png",
    "app/static/favicon.svg", "app/static/favicon.png", "app/static/favicon.ico",
    "app/static/favicon-32x32.png",
    "src/logo.svg", "src/logo.png",
    "src/assets/logo.svg", "src/assets/logo.png",
    "assets/logo.svg", "assets/logo.png",
    ".github/logo.svg", ".github/logo.png",
)


def project_display_name(project_path: str) -> str:
    parts = [part for part in project_path.split("/") if part]
    return parts[-1] if parts else project_path


def parse_session_index(raw: str) -> SessionIndex:
    index = SessionIndex.model_validate(json.loads(raw))
    if not index.originalPath:
        raise ValueError("session index has no originalPath")
    return index


async def import_session_index(db: aiosqlite.Connection, path: Path | str) -> int | None:
    """Upsert the project and every session listed in one index file.

    Returns the project id, or None when the file is missing or malformed.
    """
    path = Path(path)
    try:
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return None
    try:
        index = parse_session_index(raw)
    except ValueError as exc:
        logger.warning("Ignoring malformed session index %s: %s", path, exc)
        record_parser_failure("session_index")
        return None

    projects = SqliteProjectRepository(db)
    sessions = SqliteSessionRepository(db)
    async with transaction(db):
        project_id = await projects.upsert(index.originalPath, project_display_name(index.originalPath))
        for entry in index.entries:
            await sessions.upsert_from_index(entry, project_id)
        await projects.refresh_counts(project_id)
    logger.debug("Session index %s: %d sessions", path, len(index.entries))
    return project_id


def _project_dirs(root: Path) -> list[Path]:
    projects_dir = Path(root) / "projects"
    if not projects_dir.is_dir():
        return []
    return sorted(p for p in projects_dir.iterdir() if p.is_dir())


async def scan_session_indexes(db: aiosqlite.Connection, root: Path) -> int:
    count = 0
    for project_dir in _project_dirs(root):
        if await import_session_index(db, project_dir / SESSION_INDEX_FILENAME) is not None:
            count += 1
    return count


def list_transcripts(root: Path) -> list[Path]:
    """Top-level ``<session-id>.jsonl`` files of every project directory."""
    transcripts: list[Path] = []
    for project_dir in _project_dirs(root):
        try:
            transcripts.extend(sorted(project_dir.glob("*.jsonl")))
        except OSError:
            continue
    return transcripts


async def register_transcripts(db: aiosqlite.Connection, root: Path) -> int:
    """Ensure a session row exists for every transcript, without parsing it."""
    transcripts = list_transcripts(root)
    sessions = SqliteSessionRepository(db)
    async with transaction(db):
        for transcript in transcripts:
            await sessions.ensure(transcript.stem, str(transcript))
    return len(transcripts)


def find_logo(project_path: Path) -> str | None:
    for candidate in LOGO_CANDIDATES:
        full_path = project_path / candidate
        if full_path.is_file():
            return str(full_path)
    return None


async def scan_project_logos(db: aiosqlite.Connection) -> int:
    projects = SqliteProjectRepository(db)
    found = 0
    updates: list[tuple[int, str | None]] = []
    for project in await projects.list_with_paths():
        project_path = Path(project["path"])
        if not project_path.is_dir():
            continue
        logo = await asyncio.to_thread(find_logo, project_path)
        updates.append((project["id"], logo))
        if logo:
            found += 1
    async with transaction(db):
        for project_id, logo in updates:
            await projects.set_logo_path(project_id, logo)
    return found
