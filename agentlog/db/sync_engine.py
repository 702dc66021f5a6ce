"""Change routing and full-index orchestration.

Every changed path, whether reported by the watcher or by a hook, goes through
:func:`classify` and :meth:`SyncEngine.handle_file_change`. Startup indexing
runs in two passes: a quick metadata pass and a background pass that parses
transcript content and scans commits.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from agentlog import config
from agentlog.db.repositories import SqliteProjectRepository, SqliteSessionRepository
from agentlog.models import IngestResult, Route
from agentlog.observability import start_span
from agentlog.parsers.commits import CommitImporter, GitCommitSource
from agentlog.parsers.history import parse_history
from agentlog.parsers.session_index import (
    SESSION_INDEX_FILENAME,
    import_session_index,
    list_transcripts,
    register_transcripts,
    scan_project_logos,
    scan_session_indexes,
)
from agentlog.parsers.snapshots import (
    import_file_history_entry,
    import_plan,
    import_stats,
    import_todos,
    scan_file_history,
    scan_plans,
    scan_todos,
)
from agentlog.parsers.transcripts import parse_transcript, session_id_for

logger = logging.getLogger("agentlog.sync")

# Subtrees of the agent root that hold credentials, caches or telemetry
DENY_LIST = frozenset(
    {
        ".credentials.json",
        "statsig",
        "session-env",
        "cache",
        "telemetry",
        "paste-cache",
        "shell-snapshots",
        "skills",
    }
)

STATS_FILENAME = "stats-cache.json"
HISTORY_FILENAME = "history.jsonl"

_BACKUP_NAME = re.compile(r"^.+@v\d+$")


def relative_parts(path: Path | str, root: Path | str) -> tuple[str, ...] | None:
    """Path components below ``root``, or None when ``path`` is outside it."""
    candidate = Path(path).expanduser()
    base = Path(root).expanduser()
    try:
        return candidate.resolve(strict=False).relative_to(base.resolve(strict=False)).parts
    except ValueError:
        return None


def is_denied(path: Path | str, root: Path | str) -> bool:
    parts = relative_parts(path, root)
    if parts is None:
        return False
    return any(part in DENY_LIST for part in parts)


def classify(path: Path | str, root: Path | str) -> Route | None:
    """Decide which importer owns a changed path and the topic it produces."""
    parts = relative_parts(path, root)
    if not parts or any(part in DENY_LIST for part in parts):
        return None
    name = parts[-1]
    top = parts[0]

    if len(parts) == 1:
        if name == STATS_FILENAME:
            return Route(kind="stats", topic="stats-updated")
        if name == HISTORY_FILENAME:
            return Route(kind="history", topic="history-appended")
        return None

    if top == "plans" and name.endswith(".md"):
        return Route(kind="plan", topic="plan-changed")
    if top == "todos" and name.endswith(".json"):
        return Route(kind="todo", topic="todo-changed")
    if top == "projects":
        if name == SESSION_INDEX_FILENAME:
            return Route(kind="session_index", topic="session-updated")
        if name.endswith(".jsonl"):
            return Route(kind="transcript", topic="session-updated")
    if top == "file-history" and len(parts) == 3 and _BACKUP_NAME.match(name):
        return Route(kind="file_history", topic="file-history-updated")
    return None


class SyncEngine:
    """Routes changed files to their importers and tracks index runs."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        root: Path | str | None = None,
        git: GitCommitSource | None = None,
    ):
        self.db = db
        self.root = Path(root or config.AGENT_ROOT).expanduser()
        self.session_repo = SqliteSessionRepository(db)
        self.project_repo = SqliteProjectRepository(db)
        self.commit_importer = CommitImporter(db, git)
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Change routing ──────────────────────────────────────────────

    async def handle_file_change(self, path: Path | str) -> str | None:
        """Apply one changed path. Returns the notification topic, or None."""
        route = classify(path, self.root)
        if route is None:
            return None
        path = Path(path)
        with start_span("sync.handle_file_change", {"kind": route.kind, "path": str(path)}):
            if route.kind == "stats":
                await import_stats(self.db, path)
            elif route.kind == "history":
                await parse_history(self.db, path)
            elif route.kind == "plan":
                await import_plan(self.db, path)
            elif route.kind == "todo":
                await import_todos(self.db, path)
            elif route.kind == "session_index":
                await import_session_index(self.db, path)
            elif route.kind == "transcript":
                await self._handle_transcript(path)
            elif route.kind == "file_history":
                await import_file_history_entry(self.db, path)
        return route.topic

    async def _handle_transcript(self, path: Path) -> IngestResult:
        session_id = session_id_for(path)
        result = await parse_transcript(self.db, path, session_id)
        if result.advanced:
            # New transcript content may make recent commits attributable
            await self.rescan_commits_for_session(session_id)
        return result

    async def rescan_commits_for_session(self, session_id: str) -> int:
        session = await self.session_repo.get_by_id(session_id)
        if not session or not session.get("project_id"):
            return 0
        project = await self.project_repo.get_by_id(session["project_id"])
        if not project or not project.get("path"):
            return 0
        try:
            return await self.commit_importer.scan_project(project["id"], project["path"])
        except Exception:
            logger.exception("Commit rescan failed for session %s", session_id)
            return 0

    async def ensure_session_fresh(self, session_id: str) -> IngestResult | None:
        """Bring one session's transcript up to date on demand."""
        session = await self.session_repo.get_by_id(session_id)
        if not session or not session.get("jsonl_path"):
            return None
        return await parse_transcript(self.db, session["jsonl_path"], session_id)

    # ── Full index passes ───────────────────────────────────────────

    async def run_quick_index(self, trigger: str = "startup") -> dict[str, Any]:
        """Metadata-only pass: snapshots, indexes, history and path registration."""
        operation_id = await self._start_operation("quick_index", trigger, {"root": str(self.root)})
        stats: dict[str, Any] = {}
        t0 = time.monotonic()
        try:
            await self._update_operation(operation_id, phase="stats")
            stats["stats"] = await import_stats(self.db, self.root / STATS_FILENAME)

            await self._update_operation(operation_id, phase="session_indexes")
            stats["sessionIndexes"] = await scan_session_indexes(self.db, self.root)

            await self._update_operation(operation_id, phase="history")
            history = await parse_history(self.db, self.root / HISTORY_FILENAME)
            stats["historyRecords"] = history.applied

            await self._update_operation(operation_id, phase="plans")
            stats["plans"] = await scan_plans(self.db, self.root)

            await self._update_operation(operation_id, phase="todos")
            stats["todos"] = await scan_todos(self.db, self.root)

            await self._update_operation(operation_id, phase="file_history")
            stats["fileHistory"] = await scan_file_history(self.db, self.root)

            await self._update_operation(operation_id, phase="transcripts")
            stats["transcriptsRegistered"] = await register_transcripts(self.db, self.root)

            await self._update_operation(operation_id, phase="logos")
            stats["logos"] = await scan_project_logos(self.db)

            stats["durationMs"] = int((time.monotonic() - t0) * 1000)
            logger.info("Quick index completed in %dms", stats["durationMs"])
            await self._finish_operation(operation_id, status="completed", stats=stats)
            return stats
        except Exception as exc:
            await self._finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
            raise

    async def run_background_index(self, trigger: str = "startup") -> dict[str, Any]:
        """Parse small transcripts that are behind their ledger, then scan commits."""
        operation_id = await self._start_operation("background_index", trigger, {"root": str(self.root)})
        stats: dict[str, Any] = {"transcripts": 0, "skippedLarge": 0, "failed": 0}
        try:
            transcripts = list_transcripts(self.root)
            await self._update_operation(
                operation_id,
                phase="transcripts",
                progress={"total": len(transcripts)},
            )
            for index, transcript in enumerate(transcripts, start=1):
                try:
                    size = transcript.stat().st_size
                except OSError:
                    continue
                if size > config.STARTUP_MAX_JSONL_BYTES:
                    stats["skippedLarge"] += 1
                    continue
                session_id = session_id_for(transcript)
                if await self.session_repo.get_indexed_bytes(session_id) >= size:
                    continue
                try:
                    await parse_transcript(self.db, transcript, session_id)
                    stats["transcripts"] += 1
                except Exception:
                    logger.exception("Failed to index transcript %s", transcript)
                    stats["failed"] += 1
                if index % 50 == 0:
                    await self._update_operation(operation_id, progress={"done": index})

            if stats["transcripts"]:
                logger.info("Background: %d session transcripts indexed", stats["transcripts"])

            await self._update_operation(operation_id, phase="commits")
            stats["commits"] = await self.commit_importer.scan_all_projects()
            await self._finish_operation(operation_id, status="completed", stats=stats)
            return stats
        except Exception as exc:
            await self._finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
            raise

    # ── Operation tracking ──────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Live index-run payload for the status API."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
            }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str,
        *,
        phase: str | None = None,
        progress: dict[str, Any] | None = None,
    ) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if progress:
                operation.setdefault("progress", {}).update(progress)
            operation["updatedAt"] = datetime.now(timezone.utc).isoformat()
        if phase:
            logger.debug("Operation update [%s] %s", operation_id, phase)

    async def _finish_operation(
        self,
        operation_id: str,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        finished = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = finished.isoformat()
            operation["finishedAt"] = finished.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((finished - started).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)
