"""Import version-control commits and attribute them to sessions.

Commits are read with two ``git log`` passes (metadata and shortstat) joined by
hash. Each new commit is linked to every session of the project whose
``[created_at, modified_at]`` window contains the commit time. A link is
``direct`` when the session itself ran a ``git commit`` through the Bash tool,
``inferred`` otherwise.
"""
from __future__ import annotations

import asyncio
import logging
import re
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from agentlog import config
from agentlog.date_utils import earliest, format_datetime_utc, parse_timestamp
from agentlog.db.connection import transaction
from agentlog.db.repositories import (
    SqliteCommitRepository,
    SqliteProjectRepository,
    SqliteSessionRepository,
)
from agentlog.models import ParsedCommit, SessionWindow
from agentlog.observability import record_commit_import, record_ingestion, start_span

logger = logging.getLogger("agentlog.git")

FIELD_SEP = "\x00"
RECORD_SEP = "\x01"
METADATA_FORMAT = "%H%x00%h%x00%an%x00%ae%x00%aI%x00%s%x00%b%x01"

_FULL_HASH = re.compile(r"^[0-9a-f]{40}$")
_FILES_CHANGED = re.compile(r"(\d+) files? changed")
_INSERTIONS = re.compile(r"(\d+) insertions?\(\+\)")
_DELETIONS = re.compile(r"(\d+) deletions?\(-\)")

# `git commit`, allowing global options such as `-C <dir>` before the subcommand
COMMIT_COMMAND = re.compile(
    r"\bgit(?:\s+(?:-[Cc]\s+\S+|--?[\w-]+(?:=\S+)?))*\s+commit\b"
)

_SSH_REMOTE = re.compile(r"^[\w-]+@([^:/]+):(.+?)(?:\.git)?/?$")
_SSH_PROTO_REMOTE = re.compile(r"^ssh://(?:[\w-]+@)?([^/:]+)(?::\d+)?/(.+?)(?:\.git)?/?$")
_HTTP_REMOTE = re.compile(r"^https?://(?:[^@/]+@)?([^/]+)/(.+?)(?:\.git)?/?$")


class GitCommandError(RuntimeError):
    """A git invocation failed, timed out, or git is not installed."""


# ── Pure parsing helpers ────────────────────────────────────────────


def is_agent_authored(subject: str, body: str) -> bool:
    text = f"{subject}\n{body}".lower()
    return "co-authored-by" in text and ("claude" in text or "noreply@anthropic.com" in text)


def parse_metadata(output: str) -> list[ParsedCommit]:
    """Parse metadata-pass output, preserving git's newest-first order."""
    commits: list[ParsedCommit] = []
    for record in output.split(RECORD_SEP):
        if not record.strip():
            continue
        fields = record.split(FIELD_SEP)
        if len(fields) < 6:
            continue
        commit_hash = fields[0].strip()
        if len(commit_hash) < 7:
            continue
        subject = fields[5]
        body = FIELD_SEP.join(fields[6:]).strip()
        commits.append(
            ParsedCommit(
                hash=commit_hash,
                shortHash=fields[1],
                author=fields[2],
                authorEmail=fields[3],
                timestamp=fields[4],
                subject=subject,
                body=body,
                isAgentAuthored=is_agent_authored(subject, body),
            )
        )
    return commits


def parse_shortstat(output: str) -> dict[str, tuple[int, int, int]]:
    """Map hash -> (files_changed, insertions, deletions)."""
    stats: dict[str, tuple[int, int, int]] = {}
    current = ""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if _FULL_HASH.match(line):
            current = line
            continue
        if current and "file" in line:
            files = _FILES_CHANGED.search(line)
            ins = _INSERTIONS.search(line)
            dels = _DELETIONS.search(line)
            stats[current] = (
                int(files.group(1)) if files else 0,
                int(ins.group(1)) if ins else 0,
                int(dels.group(1)) if dels else 0,
            )
            current = ""
    return stats


def join_stats(commits: list[ParsedCommit], stats: dict[str, tuple[int, int, int]]) -> list[ParsedCommit]:
    joined = []
    for commit in commits:
        files, ins, dels = stats.get(commit.hash, (0, 0, 0))
        joined.append(commit.model_copy(update={"filesChanged": files, "insertions": ins, "deletions": dels}))
    return joined


def parse_remote_to_web_url(remote_url: str) -> str | None:
    """``git@host:user/repo.git`` and friends -> ``https://host/user/repo``."""
    url = (remote_url or "").strip()
    for pattern in (_SSH_REMOTE, _SSH_PROTO_REMOTE, _HTTP_REMOTE):
        match = pattern.match(url)
        if match:
            return f"https://{match.group(1)}/{match.group(2)}"
    return None


def match_sessions(commit_time: datetime, windows: list[SessionWindow]) -> list[tuple[str, str]]:
    """(session_id, match_type) for every window containing ``commit_time``."""
    matches = []
    for window in windows:
        start = parse_timestamp(window.createdAt)
        end = parse_timestamp(window.modifiedAt)
        if start is None or end is None:
            continue
        if start <= commit_time <= end:
            matches.append((window.id, "direct" if window.hasCommitCommand else "inferred"))
    return matches


# ── Git access ──────────────────────────────────────────────────────


class GitCommitSource(Protocol):
    async def is_working_copy(self, project_path: str) -> bool: ...

    async def list_commits(
        self,
        project_path: str,
        since: str | None = None,
        after: str | None = None,
    ) -> list[ParsedCommit]: ...

    async def remote_url(self, project_path: str) -> str | None: ...


class GitCli:
    """``GitCommitSource`` backed by the git binary."""

    def __init__(self, timeout_seconds: int | None = None, binary: str = "git"):
        self.timeout_seconds = timeout_seconds or config.GIT_TIMEOUT_SECONDS
        self.binary = binary

    def _run_sync(self, project_path: str, args: list[str]) -> str:
        cmd = [self.binary, "-C", project_path, *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(f"git {args[0]} timed out after {self.timeout_seconds}s") from exc
        except OSError as exc:
            raise GitCommandError(f"git unavailable: {exc}") from exc
        if result.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args[:2])} exited {result.returncode}: {result.stderr.strip()[:200]}"
            )
        return result.stdout

    async def run(self, project_path: str, args: list[str]) -> str:
        return await asyncio.to_thread(self._run_sync, project_path, args)

    async def is_working_copy(self, project_path: str) -> bool:
        try:
            await self.run(project_path, ["rev-parse", "--git-dir"])
        except GitCommandError:
            return False
        return True

    async def list_commits(
        self,
        project_path: str,
        since: str | None = None,
        after: str | None = None,
    ) -> list[ParsedCommit]:
        selector: list[str] = []
        if since:
            selector.append(f"{since}..HEAD")
        elif after:
            selector.append(f"--after={after}")

        meta_output, stat_output = await asyncio.gather(
            self.run(project_path, ["log", f"--format={METADATA_FORMAT}", "--no-merges", *selector]),
            self.run(project_path, ["log", "--format=%H", "--shortstat", "--no-merges", *selector]),
        )
        return join_stats(parse_metadata(meta_output), parse_shortstat(stat_output))

    async def remote_url(self, project_path: str) -> str | None:
        try:
            output = await self.run(project_path, ["remote", "get-url", "origin"])
        except GitCommandError:
            return None
        return output.strip() or None


# ── Importer ────────────────────────────────────────────────────────


class CommitImporter:
    def __init__(self, db: aiosqlite.Connection, git: GitCommitSource | None = None):
        self.db = db
        self.git = git or GitCli()
        self.projects = SqliteProjectRepository(db)
        self.sessions = SqliteSessionRepository(db)
        self.commits = SqliteCommitRepository(db)

    async def load_windows(self, project_id: int) -> list[SessionWindow]:
        committing = {
            session_id
            for session_id, command in await self.sessions.list_bash_commands(project_id)
            if COMMIT_COMMAND.search(command)
        }
        windows = []
        for session in await self.sessions.list_for_project(project_id):
            if not session.get("created_at") or not session.get("modified_at"):
                continue
            windows.append(
                SessionWindow(
                    id=session["id"],
                    createdAt=session["created_at"],
                    modifiedAt=session["modified_at"],
                    hasCommitCommand=session["id"] in committing,
                )
            )
        return windows

    async def _resume_point(self, project: dict) -> tuple[str | None, str | None]:
        since = project.get("last_indexed_commit") or None
        if since:
            return since, None
        sessions = await self.sessions.list_for_project(project["id"])
        first = earliest([s.get("created_at") for s in sessions])
        return None, format_datetime_utc(first) if first else None

    async def scan_project(self, project_id: int, project_path: str) -> int:
        """Import new commits for one project. Returns the number of commits seen."""
        if not project_path or not Path(project_path).is_dir():
            return 0
        if not await self.git.is_working_copy(project_path):
            return 0
        project = await self.projects.get_by_id(project_id)
        if project is None:
            return 0

        await self._refresh_remote_url(project)

        since, after = await self._resume_point(project)
        if not since and not after:
            # No sessions yet: nothing to anchor the first scan to
            return 0

        t0 = time.monotonic()
        with start_span("git.scan_project", {"project": project_path}):
            try:
                commits = await self.git.list_commits(project_path, since=since, after=after)
            except GitCommandError as exc:
                logger.warning("Commit scan skipped for %s: %s", project_path, exc)
                record_ingestion("commits", "error", (time.monotonic() - t0) * 1000)
                return 0
            if not commits:
                return 0

            link_counts = {"direct": 0, "inferred": 0}
            async with transaction(self.db):
                windows = await self.load_windows(project_id)
                for commit in commits:
                    commit_id = await self.commits.insert_ignore(project_id, commit)
                    commit_time = parse_timestamp(commit.timestamp)
                    if commit_time is None:
                        continue
                    for session_id, match_type in match_sessions(commit_time, windows):
                        await self.commits.link(session_id, commit_id, match_type)
                        link_counts[match_type] += 1
                # git log lists newest first
                await self.projects.set_last_indexed_commit(project_id, commits[0].hash)

        record_commit_import(
            project.get("display_name") or project_path,
            imported=len(commits),
            direct=link_counts["direct"],
            inferred=link_counts["inferred"],
        )
        record_ingestion("commits", "applied", (time.monotonic() - t0) * 1000)
        logger.info("%s: indexed %d commits", project_path, len(commits))
        return len(commits)

    async def _refresh_remote_url(self, project: dict) -> None:
        if project.get("remote_url"):
            return
        remote = await self.git.remote_url(project["path"])
        web_url = parse_remote_to_web_url(remote) if remote else None
        if web_url:
            async with transaction(self.db):
                await self.projects.set_remote_url(project["id"], web_url)

    async def scan_all_projects(self) -> dict[str, int]:
        stats = {"projects": 0, "commits": 0, "failed": 0}
        for project in await self.projects.list_with_paths():
            try:
                stats["commits"] += await self.scan_project(project["id"], project["path"])
                stats["projects"] += 1
            except Exception:
                logger.exception("Error scanning commits for %s", project["path"])
                stats["failed"] += 1
        if stats["projects"]:
            logger.info("Scanned %d projects for commits", stats["projects"])
        return stats
