import json
import tempfile
import unittest
from datetime import datetime, timezone

from agentlog.db.connection import open_connection, transaction
from agentlog.db.repositories import (
    SqliteCommitRepository,
    SqliteMessageRepository,
    SqliteProjectRepository,
    SqliteSessionRepository,
)
from agentlog.db.sqlite_migrations import run_migrations
from agentlog.models import ParsedCommit, SessionIndexEntry, SessionWindow
from agentlog.parsers.commits import (
    COMMIT_COMMAND,
    FIELD_SEP,
    RECORD_SEP,
    CommitImporter,
    GitCommandError,
    is_agent_authored,
    match_sessions,
    parse_metadata,
    parse_remote_to_web_url,
    parse_shortstat,
)

T0 = "2026-01-01T10:00:00.000Z"
T1 = "2026-01-01T11:00:00.000Z"

BEFORE = ParsedCommit(hash="a" * 40, shortHash="aaaaaaa", subject="before", timestamp="2026-01-01T09:59:59+00:00")
DURING = ParsedCommit(hash="b" * 40, shortHash="bbbbbbb", subject="during", timestamp="2026-01-01T12:00:10+02:00")
AFTER = ParsedCommit(hash="c" * 40, shortHash="ccccccc", subject="after", timestamp="2026-01-01T11:00:01+00:00")


class _FakeGit:
    def __init__(self, commits=None, error=None, remote=None, working_copy=True) -> None:
        self.commits = commits or []
        self.error = error
        self.remote = remote
        self.working_copy = working_copy
        self.list_calls: list[dict] = []

    async def is_working_copy(self, project_path):
        return self.working_copy

    async def list_commits(self, project_path, since=None, after=None):
        self.list_calls.append({"path": project_path, "since": since, "after": after})
        if self.error is not None:
            raise self.error
        return list(self.commits)

    async def remote_url(self, project_path):
        return self.remote


class CommitParsingTests(unittest.TestCase):
    def test_parse_metadata_keeps_order_and_detects_agent_trailer(self) -> None:
        h1, h2 = "1" * 40, "2" * 40
        output = (
            FIELD_SEP.join([h1, h1[:7], "Ann", "ann@example.com", "2026-01-01T10:00:10+00:00", "Add parser",
                            "Body line\n\nCo-Authored-By: Claude <noreply@anthropic.com>\n"])
            + RECORD_SEP + "\n"
            + FIELD_SEP.join([h2, h2[:7], "Bob", "bob@example.com", "2026-01-01T09:00:00+00:00", "Fix typo", ""])
            + RECORD_SEP + "\n"
        )

        commits = parse_metadata(output)

        self.assertEqual([c.hash for c in commits], [h1, h2])
        self.assertEqual(commits[0].subject, "Add parser")
        self.assertTrue(commits[0].body.startswith("Body line"))
        self.assertTrue(commits[0].isAgentAuthored)
        self.assertFalse(commits[1].isAgentAuthored)

    def test_parse_shortstat(self) -> None:
        h1, h2 = "1" * 40, "2" * 40
        output = (
            f"{h1}\n\n 3 files changed, 10 insertions(+), 2 deletions(-)\n"
            f"{h2}\n\n 1 file changed, 1 deletion(-)\n"
        )

        self.assertEqual(parse_shortstat(output), {h1: (3, 10, 2), h2: (1, 0, 1)})

    def test_is_agent_authored_needs_a_co_author_trailer(self) -> None:
        self.assertTrue(is_agent_authored("x", "Co-authored-by: Claude <noreply@anthropic.com>"))
        self.assertFalse(is_agent_authored("Ask claude about it", ""))
        self.assertFalse(is_agent_authored("x", "Co-authored-by: Jane <jane@example.com>"))

    def test_parse_remote_to_web_url(self) -> None:
        self.assertEqual(parse_remote_to_web_url("git@github.com:acme/demo.git"), "https://github.com/acme/demo")
        self.assertEqual(parse_remote_to_web_url("https://github.com/acme/demo.git"), "https://github.com/acme/demo")
        self.assertEqual(
            parse_remote_to_web_url("ssh://git@gitlab.com:2222/acme/demo.git"),
            "https://gitlab.com/acme/demo",
        )
        self.assertIsNone(parse_remote_to_web_url("not a remote"))

    def test_commit_command_pattern(self) -> None:
        self.assertTrue(COMMIT_COMMAND.search("git add -A && git commit -m 'wip'"))
        self.assertTrue(COMMIT_COMMAND.search("git -C /work/demo commit --amend"))
        self.assertFalse(COMMIT_COMMAND.search("git log --grep commit"))
        self.assertFalse(COMMIT_COMMAND.search("echo committed"))

    def test_match_sessions_compares_datetimes_not_strings(self) -> None:
        windows = [
            SessionWindow(id="direct", createdAt=T0, modifiedAt=T1, hasCommitCommand=True),
            # Same instant range written with a +02:00 offset
            SessionWindow(id="offset", createdAt="2026-01-01T12:00:00+02:00", modifiedAt="2026-01-01T13:00:00+02:00"),
            SessionWindow(id="empty", createdAt="", modifiedAt=T1),
        ]
        commit_time = datetime(2026, 1, 1, 10, 30, tzinfo=timezone.utc)

        self.assertEqual(match_sessions(commit_time, windows), [("direct", "direct"), ("offset", "inferred")])


class CommitImporterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        self.tmp = tempfile.TemporaryDirectory()
        self.project_path = self.tmp.name
        self.projects = SqliteProjectRepository(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.commits = SqliteCommitRepository(self.db)
        async with transaction(self.db):
            self.project_id = await self.projects.upsert(self.project_path, "demo")

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self.tmp.cleanup()

    async def _add_session(self, session_id: str, created: str = T0, modified: str = T1) -> None:
        async with transaction(self.db):
            await self.sessions.upsert_from_index(
                SessionIndexEntry(sessionId=session_id, created=created, modified=modified),
                self.project_id,
            )

    async def _add_bash(self, session_id: str, command: str) -> None:
        messages = SqliteMessageRepository(self.db)
        async with transaction(self.db):
            message_id = await messages.insert(
                {"session_id": session_id, "uuid": f"{session_id}-msg", "type": "assistant", "role": "assistant"}
            )
            await messages.insert_tool_use(
                {
                    "message_id": message_id,
                    "session_id": session_id,
                    "tool_name": "Bash",
                    "tool_use_id": f"{session_id}-tool",
                    "input_json": json.dumps({"command": command}),
                }
            )

    async def test_only_commit_inside_window_is_linked(self) -> None:
        await self._add_session("S1")
        git = _FakeGit(commits=[AFTER, DURING, BEFORE])

        seen = await CommitImporter(self.db, git).scan_project(self.project_id, self.project_path)

        self.assertEqual(seen, 3)
        self.assertEqual(len(await self.commits.list_for_project(self.project_id)), 3)
        links = await self.commits.list_links("S1")
        self.assertEqual([(link["hash"], link["match_type"]) for link in links], [(DURING.hash, "inferred")])
        project = await self.projects.get_by_id(self.project_id)
        self.assertEqual(project["last_indexed_commit"], AFTER.hash)
        self.assertEqual(git.list_calls[0]["after"], "2026-01-01T10:00:00Z")
        self.assertIsNone(git.list_calls[0]["since"])

    async def test_direct_and_inferred_links(self) -> None:
        await self._add_session("S-commit")
        await self._add_session("S-watch")
        await self._add_bash("S-commit", "git add -A && git commit -m 'ship it'")
        await self._add_bash("S-watch", "git status")

        await CommitImporter(self.db, _FakeGit(commits=[DURING])).scan_project(self.project_id, self.project_path)

        match_types = {link["session_id"]: link["match_type"] for link in await self.commits.list_links()}
        self.assertEqual(match_types, {"S-commit": "direct", "S-watch": "inferred"})

    async def test_git_failure_keeps_resume_point(self) -> None:
        await self._add_session("S1")
        async with transaction(self.db):
            await self.projects.set_last_indexed_commit(self.project_id, BEFORE.hash)
        git = _FakeGit(error=GitCommandError("git log exited 128: bad revision"))

        seen = await CommitImporter(self.db, git).scan_project(self.project_id, self.project_path)

        self.assertEqual(seen, 0)
        self.assertEqual(git.list_calls[0]["since"], BEFORE.hash)
        project = await self.projects.get_by_id(self.project_id)
        self.assertEqual(project["last_indexed_commit"], BEFORE.hash)
        self.assertEqual(await self.commits.list_for_project(self.project_id), [])

    async def test_rescan_is_idempotent(self) -> None:
        await self._add_session("S1")
        importer = CommitImporter(self.db, _FakeGit(commits=[DURING]))

        await importer.scan_project(self.project_id, self.project_path)
        await importer.scan_project(self.project_id, self.project_path)

        self.assertEqual(len(await self.commits.list_for_project(self.project_id)), 1)
        self.assertEqual(len(await self.commits.list_links("S1")), 1)

    async def test_project_without_sessions_is_not_scanned(self) -> None:
        git = _FakeGit(commits=[DURING])

        seen = await CommitImporter(self.db, git).scan_project(self.project_id, self.project_path)

        self.assertEqual(seen, 0)
        self.assertEqual(git.list_calls, [])

    async def test_non_repository_is_skipped(self) -> None:
        await self._add_session("S1")
        git = _FakeGit(commits=[DURING], working_copy=False)

        seen = await CommitImporter(self.db, git).scan_project(self.project_id, self.project_path)

        self.assertEqual(seen, 0)
        self.assertEqual(git.list_calls, [])

    async def test_remote_url_is_stored_as_web_url(self) -> None:
        await self._add_session("S1")
        git = _FakeGit(commits=[DURING], remote="git@github.com:acme/demo.git")

        await CommitImporter(self.db, git).scan_project(self.project_id, self.project_path)

        project = await self.projects.get_by_id(self.project_id)
        self.assertEqual(project["remote_url"], "https://github.com/acme/demo")

    async def test_scan_all_projects_counts(self) -> None:
        await self._add_session("S1")

        stats = await CommitImporter(self.db, _FakeGit(commits=[DURING, BEFORE])).scan_all_projects()

        self.assertEqual(stats, {"projects": 1, "commits": 2, "failed": 0})


if __name__ == "__main__":
    unittest.main()
