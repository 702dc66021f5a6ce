"""Database schema creation and versioning.

All CREATE TABLE statements for the ingestion store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("agentlog.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Offset ledger (incremental append-only files) ───────────────
CREATE TABLE IF NOT EXISTS index_state (
    file_path     TEXT PRIMARY KEY,
    indexed_bytes INTEGER NOT NULL DEFAULT 0,
    mtime         REAL DEFAULT 0
);

-- ── 2. Projects ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    path                TEXT UNIQUE NOT NULL,
    display_name        TEXT NOT NULL,
    session_count       INTEGER DEFAULT 0,
    message_count       INTEGER DEFAULT 0,
    last_indexed_commit TEXT,
    remote_url          TEXT,
    logo_path           TEXT,
    created_at          TEXT,
    updated_at          TEXT
);

-- ── 3. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id            TEXT PRIMARY KEY,
    project_id    INTEGER REFERENCES projects(id),
    jsonl_path    TEXT,
    summary       TEXT,
    first_prompt  TEXT,
    message_count INTEGER DEFAULT 0,
    created_at    TEXT,
    modified_at   TEXT,
    git_branch    TEXT,
    is_sidechain  INTEGER DEFAULT 0,
    slug          TEXT,
    indexed_bytes INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);

-- Transcript messages (append-only)
CREATE TABLE IF NOT EXISTS messages (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id            TEXT NOT NULL REFERENCES sessions(id),
    uuid                  TEXT,
    parent_uuid           TEXT,
    type                  TEXT NOT NULL,
    role                  TEXT,
    model                 TEXT,
    content_text          TEXT,
    content_json          TEXT,
    input_tokens          INTEGER DEFAULT 0,
    output_tokens         INTEGER DEFAULT 0,
    cache_read_tokens     INTEGER DEFAULT 0,
    cache_creation_tokens INTEGER DEFAULT 0,
    timestamp             TEXT,
    byte_offset           INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_messages_type    ON messages(type);
CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_identity
    ON messages(session_id, uuid) WHERE uuid IS NOT NULL;

-- Tool invocations found inside assistant messages
CREATE TABLE IF NOT EXISTS tool_uses (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id  INTEGER NOT NULL REFERENCES messages(id),
    session_id  TEXT NOT NULL REFERENCES sessions(id),
    tool_name   TEXT NOT NULL,
    tool_use_id TEXT,
    input_json  TEXT,
    timestamp   TEXT
);

CREATE INDEX IF NOT EXISTS idx_tool_uses_session ON tool_uses(session_id);
CREATE INDEX IF NOT EXISTS idx_tool_uses_name    ON tool_uses(tool_name);
CREATE UNIQUE INDEX IF NOT EXISTS idx_tool_uses_identity
    ON tool_uses(session_id, tool_use_id) WHERE tool_use_id IS NOT NULL;

-- ── 4. Command history ─────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS history_entries (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    display     TEXT,
    timestamp   INTEGER,
    project     TEXT,
    session_id  TEXT,
    byte_offset INTEGER NOT NULL UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history_entries(timestamp);

-- ── 5. Snapshots ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS stats_cache (
    key   TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS daily_stats (
    date            TEXT PRIMARY KEY,
    message_count   INTEGER DEFAULT 0,
    session_count   INTEGER DEFAULT 0,
    tool_call_count INTEGER DEFAULT 0,
    tokens_by_model TEXT
);

CREATE TABLE IF NOT EXISTS plans (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    filename TEXT UNIQUE NOT NULL,
    content  TEXT,
    mtime    INTEGER
);

CREATE TABLE IF NOT EXISTS todos (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_file TEXT NOT NULL,
    session_id  TEXT,
    agent_id    TEXT,
    content     TEXT,
    status      TEXT,
    active_form TEXT
);

CREATE INDEX IF NOT EXISTS idx_todos_source ON todos(source_file);
CREATE INDEX IF NOT EXISTS idx_todos_status ON todos(status);

CREATE TABLE IF NOT EXISTS file_history (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      TEXT NOT NULL,
    file_path       TEXT,
    backup_filename TEXT NOT NULL,
    version         INTEGER,
    UNIQUE(session_id, backup_filename)
);

-- ── 6. Version control ─────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS commits (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id           INTEGER NOT NULL REFERENCES projects(id),
    hash                 TEXT NOT NULL,
    short_hash           TEXT NOT NULL,
    subject              TEXT,
    body                 TEXT,
    author               TEXT,
    author_email         TEXT,
    timestamp            TEXT NOT NULL,
    files_changed        INTEGER DEFAULT 0,
    insertions           INTEGER DEFAULT 0,
    deletions            INTEGER DEFAULT 0,
    is_authored_by_agent INTEGER DEFAULT 0,
    UNIQUE(project_id, hash)
);

CREATE INDEX IF NOT EXISTS idx_commits_project   ON commits(project_id);
CREATE INDEX IF NOT EXISTS idx_commits_timestamp ON commits(timestamp);

CREATE TABLE IF NOT EXISTS session_commits (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(id),
    commit_id  INTEGER NOT NULL REFERENCES commits(id),
    match_type TEXT NOT NULL CHECK (match_type IN ('direct', 'inferred')),
    UNIQUE(session_id, commit_id)
);

CREATE INDEX IF NOT EXISTS idx_session_commits_session ON session_commits(session_id);
CREATE INDEX IF NOT EXISTS idx_session_commits_commit  ON session_commits(commit_id);
"""

_FULL_TEXT = """
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    content_text,
    content='messages',
    content_rowid='id'
);

CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
    summary,
    first_prompt,
    content='sessions',
    content_rowid='rowid'
);

CREATE VIRTUAL TABLE IF NOT EXISTS plans_fts USING fts5(
    filename,
    content,
    content='plans',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, content_text) VALUES (new.id, new.content_text);
END;

CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content_text) VALUES ('delete', old.id, old.content_text);
END;

CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
    INSERT INTO sessions_fts(rowid, summary, first_prompt) VALUES (new.rowid, new.summary, new.first_prompt);
END;

CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE OF summary, first_prompt ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, summary, first_prompt) VALUES ('delete', old.rowid, old.summary, old.first_prompt);
    INSERT INTO sessions_fts(rowid, summary, first_prompt) VALUES (new.rowid, new.summary, new.first_prompt);
END;

CREATE TRIGGER IF NOT EXISTS plans_ai AFTER INSERT ON plans BEGIN
    INSERT INTO plans_fts(rowid, filename, content) VALUES (new.id, new.filename, new.content);
END;

CREATE TRIGGER IF NOT EXISTS plans_au AFTER UPDATE ON plans BEGIN
    INSERT INTO plans_fts(plans_fts, rowid, filename, content) VALUES ('delete', old.id, old.filename, old.content);
    INSERT INTO plans_fts(rowid, filename, content) VALUES (new.id, new.filename, new.content);
END;
"""


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, ddl: str) -> None:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        columns = {row[1] for row in await cur.fetchall()}
    if column not in columns:
        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and full-text indexes. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Columns added after the first schema
    await _ensure_column(db, "projects", "last_indexed_commit", "TEXT")
    await _ensure_column(db, "projects", "remote_url", "TEXT")
    await _ensure_column(db, "projects", "logo_path", "TEXT")

    await db.executescript(_FULL_TEXT)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
