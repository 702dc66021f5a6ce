"""Byte-offset tracked parsing of append-only JSONL files.

Every append-only source (session transcripts, the command history) goes
through :func:`apply_new_records`. The unread suffix of the file is split into
complete newline-terminated records, each record is handed to a
:class:`RecordApplier`, and the ledger is advanced past the consumed bytes in
the same transaction as the rows those bytes produced. A crash between the two
is impossible, so every byte range is applied exactly once.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from agentlog.db.connection import transaction
from agentlog.db.repositories import SqliteIndexStateRepository, SqliteSessionRepository
from agentlog.models import IngestResult
from agentlog.observability import record_ingestion, record_parser_failure, start_span

logger = logging.getLogger("agentlog.ingest")


class OffsetLedger(Protocol):
    async def indexed_bytes(self) -> int: ...

    async def advance(self, indexed_bytes: int, mtime: float) -> None: ...


class RecordApplier(Protocol):
    """Turns decoded JSON objects into store mutations for one batch.

    ``parse`` is pure: it returns a typed record, ``None`` for records that are
    valid but irrelevant, or raises ``ValueError`` for malformed ones.
    ``apply`` and ``finish`` write through the open transaction.
    """

    name: str

    def parse(self, raw: dict[str, Any]) -> Any: ...

    async def apply(self, record: Any, byte_offset: int) -> None: ...

    async def finish(self) -> None: ...


class FileLedger:
    """Ledger row in ``index_state`` keyed by file path."""

    def __init__(self, db: aiosqlite.Connection, file_path: str):
        self.repo = SqliteIndexStateRepository(db)
        self.file_path = file_path

    async def indexed_bytes(self) -> int:
        return await self.repo.get_indexed_bytes(self.file_path)

    async def advance(self, indexed_bytes: int, mtime: float) -> None:
        await self.repo.advance(self.file_path, indexed_bytes, mtime)


class SessionLedger:
    """Ledger stored on the session row itself (``sessions.indexed_bytes``)."""

    def __init__(self, db: aiosqlite.Connection, session_id: str):
        self.repo = SqliteSessionRepository(db)
        self.session_id = session_id

    async def indexed_bytes(self) -> int:
        return await self.repo.get_indexed_bytes(self.session_id)

    async def advance(self, indexed_bytes: int, mtime: float) -> None:
        await self.repo.advance_indexed_bytes(self.session_id, indexed_bytes)


class SkipAndContinue:
    """Malformed-record policy: count it, keep going, report once per batch."""

    def __init__(self) -> None:
        self.skipped = 0
        self.first_offset: int | None = None
        self.first_reason = ""

    def record(self, byte_offset: int, reason: str) -> None:
        self.skipped += 1
        if self.first_offset is None:
            self.first_offset = byte_offset
            self.first_reason = reason

    def report(self, parser: str, path: str) -> None:
        if not self.skipped:
            return
        logger.warning(
            "Skipped %d malformed %s record(s) in %s (first at byte %s: %s)",
            self.skipped,
            parser,
            path,
            self.first_offset,
            self.first_reason,
        )
        record_parser_failure(parser, self.skipped)


def split_complete_lines(data: bytes, start: int) -> tuple[list[tuple[int, bytes]], int]:
    """Split ``data`` (read from absolute offset ``start``) into complete lines.

    Returns ``(offset, line)`` pairs and the number of bytes consumed. A
    trailing fragment without a newline is not consumed.
    """
    end = data.rfind(b"\n")
    if end < 0:
        return [], 0
    consumed = data[: end + 1]
    lines: list[tuple[int, bytes]] = []
    offset = start
    for line in consumed.split(b"\n")[:-1]:
        lines.append((offset, line))
        offset += len(line) + 1
    return lines, len(consumed)


def _read_range(path: Path, start: int, end: int) -> bytes:
    with path.open("rb") as handle:
        handle.seek(start)
        return handle.read(max(0, end - start))


def scrub_surrogates(value: Any) -> Any:
    """Replace lone UTF-16 surrogates (``"\\ud83d"`` escapes) in decoded JSON.

    They are valid JSON but cannot be encoded to UTF-8, so SQLite rejects them.
    """
    if isinstance(value, str):
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            return value.encode("utf-8", "surrogatepass").decode("utf-8", "replace")
        return value
    if isinstance(value, dict):
        return {scrub_surrogates(key): scrub_surrogates(item) for key, item in value.items()}
    if isinstance(value, list):
        return [scrub_surrogates(item) for item in value]
    return value


def _decode(line: bytes) -> dict[str, Any]:
    raw = json.loads(line.decode("utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
    return scrub_surrogates(raw)


async def _apply_one(db: aiosqlite.Connection, applier: RecordApplier, record: Any, offset: int) -> str | None:
    """Apply one record inside a savepoint. Returns a skip reason, or None if applied.

    Data the store rejects for this record alone is rolled back to the savepoint;
    anything else propagates and aborts the batch.
    """
    await db.execute("SAVEPOINT apply_record")
    try:
        await applier.apply(record, offset)
    except (UnicodeEncodeError, aiosqlite.IntegrityError) as exc:
        await db.execute("ROLLBACK TO SAVEPOINT apply_record")
        await db.execute("RELEASE SAVEPOINT apply_record")
        return f"{type(exc).__name__}: {exc}"
    await db.execute("RELEASE SAVEPOINT apply_record")
    return None


async def apply_new_records(
    db: aiosqlite.Connection,
    path: Path | str,
    applier: RecordApplier,
    ledger: OffsetLedger,
) -> IngestResult:
    """Apply every complete record past the ledger offset, then advance it."""
    path = Path(path)
    file_path = str(path)
    try:
        stat = path.stat()
    except FileNotFoundError:
        return IngestResult(path=file_path)
    except OSError as exc:
        logger.debug("Cannot stat %s: %s", file_path, exc)
        return IngestResult(path=file_path)

    t0 = time.monotonic()
    with start_span("ingest.apply_new_records", {"parser": applier.name, "path": file_path}):
        try:
            async with transaction(db):
                start = await ledger.indexed_bytes()
                if start >= stat.st_size:
                    return IngestResult(path=file_path, startOffset=start, endOffset=start)

                try:
                    data = await asyncio.to_thread(_read_range, path, start, stat.st_size)
                except OSError as exc:
                    logger.debug("Read of %s failed at byte %d: %s", file_path, start, exc)
                    return IngestResult(path=file_path, startOffset=start, endOffset=start)

                lines, consumed = split_complete_lines(data, start)
                if not consumed:
                    return IngestResult(path=file_path, startOffset=start, endOffset=start)

                skips = SkipAndContinue()
                parsed: list[tuple[int, Any]] = []
                for offset, line in lines:
                    if not line.strip():
                        continue
                    try:
                        record = applier.parse(_decode(line))
                    except ValueError as exc:
                        # json.JSONDecodeError, UnicodeDecodeError and pydantic's
                        # ValidationError are all ValueErrors
                        skips.record(offset, str(exc).splitlines()[0] if str(exc) else type(exc).__name__)
                        continue
                    if record is not None:
                        parsed.append((offset, record))

                applied = 0
                for offset, record in parsed:
                    reason = await _apply_one(db, applier, record, offset)
                    if reason is None:
                        applied += 1
                    else:
                        skips.record(offset, reason)
                await applier.finish()
                await ledger.advance(start + consumed, stat.st_mtime)
        except Exception:
            record_ingestion(applier.name, "error", (time.monotonic() - t0) * 1000)
            raise

    skips.report(applier.name, file_path)
    record_ingestion(applier.name, "applied", (time.monotonic() - t0) * 1000)
    return IngestResult(
        path=file_path,
        applied=applied,
        skipped=skips.skipped,
        startOffset=start,
        endOffset=start + consumed,
    )
