"""Pydantic models for ingested records and pipeline results."""
from __future__ import annotations

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Transcript content segments ─────────────────────────────────────

class TextSegment(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingSegment(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class ToolUseSegment(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: Optional[str] = None
    name: str = ""
    input: Any = None


class ToolResultSegment(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: Optional[str] = None
    content: Any = None
    is_error: bool = False


class OtherSegment(BaseModel):
    """Any segment kind we do not model. Kept as-is for replay."""

    type: str = ""
    raw: Any = None


ContentSegment = Union[TextSegment, ThinkingSegment, ToolUseSegment, ToolResultSegment, OtherSegment]

_SEGMENT_TYPES: dict[str, type[BaseModel]] = {
    "text": TextSegment,
    "thinking": ThinkingSegment,
    "tool_use": ToolUseSegment,
    "tool_result": ToolResultSegment,
}


def parse_segment(raw: Any) -> ContentSegment:
    if not isinstance(raw, dict):
        return OtherSegment(type="", raw=raw)
    kind = raw.get("type")
    model = _SEGMENT_TYPES.get(kind) if isinstance(kind, str) else None
    if model is None:
        return OtherSegment(type=str(kind or ""), raw=raw)
    try:
        return model.model_validate(raw)
    except ValueError:
        return OtherSegment(type=str(kind), raw=raw)


def segment_text(segment: ContentSegment) -> str:
    """Searchable text for one segment; empty for segments with none."""
    if isinstance(segment, TextSegment):
        return segment.text
    if isinstance(segment, ThinkingSegment):
        return segment.thinking
    if isinstance(segment, ToolResultSegment):
        if segment.content is None or segment.content == "":
            return ""
        if isinstance(segment.content, str):
            return segment.content
        return json.dumps(segment.content)
    return ""


# ── Transcript records ──────────────────────────────────────────────

class TokenUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class TranscriptMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    model: Optional[str] = None
    content: Union[str, list[Any], None] = None
    usage: Optional[TokenUsage] = None

    @property
    def segments(self) -> list[ContentSegment]:
        if isinstance(self.content, list):
            return [parse_segment(item) for item in self.content]
        return []


class TranscriptRecord(BaseModel):
    """One line of a session transcript."""

    model_config = ConfigDict(extra="ignore")

    type: str
    uuid: Optional[str] = None
    parentUuid: Optional[str] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None
    slug: Optional[str] = None
    gitBranch: Optional[str] = None
    cwd: Optional[str] = None
    isSidechain: bool = False
    message: Optional[TranscriptMessage] = None
    summary: Optional[str] = None
    leafUuid: Optional[str] = None

    @field_validator("isSidechain", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return bool(value)


class HistoryRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    display: str = ""
    timestamp: int = 0
    project: str = ""
    sessionId: str = ""

    @field_validator("display", "project", "sessionId", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, float):
            return int(value)
        return value


# ── Snapshot files ──────────────────────────────────────────────────

class SessionIndexEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sessionId: str
    fullPath: str = ""
    summary: str = ""
    firstPrompt: str = ""
    messageCount: int = 0
    created: str = ""
    modified: str = ""
    gitBranch: str = ""
    isSidechain: bool = False

    @field_validator("fullPath", "summary", "firstPrompt", "created", "modified", "gitBranch", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("messageCount", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("isSidechain", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return bool(value)


class SessionIndex(BaseModel):
    model_config = ConfigDict(extra="ignore")

    originalPath: str = ""
    entries: list[SessionIndexEntry] = Field(default_factory=list)


class TodoItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str = ""
    status: str = "pending"
    activeForm: str = ""

    @field_validator("content", "activeForm", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("status", mode="before")
    @classmethod
    def _none_is_pending(cls, value: Any) -> Any:
        return "pending" if value is None else value


# ── Version control ─────────────────────────────────────────────────

class ParsedCommit(BaseModel):
    hash: str
    shortHash: str = ""
    subject: str = ""
    body: str = ""
    author: str = ""
    authorEmail: str = ""
    timestamp: str = ""
    filesChanged: int = 0
    insertions: int = 0
    deletions: int = 0
    isAgentAuthored: bool = False


class SessionWindow(BaseModel):
    id: str
    createdAt: str
    modifiedAt: str
    hasCommitCommand: bool = False


# ── Pipeline results ────────────────────────────────────────────────

class IngestResult(BaseModel):
    """Outcome of one incremental apply over a single file."""

    path: str
    applied: int = 0
    skipped: int = 0
    startOffset: int = 0
    endOffset: int = 0

    @property
    def advanced(self) -> bool:
        return self.endOffset > self.startOffset


class Route(BaseModel):
    kind: Literal["transcript", "session_index", "history", "stats", "plan", "todo", "file_history"]
    topic: str


class ChangeNotification(BaseModel):
    topic: str
    payload: dict = Field(default_factory=dict)
    timestamp: int = 0
