"""Observability helpers."""

from agentlog.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_parser_failure,
    record_commit_import,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_commit_import",
]
