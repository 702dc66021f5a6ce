"""Repository package for database access."""

from .index_state import SqliteIndexStateRepository
from .projects import SqliteProjectRepository
from .sessions import SqliteSessionRepository
from .messages import SqliteMessageRepository
from .commits import SqliteCommitRepository
from .snapshots import (
    SqliteFileHistoryRepository,
    SqliteHistoryRepository,
    SqlitePlanRepository,
    SqliteStatsRepository,
    SqliteTodoRepository,
)

__all__ = [
    "SqliteIndexStateRepository",
    "SqliteProjectRepository",
    "SqliteSessionRepository",
    "SqliteMessageRepository",
    "SqliteCommitRepository",
    "SqliteHistoryRepository",
    "SqliteStatsRepository",
    "SqlitePlanRepository",
    "SqliteTodoRepository",
    "SqliteFileHistoryRepository",
]
