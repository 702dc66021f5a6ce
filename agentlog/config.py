"""agentlog ingestion configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Root of the agent tool's log directory
AGENT_ROOT = Path(os.getenv("AGENTLOG_ROOT", str(Path.home() / ".claude"))).expanduser()

# Database
DB_PATH = Path(
    os.getenv("AGENTLOG_DB_PATH", str(Path.home() / ".cache" / "agentlog" / "agentlog.db"))
).expanduser()

# Watcher
WATCHER_ENABLED = _env_bool("AGENTLOG_WATCHER_ENABLED", True)
WATCH_DEBOUNCE_MS = _env_int("AGENTLOG_WATCH_DEBOUNCE_MS", 200)

# Version control
GIT_TIMEOUT_SECONDS = _env_int("AGENTLOG_GIT_TIMEOUT_SECONDS", 30)

# Startup indexing tuning
STARTUP_MAX_JSONL_BYTES = _env_int("AGENTLOG_STARTUP_MAX_JSONL_BYTES", 2 * 1024 * 1024)
BACKGROUND_INDEX_DELAY_SECONDS = _env_int("AGENTLOG_BACKGROUND_INDEX_DELAY_SECONDS", 0)

# Observability
OTEL_ENABLED = _env_bool("AGENTLOG_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTLOG_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTLOG_OTEL_SERVICE_NAME", "agentlog-ingest")
PROM_PORT = _env_int("AGENTLOG_PROM_PORT", 0)

# Server settings
HOST = os.getenv("AGENTLOG_HOST", "127.0.0.1")
PORT = _env_int("AGENTLOG_PORT", 3456)
