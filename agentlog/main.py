"""agentlog FastAPI application: ingestion pipeline entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from agentlog import config
from agentlog.db import connection, sqlite_migrations, sync_engine
from agentlog.db.file_watcher import FileWatcher
from agentlog.events import EventBroadcaster
from agentlog.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agentlog.routers.hooks import hooks_router
from agentlog.routers.watcher import ingest_router, watcher_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentlog")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("agentlog starting up (root=%s)", config.AGENT_ROOT)
    initialize_observability(app)

    # 1. DB connection + schema
    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)

    # 2. Pipeline components
    broadcaster = EventBroadcaster()
    sync = sync_engine.SyncEngine(db, config.AGENT_ROOT)
    watcher = FileWatcher(sync, broadcaster)
    app.state.broadcaster = broadcaster
    app.state.sync_engine = sync
    app.state.file_watcher = watcher

    # 3. Metadata pass before serving
    try:
        await sync.run_quick_index(trigger="startup")
    except Exception:
        logger.exception("Quick index failed; continuing with existing data")

    # 4. Transcript content + commits in the background
    async def _run_background_index() -> None:
        delay = max(0, config.BACKGROUND_INDEX_DELAY_SECONDS)
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await sync.run_background_index(trigger="startup")
        except Exception:
            logger.exception("Background index failed")

    app.state.index_task = asyncio.create_task(_run_background_index())

    # 5. Watcher
    if config.WATCHER_ENABLED:
        await watcher.start()

    yield

    logger.info("agentlog shutting down")

    app.state.index_task.cancel()
    try:
        await app.state.index_task
    except asyncio.CancelledError:
        pass

    await watcher.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="agentlog",
    description="Incremental ingestion of agent session logs into SQLite",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(hooks_router)
app.include_router(watcher_router)
app.include_router(ingest_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    watcher = getattr(app.state, "file_watcher", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "watcher": "running" if watcher is not None and watcher.is_running else "stopped",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("agentlog.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
