"""File watcher service using watchfiles.

Watches the agent root recursively, debounces bursts of writes per path and
feeds settled paths to the sync engine. The watcher is an explicit handle
owned by the application; it is never started implicitly.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, DefaultFilter, awatch

from agentlog import config
from agentlog.db.sync_engine import SyncEngine, is_denied
from agentlog.events import EventBroadcaster

logger = logging.getLogger("agentlog.watcher")


class AgentRootFilter(DefaultFilter):
    """DefaultFilter plus the sensitive-subtree deny-list. Deletions are dropped."""

    def __init__(self, root: Path):
        super().__init__()
        self.root = root

    def __call__(self, change: Change, path: str) -> bool:
        if change == Change.deleted:
            return False
        if is_denied(path, self.root):
            return False
        return super().__call__(change, path)


class FileWatcher:
    """Background watcher that routes settled file changes to the sync engine."""

    def __init__(
        self,
        sync_engine: SyncEngine,
        broadcaster: EventBroadcaster,
        debounce_ms: int | None = None,
    ):
        self.sync_engine = sync_engine
        self.broadcaster = broadcaster
        self.debounce_seconds = (config.WATCH_DEBOUNCE_MS if debounce_ms is None else debounce_ms) / 1000.0
        self.root: Optional[Path] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, root: Path | str | None = None) -> bool:
        """Start watching ``root`` (default: the sync engine's root)."""
        if self._running:
            logger.warning("File watcher already running")
            return True

        watch_root = Path(root).expanduser() if root else self.sync_engine.root
        if not watch_root.is_dir():
            logger.warning("Watch root %s does not exist, watcher not started", watch_root)
            return False

        self.root = watch_root
        self._stop_event = asyncio.Event()
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(watch_root, self._stop_event))
        self.broadcaster.publish("watcher-status", {"running": True})
        logger.info("File watcher started for %s", watch_root)
        return True

    async def stop(self) -> None:
        """Stop watching. Pending debounces are dropped, in-flight dispatches finish."""
        was_running = self._running or self._task is not None
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None

        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        self._running = False
        self._stop_event = None
        if was_running:
            self.broadcaster.publish("watcher-status", {"running": False})
            logger.info("File watcher stopped")

    async def _watch_loop(self, root: Path, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(
                root,
                watch_filter=AgentRootFilter(root),
                stop_event=stop_event,
                debounce=100,
                recursive=True,
            ):
                for _change, path in changes:
                    self.schedule(path)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
            raise
        except Exception:
            logger.exception("File watcher error")
        finally:
            self._running = False

    def schedule(self, path: str) -> None:
        """(Re)start the quiet-period timer for ``path``."""
        if self.root is not None and is_denied(path, self.root):
            return
        loop = asyncio.get_running_loop()
        existing = self._pending.pop(path, None)
        if existing is not None:
            existing.cancel()
        self._pending[path] = loop.call_later(self.debounce_seconds, self._fire, path)

    def _fire(self, path: str) -> None:
        self._pending.pop(path, None)
        task = asyncio.create_task(self._dispatch(path))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, path: str) -> None:
        try:
            topic = await self.sync_engine.handle_file_change(path)
        except Exception:
            logger.exception("Error handling change to %s", path)
            return
        if topic:
            self.broadcaster.publish(topic, {"path": path, "source": "watcher"})
