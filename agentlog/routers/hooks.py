"""Agent hook notification endpoint."""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from agentlog.db.sync_engine import HISTORY_FILENAME, STATS_FILENAME

logger = logging.getLogger("agentlog.hooks")

hooks_router = APIRouter(prefix="/api/hooks", tags=["hooks"])


class HookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transcript_path: Optional[str] = None
    session_id: Optional[str] = None
    hook_event_name: Optional[str] = None


async def _read_payload(request: Request) -> HookPayload:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return HookPayload()
    if not isinstance(body, dict):
        return HookPayload()
    try:
        return HookPayload.model_validate(body)
    except ValueError:
        return HookPayload()


@hooks_router.post("/notify")
async def notify(request: Request):
    """Route the paths a hook event touched. Never fails the calling hook."""
    sync_engine = getattr(request.app.state, "sync_engine", None)
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if sync_engine is None:
        return {"ok": True}

    payload = await _read_payload(request)
    paths: list[str] = []
    if payload.transcript_path:
        paths.append(payload.transcript_path)
    if payload.hook_event_name == "Stop":
        paths.append(str(sync_engine.root / HISTORY_FILENAME))
        paths.append(str(sync_engine.root / STATS_FILENAME))

    for path in paths:
        try:
            topic = await sync_engine.handle_file_change(path)
        except Exception:
            logger.exception("Hook notify failed for %s", path)
            continue
        if topic and broadcaster is not None:
            broadcaster.publish(topic, {"path": path, "source": "hook"})

    return {"ok": True}
