"""Watcher toggle + ingestion status API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request

logger = logging.getLogger("agentlog.watcher")

watcher_router = APIRouter(prefix="/api/watcher", tags=["watcher"])
ingest_router = APIRouter(prefix="/api/ingest", tags=["ingest"])


def _get_file_watcher(request: Request):
    file_watcher = getattr(request.app.state, "file_watcher", None)
    if file_watcher is None:
        raise HTTPException(status_code=503, detail="File watcher not initialized")
    return file_watcher


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if sync_engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


@watcher_router.post("/start")
async def start_watcher(request: Request):
    file_watcher = _get_file_watcher(request)
    await file_watcher.start()
    return {"running": file_watcher.is_running}


@watcher_router.post("/stop")
async def stop_watcher(request: Request):
    file_watcher = _get_file_watcher(request)
    await file_watcher.stop()
    return {"running": file_watcher.is_running}


@watcher_router.get("/status")
async def watcher_status(request: Request):
    file_watcher = _get_file_watcher(request)
    return {"running": file_watcher.is_running}


@ingest_router.get("/status")
async def ingest_status(request: Request):
    """Watcher state plus live and recent index operations."""
    sync_engine = _get_sync_engine(request)
    file_watcher = getattr(request.app.state, "file_watcher", None)
    return {
        "status": "active",
        "root": str(sync_engine.root),
        "watcher": "running" if file_watcher is not None and file_watcher.is_running else "stopped",
        "operations": await sync_engine.get_observability_snapshot(),
    }


@ingest_router.get("/operations")
async def list_ingest_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@ingest_router.get("/operations/{operation_id}")
async def get_ingest_operation(request: Request, operation_id: str):
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@ingest_router.post("/sessions/{session_id}/refresh")
async def refresh_session(request: Request, session_id: str):
    """Parse any unread tail of one session transcript now."""
    sync_engine = _get_sync_engine(request)
    result = await sync_engine.ensure_session_fresh(session_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} has no transcript")
    return result.model_dump()
