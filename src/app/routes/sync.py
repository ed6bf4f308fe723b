from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from src.app.db import db_session
from src.core.sync_ingest import SyncError, handle_sync_request


log = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])

SYNC_KEY_HEADERS = ("X-TJ-Sync-Key", "X-EA-Key")


def sync_key_from_request(request: Request) -> Optional[str]:
    for name in SYNC_KEY_HEADERS:
        v = (request.headers.get(name) or "").strip()
        if v:
            return v
    v = (request.query_params.get("key") or "").strip()
    return v or None


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


async def _mt_sync(request: Request, session: Session) -> JSONResponse:
    key = sync_key_from_request(request)
    payload = await _read_json(request)
    try:
        outcome = await run_in_threadpool(handle_sync_request, session, sync_key=key, payload=payload)
    except SyncError as e:
        if e.status >= 500:
            log.error("MT sync failed: %s", e.message)
        return JSONResponse(status_code=e.status, content=e.to_dict())
    return JSONResponse(content={"ok": True, "data": outcome.to_dict()})


@router.post("/mt/sync")
async def mt_sync(request: Request, session: Session = Depends(db_session)):
    """EA push endpoint: closed trades from MT4/MT5 terminals."""
    return await _mt_sync(request, session)


@router.post("/mt-bridge/sync")
async def mt_bridge_sync(request: Request, session: Session = Depends(db_session)):
    return await _mt_sync(request, session)
