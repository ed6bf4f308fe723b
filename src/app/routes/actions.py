from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from src.app.auth import require_user
from src.app.db import db_session
from src.app.schemas import BrokerAction
from src.app.utils import connection_dict, import_job_dict, jsonable
from src.core.config import load_settings
from src.core.connections import (
    RegistryError,
    connect_bridge,
    connect_metaapi,
    connection_status,
    disconnect,
    get_user_connection,
    list_connections,
)
from src.core.import_jobs import (
    ContinueResult,
    ImportJobError,
    cancel_import_job,
    continue_import_job,
    create_import_job,
    get_import_job,
    quick_import,
)
from src.core.quota import count_account_trades, count_user_trades
from src.importers.adapters import ProviderAuthError, ProviderError, RateLimitPauseError
from src.utils.time import iso_utc


log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/broker", tags=["api"])


def ok(data: dict[str, Any]) -> JSONResponse:
    return JSONResponse(content={"ok": True, "data": jsonable(data)})


def fail(status: int, error: str, code: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": error, "code": code, **jsonable(extra)})


def _metaapi_client() -> Any:
    from src.adapters.metaapi.adapter import client_from_settings

    return client_from_settings()


def _sync_url(request: Request) -> str:
    configured = load_settings().sync_public_url
    if configured:
        return configured
    return str(request.base_url).rstrip("/") + "/mt/sync"


def _with_trade_count(session: Session, user_id: str, conn: Any) -> dict[str, Any]:
    out = connection_dict(conn)
    out["trade_count"] = count_account_trades(session, user_id, conn.broker, conn.account_login)
    return out


def _continue_payload(result: ContinueResult) -> dict[str, Any]:
    job = import_job_dict(result.job)
    if result.status == "rate_limited":
        return {"status": "rate_limited", "retryAt": iso_utc(result.retry_at), "message": result.message, "job": job}
    out: dict[str, Any] = {"status": "ok", "job": job}
    if result.chunk is not None:
        out["chunk"] = result.chunk
    return out


def _handle_connect(session: Session, user_id: str, body: BrokerAction, request: Request) -> JSONResponse:
    if body.is_metaapi_connect:
        result = connect_metaapi(
            session,
            user_id=user_id,
            platform=body.platform,
            environment=body.environment or body.account_type,
            server=body.server,
            login=body.login or body.account_login,
            password=body.password,
            cloud_type=body.cloud_type,
            client=_metaapi_client(),
        )
        return ok({"connection": connection_dict(result.connection), "reused": result.reused})

    bridge = connect_bridge(
        session,
        user_id=user_id,
        broker=body.broker or body.platform,
        account_login=body.account_login or body.login,
        sync_url=_sync_url(request),
    )
    return ok(
        {
            "connection": connection_dict(bridge.connection),
            "syncKey": bridge.sync_key,
            "syncUrl": bridge.sync_url,
            "connectedAt": iso_utc(bridge.connected_at),
        }
    )


def _handle_status(session: Session, user_id: str, body: BrokerAction) -> JSONResponse:
    if body.connection_id:
        conn = get_user_connection(session, user_id=user_id, connection_id=body.connection_id)
        return ok(
            {
                "connection_status": conn.status,
                "last_import_at": conn.last_import_at,
                "trades_imported_total_for_connection": count_account_trades(
                    session, user_id, conn.broker, conn.account_login
                ),
                "trades_total_for_user": count_user_trades(session, user_id),
            }
        )
    current = connection_status(session, user_id=user_id)
    return ok(
        {
            "connections": [_with_trade_count(session, user_id, c) for c in list_connections(session, user_id=user_id)],
            "connected": current is not None,
            "record": connection_dict(current) if current is not None else None,
        }
    )


def _dispatch(session: Session, user_id: str, body: BrokerAction, request: Request) -> JSONResponse:
    action = (body.action or "").strip().lower()
    if not action:
        return fail(400, "Missing action.", "bad_request")

    if action == "connect":
        return _handle_connect(session, user_id, body, request)
    if action == "disconnect":
        count = disconnect(session, user_id=user_id)
        return ok({"disconnected": True, "count": count})
    if action == "status":
        return _handle_status(session, user_id, body)
    if action == "import":
        if not body.connection_id:
            return fail(400, "Missing connectionId.", "bad_request")
        job = create_import_job(
            session, user_id=user_id, connection_id=body.connection_id, start=body.start, end=body.end
        )
        return ok({"job": import_job_dict(job)})
    if action == "quick_import":
        if not body.connection_id:
            return fail(400, "Missing connectionId.", "bad_request")
        job, rng = quick_import(session, user_id=user_id, connection_id=body.connection_id, days=body.days)
        return ok({"job": import_job_dict(job), "range": rng})
    if action == "import_continue":
        result = continue_import_job(session, user_id=user_id, job_id=body.job_id)
        return ok(_continue_payload(result))
    if action == "import_job":
        job = get_import_job(session, user_id=user_id, job_id=body.job_id)
        return ok({"job": import_job_dict(job)})
    if action == "import_cancel":
        job = cancel_import_job(session, user_id=user_id, job_id=body.job_id)
        return ok({"job": import_job_dict(job)})

    return fail(400, f"Unknown action: {action}", "bad_request")


@router.post("/action")
def broker_action(
    body: BrokerAction,
    request: Request,
    session: Session = Depends(db_session),
    user_id: str = Depends(require_user),
):
    """Action-style API for broker connections and pull imports."""
    try:
        return _dispatch(session, user_id, body, request)
    except (RegistryError, ImportJobError) as e:
        session.rollback()
        return fail(e.status_code, str(e), e.code)
    except RateLimitPauseError as e:
        session.rollback()
        return fail(429, str(e), "rate_limited", retryAt=iso_utc(e.retry_at))
    except ProviderAuthError as e:
        session.rollback()
        log.warning("Broker API rejected our credentials: %s", e)
        return fail(502, "Broker API authorization failed.", "server_error")
    except ProviderError as e:
        session.rollback()
        log.warning("Broker API error: %s", e)
        return fail(502, str(e), "server_error")
