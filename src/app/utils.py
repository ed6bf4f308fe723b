from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any


def jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")
        return value.isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return str(value)


def connection_dict(conn: Any) -> dict[str, Any]:
    """Public view of a BrokerConnection; never includes credential material."""
    return jsonable(
        {
            "id": conn.id,
            "broker": conn.broker,
            "account_login": conn.account_login,
            "is_active": bool(conn.is_active),
            "status": conn.status,
            "platform": conn.platform,
            "environment": conn.environment,
            "server": conn.server,
            "metaapi_account_id": conn.metaapi_account_id,
            "last_sync_at": conn.last_sync_at,
            "last_import_at": conn.last_import_at,
            "created_at": conn.created_at,
            "updated_at": conn.updated_at,
        }
    )


def import_job_dict(job: Any) -> dict[str, Any]:
    return jsonable(
        {
            "id": job.id,
            "connection_id": job.connection_id,
            "status": job.status,
            "progress": int(job.progress or 0),
            "total": int(job.total or 0),
            "message": dict(job.message or {}),
            "created_at": job.created_at,
            "updated_at": job.updated_at,
        }
    )
