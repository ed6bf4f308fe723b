from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.app.utils import jsonable
from src.db.models import AuditLog
from src.utils.rate_limit import mask_secret
from src.utils.time import utcnow

# Snapshot keys whose values never reach the audit table in clear text.
SECRET_KEYS = frozenset({"sync_key", "secret_hash", "token", "access_token", "metaapi_token", "password"})


def _scrub(payload: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if payload is None:
        return None
    out: dict[str, Any] = {}
    for k, v in jsonable(payload).items():
        out[k] = mask_secret(str(v)) if k in SECRET_KEYS and v is not None else v
    return out


def log_change(
    session: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: Optional[str],
    old: Optional[dict[str, Any]] = None,
    new: Optional[dict[str, Any]] = None,
    note: Optional[str] = None,
) -> AuditLog:
    """
    Record a connection/job/import change for `actor` (a journal user id).

    Added to the session but not committed; the caller's commit decides whether it sticks.
    """
    row = AuditLog(
        at=utcnow(),
        actor=actor,
        action=action,
        entity=entity,
        entity_id=entity_id,
        old_json=_scrub(old),
        new_json=_scrub(new),
        note=note,
    )
    session.add(row)
    return row


def audit_trail(session: Session, *, entity: str, entity_id: str, limit: int = 50) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity == entity, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.id.desc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())
