from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.config import Settings, load_settings
from src.core.connections import verify_sync_key
from src.core.identity import account_scope
from src.core.normalizer import NormalizedTrade, normalize_record
from src.core.projector import TradeRow, build_trade_row
from src.core.quota import check_quota, count_new_trade_ids, count_user_trades, load_profile
from src.core.trade_store import upsert_trades
from src.utils.rate_limit import cooldown_hit, mask_secret
from src.utils.time import utcnow


log = logging.getLogger(__name__)

_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    413: "payload_too_large",
    429: "rate_limited",
}


def code_for_status(status: int) -> str:
    return _CODES.get(int(status), "server_error")


class SyncError(Exception):
    def __init__(self, status: int, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.status = int(status)
        self.code = code_for_status(self.status)
        self.message = message
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": False, "error": self.message, "code": self.code}
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass(frozen=True)
class SyncOutcome:
    received: int
    normalized: int
    upserted: int

    def to_dict(self) -> dict[str, int]:
        return {"received": self.received, "normalized": self.normalized, "upserted": self.upserted}


def mt_sync_note(fields: NormalizedTrade) -> str:
    return f"Imported via MT sync - Ticket: {fields.ticket}"


def project_records(
    records: list[Any],
    *,
    user_id: str,
    scope: str,
    source: str,
    broker: Optional[str] = None,
    account_login: Optional[str] = None,
    notes_fn: Optional[Callable[[NormalizedTrade], Optional[str]]] = None,
) -> list[TradeRow]:
    rows: list[TradeRow] = []
    for rec in records:
        fields = normalize_record(rec)
        if fields is None:
            continue
        rows.append(
            build_trade_row(
                fields,
                user_id=user_id,
                scope=scope,
                source=source,
                broker=broker,
                account_login=account_login,
                notes=notes_fn(fields) if notes_fn is not None else None,
            )
        )
    return rows


def enforce_quota(
    session: Session,
    *,
    user_id: str,
    rows: list[TradeRow],
    now: dt.datetime,
    settings: Settings,
) -> None:
    profile = load_profile(session, user_id)
    decision = check_quota(
        profile,
        count_user_trades(session, user_id),
        count_new_trade_ids(session, [r.id for r in rows]),
        now=now,
        trade_limit=settings.free_trade_limit,
        trial_days=settings.free_trial_days,
    )
    if not decision.allowed:
        raise SyncError(403, decision.message or "Plan limit reached.", reason=decision.reason)


def ingest_records(
    session: Session,
    *,
    user_id: str,
    records: list[Any],
    source: str,
    broker: Optional[str] = None,
    account_login: Optional[str] = None,
    notes_fn: Optional[Callable[[NormalizedTrade], Optional[str]]] = None,
    now: dt.datetime | None = None,
    settings: Optional[Settings] = None,
    require_rows: bool = True,
) -> SyncOutcome:
    """
    Shared ingestion core: normalize, project, gate on quota, upsert.

    Nothing is written when the quota rejects the batch. The caller owns the
    commit, so side effects like `last_sync_at` land in the same transaction.
    """
    settings = settings or load_settings()
    now = now or utcnow()
    scope = account_scope(broker, account_login)
    rows = project_records(
        records,
        user_id=user_id,
        scope=scope,
        source=source,
        broker=broker,
        account_login=account_login,
        notes_fn=notes_fn,
    )
    if not rows:
        if require_rows and records:
            raise SyncError(400, "No valid trades found.")
        return SyncOutcome(received=len(records), normalized=0, upserted=0)

    enforce_quota(session, user_id=user_id, rows=rows, now=now, settings=settings)
    result = upsert_trades(session, rows, now=now)
    return SyncOutcome(received=len(records), normalized=len(rows), upserted=result.upserted)


def extract_trades(payload: Any) -> list[Any]:
    """Accept `{trades: [...]}`, a bare list, or a single trade object."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        if "trades" in payload:
            trades = payload["trades"]
            if not isinstance(trades, list):
                raise SyncError(400, "Missing trades array.")
            return trades
        return [payload]
    raise SyncError(400, "Invalid JSON body.")


def handle_sync_request(
    session: Session,
    *,
    sync_key: Optional[str],
    payload: Any,
    now: dt.datetime | None = None,
    settings: Optional[Settings] = None,
) -> SyncOutcome:
    """
    Push ingestion for one EA request.

    Stages run in order: key present, cooldown, credential, active, payload
    shape, batch cap, normalization, quota, persistence. Any stage failure
    raises SyncError before later stages run.
    """
    settings = settings or load_settings()
    now = now or utcnow()
    key = (sync_key or "").strip()
    if not key:
        raise SyncError(401, "Missing sync key.")

    if cooldown_hit(key=key, min_interval_s=settings.sync_cooldown_ms / 1000.0):
        raise SyncError(429, "Too many requests. Please retry shortly.")

    conn = verify_sync_key(session, key)
    if conn is None:
        raise SyncError(401, "Invalid sync key.")
    if not conn.is_active:
        raise SyncError(403, "Connection is disconnected.")

    trades = extract_trades(payload)
    if not trades:
        return SyncOutcome(received=0, normalized=0, upserted=0)
    if len(trades) > settings.sync_max_batch:
        raise SyncError(413, "Too many trades in one request.")

    try:
        outcome = ingest_records(
            session,
            user_id=conn.user_id,
            records=trades,
            source="mt_sync",
            broker=conn.broker,
            account_login=conn.account_login,
            notes_fn=mt_sync_note,
            now=now,
            settings=settings,
        )
        conn.last_sync_at = now
        session.commit()
    except SyncError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("MT sync persistence failed (key %s)", mask_secret(key))
        raise SyncError(500, "Server error.") from e

    log.info(
        "MT sync upserted trades: user=%s received=%s normalized=%s upserted=%s",
        conn.user_id,
        outcome.received,
        outcome.normalized,
        outcome.upserted,
    )
    return outcome
