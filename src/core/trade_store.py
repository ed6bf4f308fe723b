from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.projector import TradeRow
from src.db.models import Trade
from src.utils.time import utcnow


log = logging.getLogger(__name__)

UPSERT_CHUNK_SIZE = 500
_IMMUTABLE = {"id", "user_id"}


@dataclass(frozen=True)
class UpsertResult:
    inserted: int
    updated: int

    @property
    def upserted(self) -> int:
        return self.inserted + self.updated


def _write_chunk(session: Session, rows: list[TradeRow], now: dt.datetime) -> tuple[int, int]:
    ids = [r.id for r in rows]
    existing = {t.id: t for t in session.query(Trade).filter(Trade.id.in_(ids)).all()}
    inserted = 0
    updated = 0
    for row in rows:
        values = row.values()
        current = existing.get(row.id)
        if current is None:
            session.add(Trade(**values, created_at=now, updated_at=now))
            inserted += 1
            continue
        for k, v in values.items():
            if k in _IMMUTABLE:
                continue
            setattr(current, k, v)
        current.updated_at = now
        updated += 1
    session.flush()
    return inserted, updated


def upsert_trades(
    session: Session,
    rows: Iterable[TradeRow],
    *,
    now: dt.datetime | None = None,
    chunk_size: int = UPSERT_CHUNK_SIZE,
) -> UpsertResult:
    """
    Last-write-wins upsert keyed by the deterministic trade id.

    Within one call, a repeated id keeps its last occurrence. Each chunk runs in a
    savepoint; if a concurrent writer inserted one of our ids first, the chunk is
    replayed once as updates. The caller owns the outer commit.
    """
    now = now or utcnow()
    by_id: dict[str, TradeRow] = {}
    for r in rows:
        by_id[r.id] = r
    ordered = list(by_id.values())
    size = max(1, int(chunk_size))

    inserted = 0
    updated = 0
    for i in range(0, len(ordered), size):
        chunk = ordered[i : i + size]
        attempt = 0
        while True:
            savepoint = session.begin_nested()
            try:
                ins, upd = _write_chunk(session, chunk, now)
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                if attempt >= 1:
                    raise
                attempt += 1
                log.info("Trade upsert raced with another writer; replaying %s rows as updates", len(chunk))
                continue
            inserted += ins
            updated += upd
            break
    return UpsertResult(inserted=inserted, updated=updated)
