from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.db.models import Profile, Trade
from src.utils.time import ensure_utc, utcnow


FREE_TRADE_LIMIT = 15
FREE_TRIAL_DAYS = 14
_ID_CHUNK = 500


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None  # trial_expired|trade_limit
    message: Optional[str] = None


ALLOW = QuotaDecision(allowed=True)


def check_quota(
    profile: Optional[Any],
    existing_count: int,
    new_count: int,
    *,
    now: dt.datetime | None = None,
    trade_limit: int = FREE_TRADE_LIMIT,
    trial_days: int = FREE_TRIAL_DAYS,
) -> QuotaDecision:
    """
    Free-plan gate. Paid plans always pass.

    `new_count` must only count trades whose id is not stored yet, so re-syncing
    history never eats into the ceiling.
    """
    plan = (getattr(profile, "subscription_plan", None) or "free").lower()
    if plan != "free":
        return ALLOW

    now = ensure_utc(now or utcnow())
    trial_start = getattr(profile, "trial_start_at", None)
    if trial_start is not None and now - ensure_utc(trial_start) > dt.timedelta(days=trial_days):
        return QuotaDecision(
            allowed=False,
            reason="trial_expired",
            message="Free trial expired. Upgrade to keep syncing trades.",
        )

    if int(existing_count) + int(new_count) > trade_limit:
        return QuotaDecision(
            allowed=False,
            reason="trade_limit",
            message=f"Free plan is limited to {trade_limit} trades. Upgrade to sync unlimited trades.",
        )
    return ALLOW


def load_profile(session: Session, user_id: str) -> Optional[Profile]:
    return session.query(Profile).filter(Profile.user_id == user_id).one_or_none()


def count_user_trades(session: Session, user_id: str) -> int:
    return int(session.query(func.count(Trade.id)).filter(Trade.user_id == user_id).scalar() or 0)


def existing_trade_ids(session: Session, ids: Iterable[str]) -> set[str]:
    wanted = list(dict.fromkeys(ids))
    found: set[str] = set()
    for i in range(0, len(wanted), _ID_CHUNK):
        chunk = wanted[i : i + _ID_CHUNK]
        found.update(r[0] for r in session.query(Trade.id).filter(Trade.id.in_(chunk)).all())
    return found


def count_new_trade_ids(session: Session, ids: Iterable[str]) -> int:
    wanted = set(ids)
    return len(wanted - existing_trade_ids(session, wanted))


def count_account_trades(session: Session, user_id: str, broker: Optional[str], account_login: Optional[str]) -> int:
    return int(
        session.query(func.count(Trade.id))
        .filter(Trade.user_id == user_id, Trade.broker == broker, Trade.account_login == account_login)
        .scalar()
        or 0
    )
