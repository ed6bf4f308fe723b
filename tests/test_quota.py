from __future__ import annotations

import datetime as dt
from types import SimpleNamespace

from src.core.quota import FREE_TRADE_LIMIT, check_quota, count_new_trade_ids
from src.db.models import Trade


NOW = dt.datetime(2025, 3, 1, tzinfo=dt.timezone.utc)


def _profile(plan="free", days_ago=1):
    return SimpleNamespace(subscription_plan=plan, trial_start_at=NOW - dt.timedelta(days=days_ago))


def test_ceiling_is_inclusive():
    assert check_quota(_profile(), 10, 5, now=NOW).allowed
    d = check_quota(_profile(), 10, 6, now=NOW)
    assert not d.allowed
    assert d.reason == "trade_limit"
    assert str(FREE_TRADE_LIMIT) in d.message


def test_trial_expiry():
    assert check_quota(_profile(days_ago=14), 0, 1, now=NOW).allowed
    d = check_quota(_profile(days_ago=15), 0, 1, now=NOW)
    assert not d.allowed
    assert d.reason == "trial_expired"


def test_paid_plans_are_not_gated():
    assert check_quota(_profile(plan="pro", days_ago=400), 10_000, 10_000, now=NOW).allowed
    assert check_quota(_profile(plan="premium", days_ago=400), 10_000, 10_000, now=NOW).allowed


def test_missing_profile_counts_as_free():
    assert check_quota(None, 15, 0, now=NOW).allowed
    assert not check_quota(None, 15, 1, now=NOW).allowed


def test_missing_trial_start_is_not_expired():
    p = SimpleNamespace(subscription_plan="free", trial_start_at=None)
    assert check_quota(p, 0, 1, now=NOW).allowed


def test_custom_limits():
    assert not check_quota(_profile(), 2, 1, now=NOW, trade_limit=2).allowed
    assert not check_quota(_profile(days_ago=3), 0, 1, now=NOW, trial_days=2).allowed


def test_count_new_trade_ids_ignores_stored_ids(session):
    session.add(
        Trade(
            id="known",
            user_id="u1",
            date=dt.date(2025, 1, 1),
            symbol="EURUSD",
            type="long",
            entry=1.0,
            exit=1.1,
            quantity=1.0,
            outcome="win",
            pnl=0.1,
            pnl_percentage=10.0,
        )
    )
    session.commit()
    assert count_new_trade_ids(session, ["known", "new-1", "new-2", "new-1"]) == 2
