from __future__ import annotations

import dataclasses
import datetime as dt

import pytest

import src.core.import_jobs as import_jobs
from src.core.config import load_settings
from src.core.connections import ConnectionNotFoundError
from src.core.identity import resolve_trade_id
from src.core.import_jobs import (
    ImportJobError,
    ImportJobNotFoundError,
    JobState,
    cancel_import_job,
    clamp_days,
    compute_total_chunks,
    continue_import_job,
    create_import_job,
    expire_stale_jobs,
    get_import_job,
    quick_import,
)
from src.db.models import BrokerConnection, ImportJob, Trade
from src.importers.adapters import HistoryAdapter, ProviderError, RateLimitPauseError


NOW = dt.datetime(2025, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _deal_record(ticket: str, when: dt.datetime) -> dict:
    return {
        "ticket": ticket,
        "symbol": "XAUUSD",
        "type": "long",
        "open_price": 2000.0,
        "close_price": 2010.0,
        "volume": 0.1,
        "profit": 100.0,
        "close_time": when.isoformat(),
    }


class FakeAdapter(HistoryAdapter):
    """One closed deal per window; optional rate limit or failure on chosen calls."""

    def __init__(self, *, pause_on: set[int] | None = None, fail_on: set[int] | None = None, retry_at=None):
        self.calls: list[tuple[dt.datetime, dt.datetime]] = []
        self.pause_on = pause_on or set()
        self.fail_on = fail_on or set()
        self.retry_at = retry_at or NOW + dt.timedelta(seconds=30)

    def fetch_deals(self, connection, start, end):
        n = len(self.calls)
        self.calls.append((start, end))
        if n in self.pause_on:
            raise RateLimitPauseError(retry_at=self.retry_at, retry_after_s=30)
        if n in self.fail_on:
            raise ProviderError("upstream exploded")
        return [{"id": f"d-{start.date().isoformat()}", "time": start}]

    def build_trade_records(self, deals):
        return [_deal_record(d["id"], d["time"]) for d in deals]


@pytest.fixture()
def settings():
    return dataclasses.replace(load_settings(), import_job_stale_minutes=30)


@pytest.fixture()
def conn(session, make_profile) -> BrokerConnection:
    make_profile("u1", plan="pro")
    c = BrokerConnection(
        user_id="u1",
        broker="metaapi",
        account_login="5001",
        metaapi_account_id="acc-1",
        platform="mt5",
        environment="demo",
        server="Broker-Demo",
        status="connected",
    )
    session.add(c)
    session.commit()
    return c


@pytest.fixture()
def adapter(monkeypatch):
    fake = FakeAdapter()
    monkeypatch.setattr(import_jobs, "_adapter_for", lambda connection, settings: fake)
    return fake


def _continue(session, job, settings, now=NOW):
    return continue_import_job(session, user_id="u1", job_id=job.id, now=now, settings=settings)


def test_total_chunks():
    start = dt.datetime(2025, 1, 1, tzinfo=dt.timezone.utc)
    assert compute_total_chunks(start, start + dt.timedelta(days=60), 60) == 1
    assert compute_total_chunks(start, start + dt.timedelta(days=61), 60) == 2
    assert compute_total_chunks(start, start, 60) == 1


def test_clamp_days():
    assert clamp_days(0) == 1
    assert clamp_days(500) == 90
    assert clamp_days("45") == 45
    assert clamp_days("x") == 30


def test_job_state_round_trips_camel_case():
    state = JobState(start=NOW - dt.timedelta(days=3), end=NOW, window_days=1, fetched_total=4, account_login="5001")
    data = state.to_dict()
    assert data["from"] == "2025-02-26T12:00:00Z"
    assert data["windowDays"] == 1
    assert data["accountLogin"] == "5001"
    assert "rateLimitedUntil" not in data
    assert JobState.from_dict(data) == state
    assert JobState.from_dict({"statusText": "legacy"}) is None


def test_create_import_job_defaults_to_full_history(session, conn):
    job = create_import_job(session, user_id="u1", connection_id=conn.id, now=NOW)
    assert job.status == "queued"
    assert job.progress == 0
    assert job.message["from"] == "2000-01-01T00:00:00Z"
    assert job.message["to"] == "2025-03-01T12:00:00Z"
    assert job.message["windowDays"] == 60
    assert job.message["metaapiAccountId"] == "acc-1"
    assert job.total == compute_total_chunks(import_jobs.DEFAULT_IMPORT_START, NOW, 60)


def test_create_import_job_validates(session, conn):
    with pytest.raises(ImportJobError):
        create_import_job(session, user_id="u1", connection_id=conn.id, start="2025-02-01", end="2025-01-01", now=NOW)
    with pytest.raises(ConnectionNotFoundError):
        create_import_job(session, user_id="u2", connection_id=conn.id, now=NOW)

    bridge = BrokerConnection(user_id="u1", broker="mt5", account_login="77")
    session.add(bridge)
    session.commit()
    with pytest.raises(ImportJobError):
        create_import_job(session, user_id="u1", connection_id=bridge.id, now=NOW)


def test_quick_import_range(session, conn):
    job, rng = quick_import(session, user_id="u1", connection_id=conn.id, days=30, now=NOW)
    assert rng == {"from": "2025-01-30T12:00:00Z", "to": "2025-03-01T12:00:00Z", "days": 30, "windowDays": 10}
    assert job.total == 3

    small, rng = quick_import(session, user_id="u1", connection_id=conn.id, days=4, now=NOW)
    assert rng["windowDays"] == 4
    assert small.total == 1


def test_continue_runs_to_completion(session, conn, adapter, settings):
    job, _ = quick_import(session, user_id="u1", connection_id=conn.id, days=50, now=NOW)
    assert job.total == 5

    first = _continue(session, job, settings)
    assert first.status == "ok"
    assert first.chunk == {"fetched": 3, "upserted": 3}
    assert job.status == "running"
    assert job.progress == 3

    second = _continue(session, job, settings)
    assert second.chunk == {"fetched": 2, "upserted": 2}
    assert job.status == "succeeded"
    assert job.progress == job.total
    assert job.message["fetchedTotal"] == 5
    assert job.message["upsertedTotal"] == 5
    assert job.message["lastChunk"]["to"] == "2025-03-01T12:00:00Z"

    session.refresh(conn)
    assert conn.status == "imported"
    assert conn.last_import_at == NOW

    trades = session.query(Trade).all()
    assert len(trades) == 5
    assert {t.source for t in trades} == {"metaapi"}
    assert {t.account_login for t in trades} == {"5001"}
    sample = adapter.calls[0][0].date().isoformat()
    assert session.get(Trade, resolve_trade_id("u1", "metaapi:5001", f"d-{sample}")) is not None

    # Windows are contiguous.
    for (_, prev_end), (next_start, _) in zip(adapter.calls, adapter.calls[1:]):
        assert prev_end == next_start

    # Terminal jobs are returned unchanged.
    third = _continue(session, job, settings)
    assert third.status == "ok"
    assert len(adapter.calls) == 5


def test_rate_limit_pauses_without_skipping_windows(session, conn, adapter, settings):
    adapter.pause_on = {1}
    job, _ = quick_import(session, user_id="u1", connection_id=conn.id, days=30, now=NOW)

    paused = _continue(session, job, settings)
    assert paused.status == "rate_limited"
    assert paused.retry_at == adapter.retry_at
    assert paused.chunk == {"fetched": 1, "upserted": 1}
    assert job.progress == 1
    assert job.status == "running"
    assert job.message["rateLimitedUntil"] == "2025-03-01T12:00:30Z"
    assert job.message["statusText"] == import_jobs.RATE_LIMITED_TEXT

    # Before retryAt nothing is fetched.
    calls = len(adapter.calls)
    early = _continue(session, job, settings, now=NOW + dt.timedelta(seconds=10))
    assert early.status == "rate_limited"
    assert len(adapter.calls) == calls

    done = _continue(session, job, settings, now=NOW + dt.timedelta(seconds=31))
    assert done.status == "ok"
    assert job.status == "succeeded"
    assert "rateLimitedUntil" not in job.message
    # The paused window is fetched again on resume.
    assert adapter.calls[1] == adapter.calls[2]
    assert session.query(Trade).count() == 3


def test_provider_error_fails_job(session, conn, adapter, settings):
    adapter.fail_on = {1}
    job, _ = quick_import(session, user_id="u1", connection_id=conn.id, days=30, now=NOW)
    result = _continue(session, job, settings)
    assert result.status == "ok"
    assert job.status == "failed"
    assert job.message["error"] == "upstream exploded"
    assert job.progress == 1
    assert session.query(Trade).count() == 1


def test_cancel_and_poll(session, conn, settings):
    job, _ = quick_import(session, user_id="u1", connection_id=conn.id, now=NOW)
    canceled = cancel_import_job(session, user_id="u1", job_id=job.id, now=NOW)
    assert canceled.status == "failed"
    assert canceled.message["error"] == "Canceled"
    assert get_import_job(session, user_id="u1", job_id=job.id, now=NOW, settings=settings).status == "failed"


def test_jobs_are_scoped_to_their_owner(session, conn, settings):
    job, _ = quick_import(session, user_id="u1", connection_id=conn.id, now=NOW)
    with pytest.raises(ImportJobNotFoundError):
        get_import_job(session, user_id="u2", job_id=job.id, now=NOW, settings=settings)
    with pytest.raises(ImportJobNotFoundError):
        continue_import_job(session, user_id="u2", job_id=job.id, now=NOW, settings=settings)
    with pytest.raises(ImportJobError):
        get_import_job(session, user_id="u1", job_id="", now=NOW, settings=settings)


def test_stale_jobs_expire(session, conn, settings):
    job, _ = quick_import(session, user_id="u1", connection_id=conn.id, now=NOW)
    later = NOW + dt.timedelta(minutes=31)
    polled = get_import_job(session, user_id="u1", job_id=job.id, now=later, settings=settings)
    assert polled.status == "failed"
    assert polled.message["error"] == "Import abandoned"


def test_expire_stale_jobs_bulk(session, conn):
    quick_import(session, user_id="u1", connection_id=conn.id, now=NOW)
    quick_import(session, user_id="u1", connection_id=conn.id, now=NOW + dt.timedelta(minutes=20))
    assert expire_stale_jobs(session, now=NOW + dt.timedelta(minutes=40), stale_minutes=30) == 1
    statuses = sorted(j.status for j in session.query(ImportJob).all())
    assert statuses == ["failed", "queued"]
