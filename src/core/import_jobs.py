from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from src.core.config import Settings, load_settings
from src.core.connections import METAAPI_BROKER, get_user_connection
from src.core.sync_ingest import ingest_records
from src.db.audit import log_change
from src.db.models import BrokerConnection, ImportJob
from src.importers.adapters import HistoryAdapter, RateLimitPauseError
from src.utils.time import iso_utc, parse_utc, utcnow


log = logging.getLogger(__name__)

IMPORT_WINDOW_DAYS = 60
QUICK_IMPORT_DAYS_DEFAULT = 30
QUICK_IMPORT_MAX_DAYS = 90
QUICK_IMPORT_WINDOW_DAYS = 10
IMPORT_CONTINUE_MAX_CHUNKS = 3
MAX_WINDOW_DAYS = 180
DEFAULT_IMPORT_START = dt.datetime(2000, 1, 1, tzinfo=dt.timezone.utc)

TERMINAL_STATUSES = {"succeeded", "failed"}
RATE_LIMITED_TEXT = "Rate limited, retrying…"
RATE_LIMITED_MESSAGE = "Rate limited, retrying soon"


class ImportJobError(Exception):
    status_code = 400
    code = "bad_request"


class ImportJobNotFoundError(ImportJobError):
    status_code = 404
    code = "not_found"


@dataclass
class JobState:
    """Resumable cursor and counters, persisted as JSON in ImportJob.message."""

    start: dt.datetime
    end: dt.datetime
    window_days: int = IMPORT_WINDOW_DAYS
    fetched_total: int = 0
    upserted_total: int = 0
    metaapi_account_id: Optional[str] = None
    account_login: Optional[str] = None
    last_chunk: Optional[dict[str, Any]] = None
    status_text: Optional[str] = None
    rate_limited_until: Optional[dt.datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "from": iso_utc(self.start),
            "to": iso_utc(self.end),
            "windowDays": self.window_days,
            "fetchedTotal": self.fetched_total,
            "upsertedTotal": self.upserted_total,
        }
        optional = {
            "metaapiAccountId": self.metaapi_account_id,
            "accountLogin": self.account_login,
            "lastChunk": self.last_chunk,
            "statusText": self.status_text,
            "rateLimitedUntil": iso_utc(self.rate_limited_until),
            "error": self.error,
        }
        out.update({k: v for k, v in optional.items() if v})
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["JobState"]:
        if not isinstance(data, dict):
            return None
        start = parse_utc(data.get("from"))
        end = parse_utc(data.get("to"))
        if start is None or end is None:
            return None

        def _int(key: str, default: int) -> int:
            try:
                return int(data.get(key, default))
            except (TypeError, ValueError):
                return default

        last_chunk = data.get("lastChunk")
        return cls(
            start=start,
            end=end,
            window_days=_int("windowDays", IMPORT_WINDOW_DAYS),
            fetched_total=_int("fetchedTotal", 0),
            upserted_total=_int("upsertedTotal", 0),
            metaapi_account_id=data.get("metaapiAccountId") or None,
            account_login=data.get("accountLogin") or None,
            last_chunk=last_chunk if isinstance(last_chunk, dict) else None,
            status_text=data.get("statusText") or None,
            rate_limited_until=parse_utc(data.get("rateLimitedUntil")),
            error=data.get("error") or None,
        )

    def clear_rate_limit(self) -> None:
        self.status_text = None
        self.rate_limited_until = None


@dataclass(frozen=True)
class ContinueResult:
    status: str  # ok|rate_limited
    job: ImportJob
    chunk: Optional[dict[str, int]] = None
    retry_at: Optional[dt.datetime] = None
    message: Optional[str] = None


@dataclass
class _Window:
    index: int
    start: dt.datetime
    end: dt.datetime
    fetched: int = 0
    upserted: int = 0


def compute_total_chunks(start: dt.datetime, end: dt.datetime, window_days: int) -> int:
    span = (end - start).total_seconds()
    chunk = float(window_days) * 86400.0
    if span <= 0 or chunk <= 0:
        return 1
    return max(1, math.ceil(span / chunk))


def _adapter_for(connection: BrokerConnection, settings: Settings) -> HistoryAdapter:
    from src.adapters.metaapi.adapter import MetaApiHistoryAdapter, client_from_settings

    return MetaApiHistoryAdapter(client_from_settings(settings))


def _state_of(job: ImportJob) -> JobState:
    state = JobState.from_dict(job.message)
    if state is None:
        state = JobState(start=DEFAULT_IMPORT_START, end=utcnow())
    return state


def _save(job: ImportJob, state: JobState, now: dt.datetime, **changes: Any) -> None:
    for k, v in changes.items():
        setattr(job, k, v)
    # JSONText does not track in-place mutation; always assign a fresh dict.
    job.message = state.to_dict()
    job.updated_at = now


def _import_connection(session: Session, *, user_id: str, connection_id: Any) -> BrokerConnection:
    conn = get_user_connection(session, user_id=user_id, connection_id=connection_id)
    if conn.broker != METAAPI_BROKER or not conn.metaapi_account_id or not conn.account_login:
        raise ImportJobError("Connection missing MetaApi account id/login.")
    return conn


def _queue_job(
    session: Session,
    *,
    user_id: str,
    conn: BrokerConnection,
    start: dt.datetime,
    end: dt.datetime,
    window_days: int,
    now: dt.datetime,
) -> ImportJob:
    state = JobState(
        start=start,
        end=end,
        window_days=window_days,
        metaapi_account_id=conn.metaapi_account_id,
        account_login=conn.account_login,
    )
    job = ImportJob(
        user_id=user_id,
        connection_id=conn.id,
        status="queued",
        progress=0,
        total=compute_total_chunks(start, end, window_days),
        message=state.to_dict(),
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    session.flush()
    log_change(
        session,
        actor=user_id,
        action="QUEUE",
        entity="ImportJob",
        entity_id=job.id,
        new={"connection_id": conn.id, "total": job.total, "window_days": window_days},
    )
    session.commit()
    log.info("Import queued: user=%s connection=%s job=%s total_chunks=%s", user_id, conn.id, job.id, job.total)
    return job


def create_import_job(
    session: Session,
    *,
    user_id: str,
    connection_id: Any,
    start: Any = None,
    end: Any = None,
    now: dt.datetime | None = None,
) -> ImportJob:
    """Full-range history import in 60-day windows. Defaults to 2000-01-01 .. now."""
    now = now or utcnow()
    conn = _import_connection(session, user_id=user_id, connection_id=connection_id)
    start_dt = parse_utc(start) if start else DEFAULT_IMPORT_START
    end_dt = parse_utc(end) if end else now
    if start_dt is None or end_dt is None or start_dt >= end_dt:
        raise ImportJobError("Invalid from/to range.")
    return _queue_job(
        session, user_id=user_id, conn=conn, start=start_dt, end=end_dt, window_days=IMPORT_WINDOW_DAYS, now=now
    )


def clamp_days(value: Any) -> int:
    try:
        days = int(value)
    except (TypeError, ValueError):
        return QUICK_IMPORT_DAYS_DEFAULT
    return max(1, min(QUICK_IMPORT_MAX_DAYS, days))


def quick_import(
    session: Session,
    *,
    user_id: str,
    connection_id: Any,
    days: Any = None,
    now: dt.datetime | None = None,
) -> tuple[ImportJob, dict[str, Any]]:
    """Recent-history import over [now - days, now] with small windows for fast first results."""
    now = now or utcnow()
    n = clamp_days(days) if days is not None else QUICK_IMPORT_DAYS_DEFAULT
    conn = _import_connection(session, user_id=user_id, connection_id=connection_id)
    start = now - dt.timedelta(days=n)
    window_days = max(1, min(n, QUICK_IMPORT_WINDOW_DAYS))
    job = _queue_job(session, user_id=user_id, conn=conn, start=start, end=now, window_days=window_days, now=now)
    return job, {"from": iso_utc(start), "to": iso_utc(now), "days": n, "windowDays": window_days}


def _load_job(session: Session, *, user_id: str, job_id: Any) -> ImportJob:
    jid = str(job_id or "").strip()
    if not jid:
        raise ImportJobError("Missing jobId.")
    job = session.query(ImportJob).filter(ImportJob.id == jid, ImportJob.user_id == user_id).one_or_none()
    if job is None:
        raise ImportJobNotFoundError("Import job not found.")
    return job


def expire_if_stale(
    session: Session, job: ImportJob, *, now: dt.datetime, stale_minutes: int
) -> bool:
    if job.status in TERMINAL_STATUSES or stale_minutes <= 0:
        return False
    if now - job.updated_at <= dt.timedelta(minutes=stale_minutes):
        return False
    state = _state_of(job)
    state.clear_rate_limit()
    state.error = "Import abandoned"
    _save(job, state, now, status="failed")
    session.commit()
    log.info("Import job %s expired after %s minutes without progress", job.id, stale_minutes)
    return True


def get_import_job(
    session: Session,
    *,
    user_id: str,
    job_id: Any,
    now: dt.datetime | None = None,
    settings: Optional[Settings] = None,
) -> ImportJob:
    settings = settings or load_settings()
    job = _load_job(session, user_id=user_id, job_id=job_id)
    expire_if_stale(session, job, now=now or utcnow(), stale_minutes=settings.import_job_stale_minutes)
    return job


def cancel_import_job(
    session: Session, *, user_id: str, job_id: Any, now: dt.datetime | None = None
) -> ImportJob:
    now = now or utcnow()
    job = _load_job(session, user_id=user_id, job_id=job_id)
    if job.status in TERMINAL_STATUSES:
        return job
    state = _state_of(job)
    state.clear_rate_limit()
    state.error = "Canceled"
    old_status = job.status
    _save(job, state, now, status="failed")
    log_change(
        session,
        actor=user_id,
        action="CANCEL",
        entity="ImportJob",
        entity_id=job.id,
        old={"status": old_status},
        new={"status": "failed"},
    )
    session.commit()
    return job


def expire_stale_jobs(
    session: Session, *, now: dt.datetime | None = None, stale_minutes: Optional[int] = None
) -> int:
    now = now or utcnow()
    minutes = stale_minutes if stale_minutes is not None else load_settings().import_job_stale_minutes
    jobs = session.query(ImportJob).filter(ImportJob.status.in_(["queued", "running"])).all()
    return sum(1 for job in jobs if expire_if_stale(session, job, now=now, stale_minutes=minutes))


def _plan_windows(state: JobState, progress: int, total: int) -> list[_Window]:
    window = dt.timedelta(days=max(1, min(MAX_WINDOW_DAYS, int(state.window_days or IMPORT_WINDOW_DAYS))))
    out: list[_Window] = []
    for i in range(IMPORT_CONTINUE_MAX_CHUNKS):
        idx = progress + i
        if idx >= total:
            break
        start = state.start + window * idx
        if start >= state.end:
            break
        out.append(_Window(index=idx, start=start, end=min(start + window, state.end)))
    return out


def continue_import_job(
    session: Session,
    *,
    user_id: str,
    job_id: Any,
    now: dt.datetime | None = None,
    settings: Optional[Settings] = None,
) -> ContinueResult:
    """
    Advance an import job by up to three windows.

    Each window is fetched, projected and upserted, and the cursor moves past it
    once it is written. A rate-limit pause stops the loop without moving the
    cursor past the failed window, and records when the caller may come back.
    """
    settings = settings or load_settings()
    now = now or utcnow()
    job = _load_job(session, user_id=user_id, job_id=job_id)
    expire_if_stale(session, job, now=now, stale_minutes=settings.import_job_stale_minutes)
    if job.status in TERMINAL_STATUSES:
        return ContinueResult(status="ok", job=job)

    state = _state_of(job)
    if state.start >= state.end:
        raise ImportJobError("Import job has an invalid date range.")

    if state.rate_limited_until is not None:
        if state.rate_limited_until > now:
            return ContinueResult(
                status="rate_limited", job=job, retry_at=state.rate_limited_until, message=RATE_LIMITED_MESSAGE
            )
        state.clear_rate_limit()

    chunk_index = int(job.progress or 0)
    total = int(job.total or 1)
    windows = _plan_windows(state, chunk_index, total)
    if chunk_index >= total or not windows:
        _save(job, state, now, status="succeeded", progress=total)
        session.commit()
        return ContinueResult(status="ok", job=job, chunk={"fetched": 0, "upserted": 0})

    conn = session.get(BrokerConnection, job.connection_id)
    if conn is None or conn.user_id != user_id:
        raise ImportJobNotFoundError("Connection not found for this job.")

    _save(job, state, now, status="running")
    session.commit()

    done: list[_Window] = []
    pause: Optional[RateLimitPauseError] = None
    try:
        adapter = _adapter_for(conn, settings)
        for w in windows:
            log.info("Import chunk: job=%s index=%s window=%s..%s", job.id, w.index, iso_utc(w.start), iso_utc(w.end))
            try:
                deals = adapter.fetch_deals(conn, w.start, w.end)
            except RateLimitPauseError as e:
                pause = e
                break
            records = adapter.build_trade_records(deals)
            outcome = ingest_records(
                session,
                user_id=user_id,
                records=records,
                source="metaapi",
                broker=METAAPI_BROKER,
                account_login=conn.account_login,
                now=now,
                settings=settings,
                require_rows=False,
            )
            w.fetched = len(deals)
            w.upserted = outcome.upserted
            done.append(w)
            state.fetched_total += w.fetched
            state.upserted_total += w.upserted
            state.last_chunk = {
                "from": iso_utc(w.start),
                "to": iso_utc(w.end),
                "fetched": w.fetched,
                "upserted": w.upserted,
            }
            _save(job, state, now, progress=w.index + 1)
            session.commit()
    except Exception as e:
        session.rollback()
        log.exception("Import continue failed: job=%s", job.id)
        state = _state_of(job)
        state.clear_rate_limit()
        state.error = str(e) or type(e).__name__
        _save(job, state, now, status="failed")
        session.commit()
        return ContinueResult(status="ok", job=job)

    fetched = sum(w.fetched for w in done)
    upserted = sum(w.upserted for w in done)
    state.error = None
    if pause is not None:
        state.status_text = RATE_LIMITED_TEXT
        state.rate_limited_until = pause.retry_at
    else:
        state.clear_rate_limit()

    last = done[-1] if done else None
    next_progress = chunk_index + len(done)
    finished = next_progress >= total or (last is not None and last.end >= state.end)
    stamp = now
    if finished:
        _save(job, state, stamp, status="succeeded", progress=total)
        conn.last_import_at = stamp
        conn.status = "imported"
        conn.updated_at = stamp
    else:
        _save(job, state, stamp, status="running", progress=next_progress)
    session.commit()

    if pause is not None:
        log.info("Import job %s rate limited until %s", job.id, iso_utc(pause.retry_at))
        return ContinueResult(
            status="rate_limited",
            job=job,
            chunk={"fetched": fetched, "upserted": upserted},
            retry_at=pause.retry_at,
            message=RATE_LIMITED_MESSAGE,
        )
    return ContinueResult(status="ok", job=job, chunk={"fetched": fetched, "upserted": upserted})
