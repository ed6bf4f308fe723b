from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.db.models import Base, Profile
from src.utils.rate_limit import reset_cooldowns


NOW = dt.datetime(2025, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    reset_cooldowns()
    # Keep a developer's tradesync.yaml out of the picture.
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRADESYNC_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in (
        "SYNC_COOLDOWN_MS",
        "SYNC_MAX_BATCH",
        "SYNC_PUBLIC_URL",
        "FREE_TRADE_LIMIT",
        "FREE_TRIAL_DAYS",
        "IMPORT_JOB_STALE_MINUTES",
        "METAAPI_TOKEN",
        "METAAPI_CLIENT_URL",
        "METAAPI_PROVISIONING_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    reset_cooldowns()


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)


@pytest.fixture()
def session(session_factory) -> Session:
    with session_factory() as s:
        yield s


@pytest.fixture()
def make_profile(session):
    def _make(user_id: str, *, plan: str = "free", trial_start_at: dt.datetime | None = NOW) -> Profile:
        p = Profile(user_id=user_id, subscription_plan=plan, trial_start_at=trial_start_at)
        session.add(p)
        session.commit()
        return p

    return _make


@pytest.fixture()
def client(session_factory):
    from fastapi.testclient import TestClient

    from src.app.db import db_session
    from src.app.main import create_app

    app = create_app(init_database=False)

    def _override():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[db_session] = _override
    with TestClient(app) as c:
        yield c
