from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from src.core.config import load_settings


def get_database_url() -> str:
    return load_settings().database_url


_ENGINE: Engine | None = None
_SESSION_FACTORY: sessionmaker | None = None


def _ensure_sqlite_dir(url: str) -> None:
    u = make_url(url)
    db = u.database or ""
    if u.get_backend_name() == "sqlite" and db and db != ":memory:":
        Path(db).expanduser().parent.mkdir(parents=True, exist_ok=True)


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE
    url = get_database_url()
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        _ensure_sqlite_dir(url)
    _ENGINE = create_engine(url, future=True, connect_args=connect_args)
    return _ENGINE


def get_session() -> Session:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = sessionmaker(bind=get_engine(), class_=Session, autoflush=False, autocommit=False)
    return _SESSION_FACTORY()
