from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Optional

try:
    from sqlalchemy import (
        JSON,
        Boolean,
        Date,
        Enum,
        Float,
        ForeignKey,
        Index,
        Integer,
        String,
        Text,
        UniqueConstraint,
    )
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "Failed to import SQLAlchemy.\n\n"
        "Fix:\n"
        "  python -m venv .venv\n"
        "  source .venv/bin/activate\n"
        "  pip install -e .\n\n"
        f"Original error: {type(e).__name__}: {e}"
    ) from e

from src.utils.time import utcnow
from src.db.types import JSONText, UTCDateTime


class Base(DeclarativeBase):
    pass


TradeType = Enum("long", "short", name="trade_type")
TradeOutcome = Enum("win", "loss", "breakeven", name="trade_outcome")
SubscriptionPlan = Enum("free", "pro", "premium", name="subscription_plan")
ImportJobStatus = Enum("queued", "running", "succeeded", "failed", name="import_job_status")


def _uuid4() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_plan: Mapped[str] = mapped_column(SubscriptionPlan, default="free", nullable=False)
    trial_start_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class AccessToken(Base):
    __tablename__ = "access_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)  # sha256 hex
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(200))
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_user_date", "user_id", "date"),
        Index("ix_trades_user_account", "user_id", "broker", "account_login"),
    )

    # Deterministic id (see src.core.identity); never generated randomly.
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    type: Mapped[str] = mapped_column(TradeType, nullable=False)
    entry: Mapped[float] = mapped_column(Float, nullable=False)
    exit: Mapped[float] = mapped_column(Float, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    outcome: Mapped[str] = mapped_column(TradeOutcome, nullable=False)
    pnl: Mapped[float] = mapped_column(Float, nullable=False)
    pnl_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Provenance
    source: Mapped[Optional[str]] = mapped_column(String(20))  # manual|csv|mt_report|mt_html|mt_sync|metaapi
    broker: Mapped[Optional[str]] = mapped_column(String(20))
    account_login: Mapped[Optional[str]] = mapped_column(String(100))
    ticket: Mapped[Optional[str]] = mapped_column(String(100))
    position_id: Mapped[Optional[str]] = mapped_column(String(100))
    open_time: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    close_time: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    commission: Mapped[Optional[float]] = mapped_column(Float)
    swap: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class BrokerConnection(Base):
    __tablename__ = "broker_connections"
    __table_args__ = (
        UniqueConstraint("broker", "account_login"),
        Index("ix_broker_connections_user", "user_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    broker: Mapped[str] = mapped_column(String(20), nullable=False)  # mt4|mt5 (bridge) or metaapi (pull)
    account_login: Mapped[str] = mapped_column(String(100), nullable=False)

    # Bridge credential: public id for lookup + one-way hash of the secret.
    credential_id: Mapped[Optional[str]] = mapped_column(String(32), unique=True)
    credential_hash: Mapped[Optional[str]] = mapped_column(String(255))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="connected", nullable=False)
    last_sync_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    last_import_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())

    # MetaApi connections
    metaapi_account_id: Mapped[Optional[str]] = mapped_column(String(100))
    platform: Mapped[Optional[str]] = mapped_column(String(10))  # mt4|mt5
    environment: Mapped[Optional[str]] = mapped_column(String(10))  # demo|live
    server: Mapped[Optional[str]] = mapped_column(String(200))

    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    import_jobs: Mapped[list["ImportJob"]] = relationship(back_populates="connection")


class ImportJob(Base):
    __tablename__ = "import_jobs"
    __table_args__ = (Index("ix_import_jobs_user_status", "user_id", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[int] = mapped_column(ForeignKey("broker_connections.id"), nullable=False)
    status: Mapped[str] = mapped_column(ImportJobStatus, default="queued", nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    message: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONText())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    connection: Mapped["BrokerConnection"] = relationship(back_populates="import_jobs")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64))
    old_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    new_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)
