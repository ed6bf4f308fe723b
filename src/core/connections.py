from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.credentials import generate_sync_key, split_sync_key, verify_secret
from src.db.audit import log_change
from src.db.models import BrokerConnection
from src.utils.time import utcnow


log = logging.getLogger(__name__)

BRIDGE_BROKERS = {"mt4", "mt5"}
METAAPI_BROKER = "metaapi"
METAAPI_PLATFORMS = {"mt4", "mt5"}
METAAPI_ENVIRONMENTS = {"demo", "live"}
METAAPI_CLOUD_TYPES = {"cloud-g1", "cloud-g2"}


class RegistryError(Exception):
    status_code = 400
    code = "bad_request"


class ConnectionInputError(RegistryError):
    pass


class ConnectionConflictError(RegistryError):
    status_code = 409
    code = "conflict"


class ConnectionNotFoundError(RegistryError):
    status_code = 404
    code = "not_found"


@dataclass(frozen=True)
class BridgeConnectResult:
    sync_key: str
    sync_url: str
    connection: BrokerConnection
    connected_at: dt.datetime


@dataclass(frozen=True)
class MetaApiConnectResult:
    connection: BrokerConnection
    reused: bool


def _snapshot(conn: BrokerConnection) -> dict[str, Any]:
    return {
        "user_id": conn.user_id,
        "broker": conn.broker,
        "account_login": conn.account_login,
        "is_active": bool(conn.is_active),
        "status": conn.status,
        "credential_id": conn.credential_id,
    }


def normalize_bridge_broker(value: Optional[str]) -> str:
    b = (value or "mt5").strip().lower() or "mt5"
    if b not in BRIDGE_BROKERS:
        raise ConnectionInputError("Invalid broker.")
    return b


def _find(session: Session, *, broker: str, account_login: str) -> Optional[BrokerConnection]:
    return (
        session.query(BrokerConnection)
        .filter(BrokerConnection.broker == broker, BrokerConnection.account_login == account_login)
        .one_or_none()
    )


def connect_bridge(
    session: Session,
    *,
    user_id: str,
    account_login: Any,
    broker: Optional[str] = None,
    sync_url: str = "",
    now: dt.datetime | None = None,
) -> BridgeConnectResult:
    """
    Create or re-key the bridge connection for (broker, account_login).

    A new key is minted on every call, which invalidates the previous one. The
    pair is owned by exactly one user; another user's row is never touched.
    """
    b = normalize_bridge_broker(broker)
    login = str(account_login if account_login is not None else "").strip()
    if not login:
        raise ConnectionInputError("Missing account_login.")

    existing = _find(session, broker=b, account_login=login)
    if existing is not None and existing.user_id != user_id:
        raise ConnectionConflictError("This account is already connected to a different user.")

    now = now or utcnow()
    issued = generate_sync_key()
    old = _snapshot(existing) if existing is not None else None
    if existing is None:
        conn = BrokerConnection(
            user_id=user_id,
            broker=b,
            account_login=login,
            credential_id=issued.key_id,
            credential_hash=issued.hashed,
            is_active=True,
            status="connected",
            created_at=now,
            updated_at=now,
        )
        session.add(conn)
    else:
        conn = existing
        conn.credential_id = issued.key_id
        conn.credential_hash = issued.hashed
        conn.is_active = True
        conn.status = "connected"
        conn.updated_at = now

    try:
        session.flush()
    except IntegrityError as e:
        session.rollback()
        raise ConnectionConflictError("This account is already connected to a different user.") from e

    log_change(
        session,
        actor=user_id,
        action="CONNECT" if old is None else "RECONNECT",
        entity="BrokerConnection",
        entity_id=str(conn.id),
        old=old,
        new=_snapshot(conn),
        note="Bridge sync key issued",
    )
    session.commit()
    log.info("Bridge connection ready: id=%s broker=%s user=%s", conn.id, b, user_id)
    return BridgeConnectResult(sync_key=issued.plaintext, sync_url=sync_url, connection=conn, connected_at=now)


def disconnect(session: Session, *, user_id: str, now: dt.datetime | None = None) -> int:
    """Soft-deactivate every active connection of the user. Rows are kept for dedup history."""
    now = now or utcnow()
    conns = (
        session.query(BrokerConnection)
        .filter(BrokerConnection.user_id == user_id, BrokerConnection.is_active.is_(True))
        .all()
    )
    for conn in conns:
        conn.is_active = False
        conn.updated_at = now
        log_change(
            session,
            actor=user_id,
            action="DISCONNECT",
            entity="BrokerConnection",
            entity_id=str(conn.id),
            old={"is_active": True},
            new={"is_active": False},
        )
    session.commit()
    return len(conns)


def connection_status(session: Session, *, user_id: str) -> Optional[BrokerConnection]:
    return (
        session.query(BrokerConnection)
        .filter(BrokerConnection.user_id == user_id, BrokerConnection.is_active.is_(True))
        .order_by(BrokerConnection.updated_at.desc(), BrokerConnection.id.desc())
        .first()
    )


def list_connections(session: Session, *, user_id: str, active_only: bool = True) -> list[BrokerConnection]:
    q = session.query(BrokerConnection).filter(BrokerConnection.user_id == user_id)
    if active_only:
        q = q.filter(BrokerConnection.is_active.is_(True))
    return q.order_by(BrokerConnection.updated_at.desc(), BrokerConnection.id.desc()).all()


def get_user_connection(session: Session, *, user_id: str, connection_id: Any) -> BrokerConnection:
    try:
        cid = int(connection_id)
    except (TypeError, ValueError) as e:
        raise ConnectionNotFoundError("Connection not found.") from e
    conn = (
        session.query(BrokerConnection)
        .filter(BrokerConnection.id == cid, BrokerConnection.user_id == user_id)
        .one_or_none()
    )
    if conn is None:
        raise ConnectionNotFoundError("Connection not found.")
    return conn


def verify_sync_key(session: Session, sync_key: Optional[str]) -> Optional[BrokerConnection]:
    """Resolve a presented sync key to its connection by hash comparison. Inactive rows are returned too."""
    parts = split_sync_key(sync_key)
    if parts is None:
        return None
    key_id, secret = parts
    conn = session.query(BrokerConnection).filter(BrokerConnection.credential_id == key_id).one_or_none()
    if conn is None:
        return None
    if not verify_secret(secret, conn.credential_hash):
        return None
    return conn


def fnv1a32(value: str) -> int:
    # Hashes UTF-16 code units so non-BMP characters match browser-side hashing.
    raw = value.encode("utf-16-le")
    h = 0x811C9DC5
    for i in range(0, len(raw), 2):
        h ^= raw[i] | (raw[i + 1] << 8)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def magic_for_connection(*, user_id: str, platform: str, environment: str, server: str, login: str) -> int:
    """Stable, non-zero 31-bit MetaTrader magic number for this connection."""
    seed = f"tj:{user_id}:{platform}:{environment}:{server}:{login}"
    return (fnv1a32(seed) % 2147483646) + 1


def _deploy_status(state: Optional[str]) -> Optional[str]:
    s = (state or "").upper()
    if s == "DEPLOYED":
        return "connected"
    if s == "DEPLOY_FAILED":
        return "error"
    return None


def wait_for_deployed(
    client: Any,
    account_id: str,
    *,
    attempts: int = 10,
    interval_s: float = 2.0,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> str:
    for i in range(max(1, int(attempts))):
        account = client.get_account(account_id) or {}
        status = _deploy_status(account.get("state") if isinstance(account, dict) else None)
        if status is not None:
            return status
        if i + 1 < attempts:
            sleep_fn(interval_s)
    return "deploying"


def connect_metaapi(
    session: Session,
    *,
    user_id: str,
    platform: Optional[str],
    environment: Optional[str],
    server: Optional[str],
    login: Any,
    password: Optional[str],
    client: Any,
    cloud_type: Optional[str] = None,
    deploy_attempts: int = 10,
    sleep_fn: Callable[[float], None] = time.sleep,
    now: dt.datetime | None = None,
) -> MetaApiConnectResult:
    """
    Provision (or reuse) a MetaApi cloud account for a trading login.

    The trading password is forwarded to the provisioning API only; it is never
    stored or logged.
    """
    plat = (platform or "").strip().lower()
    env = (environment or "").strip().lower()
    srv = (server or "").strip()
    lg = str(login if login is not None else "").strip()
    ctype = (cloud_type or "cloud-g2").strip().lower()
    if not srv or not lg or not password or plat not in METAAPI_PLATFORMS or env not in METAAPI_ENVIRONMENTS:
        raise ConnectionInputError("Missing platform, environment (demo/live), server, login, or password.")
    if ctype not in METAAPI_CLOUD_TYPES:
        raise ConnectionInputError('Invalid MetaApi cloud type. Use "cloud-g1" or "cloud-g2".')

    now = now or utcnow()
    existing = _find(session, broker=METAAPI_BROKER, account_login=lg)
    if existing is not None and existing.user_id != user_id:
        raise ConnectionConflictError("This account is already connected to a different user.")
    if (
        existing is not None
        and existing.metaapi_account_id
        and existing.server == srv
        and existing.platform == plat
        and existing.environment == env
    ):
        if not existing.is_active:
            existing.is_active = True
            existing.updated_at = now
            session.commit()
        return MetaApiConnectResult(connection=existing, reused=True)

    name = f"TJ {user_id} {plat.upper()} {env.upper()} {lg}@{srv}"
    magic = magic_for_connection(user_id=user_id, platform=plat, environment=env, server=srv, login=lg)
    log.info("MetaApi connect: creating account user=%s platform=%s env=%s server=%s", user_id, plat, env, srv)
    account_id = client.create_account(
        login=lg,
        password=password,
        server=srv,
        platform=plat,
        name=name,
        cloud_type=ctype,
        magic=magic,
    )

    old = _snapshot(existing) if existing is not None else None
    conn = existing or BrokerConnection(user_id=user_id, broker=METAAPI_BROKER, account_login=lg, created_at=now)
    conn.metaapi_account_id = account_id
    conn.platform = plat
    conn.environment = env
    conn.server = srv
    conn.is_active = True
    conn.status = "deploying"
    conn.updated_at = now
    if existing is None:
        session.add(conn)
    try:
        session.flush()
    except IntegrityError as e:
        session.rollback()
        raise ConnectionConflictError("This account is already connected to a different user.") from e
    session.commit()

    client.deploy_account(account_id)
    conn.status = wait_for_deployed(client, account_id, attempts=deploy_attempts, sleep_fn=sleep_fn)
    conn.updated_at = utcnow()
    log_change(
        session,
        actor=user_id,
        action="CONNECT" if old is None else "RECONNECT",
        entity="BrokerConnection",
        entity_id=str(conn.id),
        old=old,
        new=_snapshot(conn) | {"metaapi_account_id": account_id},
        note="MetaApi account provisioned",
    )
    session.commit()
    log.info("MetaApi connect done: connection=%s status=%s", conn.id, conn.status)
    return MetaApiConnectResult(connection=conn, reused=False)
