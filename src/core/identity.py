from __future__ import annotations

import hashlib
from typing import Any


def account_scope(broker: str | None, account_login: Any) -> str:
    """
    Broker-scoped account identifier used as the middle component of trade ids.

    EA pushes scope by the bridge broker (`mt5:<login>`), MetaApi pulls by
    `metaapi:<login>`. A file replay passing the bridge broker and login lands
    on the same ids as the EA pushes for that account.
    """
    b = (broker or "").strip().lower() or "manual"
    login = str(account_login if account_login is not None else "").strip()
    return f"{b}:{login}"


def resolve_trade_id(user_id: Any, scope: str, ticket: Any) -> str:
    """
    Deterministic, UUID-shaped trade id for (user, account scope, ticket).

    sha256 over the joined seed, truncated to 16 bytes, with the version nibble
    forced to 4 and the RFC 4122 variant bits set.
    """
    seed = f"{user_id}:{scope}:{ticket}"
    b = bytearray(hashlib.sha256(seed.encode("utf-8")).digest()[:16])
    b[6] = (b[6] & 0x0F) | 0x40
    b[8] = (b[8] & 0x3F) | 0x80
    h = b.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def stable_ticket(parts: list[Any]) -> str:
    """Content-derived ticket for rows that arrive without a broker ticket."""
    h = hashlib.sha256("|".join("" if p is None else str(p) for p in parts).encode("utf-8")).hexdigest()
    return f"HASH:{h[:32]}"
