from __future__ import annotations

import datetime as dt
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from src.utils.time import parse_datetime


TICKET_KEYS = ("ticket", "order", "deal", "id")
SYMBOL_KEYS = ("symbol", "item", "instrument")
SIDE_KEYS = ("type", "side", "action")
ENTRY_KEYS = ("open_price", "entry", "openPrice", "price_open", "price")
EXIT_KEYS = ("close_price", "exit", "closePrice", "price_close", "close")
QUANTITY_KEYS = ("volume", "lots", "size", "quantity")
PNL_KEYS = ("profit", "pnl", "pl")
COMMISSION_KEYS = ("commission", "fee", "fees")
SWAP_KEYS = ("swap", "rollover")
OPEN_TIME_KEYS = ("open_time", "openTime", "time", "open")
CLOSE_TIME_KEYS = ("close_time", "closeTime", "close")
POSITION_KEYS = ("position_id", "positionId", "position")

_NON_NUMERIC_RE = re.compile(r"[^0-9.+\-]")
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")
_MT_DATE_RE = re.compile(r"^(\d{4})[.\-/](\d{1,2})[.\-/](\d{1,2})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?")


@dataclass(frozen=True)
class NormalizedTrade:
    ticket: str
    symbol: str
    side: str  # long|short
    entry: float
    exit: float
    quantity: float
    date: dt.date
    profit: Optional[float] = None
    commission: Optional[float] = None
    swap: Optional[float] = None
    open_time: Optional[dt.datetime] = None
    close_time: Optional[dt.datetime] = None
    position_id: Optional[str] = None
    comment: Optional[str] = None


def to_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        s = value.strip()
        return s or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    return None


def parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        out = float(value)
        return out if math.isfinite(out) else None
    if not isinstance(value, str):
        return None
    cleaned = _NON_NUMERIC_RE.sub("", value)
    if not cleaned:
        return None
    try:
        out = float(cleaned)
    except ValueError:
        return None
    return out if math.isfinite(out) else None


def parse_localized_number(value: Any) -> Optional[float]:
    """
    Like parse_number, but resolves thousands/decimal separators found in
    spreadsheet exports: "1,234.56", "1.234,56", "1234,56".
    """
    if not isinstance(value, str):
        return parse_number(value)
    s = value.strip().replace("\u00a0", "").replace(" ", "")
    if not s:
        return None
    negative = s.startswith("(") and s.endswith(")")
    has_comma = "," in s
    has_dot = "." in s
    if has_comma and has_dot:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif has_comma:
        head, _, tail = s.rpartition(",")
        if s.count(",") == 1 and len(tail) != 3:
            s = f"{head}.{tail}"
        else:
            s = s.replace(",", "")
    out = parse_number(s)
    if out is not None and negative:
        out = -abs(out)
    return out


def parse_trade_date(value: Any) -> Optional[dt.date]:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    raw = to_text(value)
    if raw is None:
        return None
    m = _MT_DATE_RE.match(raw)
    if m:
        try:
            return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    d = parse_datetime(raw)
    if d is not None:
        return d.date()
    try:
        return dt.date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_trade_time(value: Any) -> Optional[dt.datetime]:
    """Best-effort timestamp for provenance columns; MT times are taken as UTC."""
    raw = to_text(value)
    if raw is None:
        return None
    d = parse_datetime(raw)
    if d is not None:
        return d if d.tzinfo is not None else d.replace(tzinfo=dt.timezone.utc)
    m = _MT_DATE_RE.match(raw)
    if m:
        try:
            return dt.datetime(
                int(m.group(1)),
                int(m.group(2)),
                int(m.group(3)),
                int(m.group(4) or 0),
                int(m.group(5) or 0),
                int(m.group(6) or 0),
                tzinfo=dt.timezone.utc,
            )
        except ValueError:
            return None
    return None


def normalize_symbol(value: Any) -> Optional[str]:
    raw = to_text(value)
    if raw is None:
        return None
    out = _NON_ALNUM_RE.sub("", raw).upper()
    return out or None


def normalize_side(value: Any) -> Optional[str]:
    raw = to_text(value)
    if raw is None:
        return None
    lower = raw.lower()
    if "sell" in lower or "short" in lower:
        return "short"
    if "buy" in lower or "long" in lower:
        return "long"
    return None


def pick_text(record: Mapping[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for k in keys:
        v = to_text(record.get(k))
        if v:
            return v
    return None


def pick_number(record: Mapping[str, Any], keys: tuple[str, ...]) -> Optional[float]:
    for k in keys:
        v = parse_number(record.get(k))
        if v is not None:
            return v
    return None


def pick_date(record: Mapping[str, Any], keys: tuple[str, ...]) -> tuple[Optional[str], Optional[dt.date]]:
    # "close" and "time" double as price/timestamp aliases; skip values that are not dates.
    for k in keys:
        raw = to_text(record.get(k))
        if not raw:
            continue
        d = parse_trade_date(raw)
        if d is not None:
            return raw, d
    return None, None


def normalize_record(record: Any) -> Optional[NormalizedTrade]:
    """
    Extract canonical trade fields from a loosely-typed record.

    Returns None when any required field is missing or unparsable; a bad record
    never raises.
    """
    if not isinstance(record, Mapping):
        return None

    ticket = pick_text(record, TICKET_KEYS)
    symbol = normalize_symbol(pick_text(record, SYMBOL_KEYS))
    side = normalize_side(pick_text(record, SIDE_KEYS))
    if not ticket or not symbol or not side:
        return None

    entry = pick_number(record, ENTRY_KEYS)
    exit_ = pick_number(record, EXIT_KEYS)
    quantity = pick_number(record, QUANTITY_KEYS)
    if entry is None or exit_ is None or quantity is None:
        return None

    close_raw, close_date = pick_date(record, CLOSE_TIME_KEYS)
    open_raw, open_date = pick_date(record, OPEN_TIME_KEYS)
    date = close_date or open_date
    if date is None:
        return None

    return NormalizedTrade(
        ticket=ticket,
        symbol=symbol,
        side=side,
        entry=entry,
        exit=exit_,
        quantity=quantity,
        date=date,
        profit=pick_number(record, PNL_KEYS),
        commission=pick_number(record, COMMISSION_KEYS),
        swap=pick_number(record, SWAP_KEYS),
        open_time=parse_trade_time(open_raw),
        close_time=parse_trade_time(close_raw),
        position_id=pick_text(record, POSITION_KEYS),
        comment=pick_text(record, ("comment", "notes")),
    )
