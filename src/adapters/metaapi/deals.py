from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, Optional

from src.core.normalizer import parse_number, to_text
from src.utils.time import iso_utc, parse_utc


ENTRY_IN = "DEAL_ENTRY_IN"


def is_closing_deal(entry_type: Optional[str]) -> bool:
    # Everything except a pure open counts: OUT, INOUT and OUT_BY all realize P&L.
    return (entry_type or "").upper() != ENTRY_IN


def deal_direction(type_field: Optional[str]) -> Optional[str]:
    t = (type_field or "").upper()
    if "BUY" in t:
        return "long"
    if "SELL" in t:
        return "short"
    return None


def _deal_time(deal: dict[str, Any]) -> dt.datetime:
    return parse_utc(deal.get("time")) or dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def group_by_position(deals: Iterable[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    """Deals keyed by position id (falling back to order id, then deal id), each list time-ordered."""
    groups: dict[str, list[dict[str, Any]]] = {}
    for d in deals:
        pid = to_text(d.get("positionId")) or to_text(d.get("orderId")) or to_text(d.get("id"))
        if not pid:
            continue
        groups.setdefault(pid, []).append(d)
    for pid in groups:
        groups[pid].sort(key=_deal_time)
    return groups


def _iso(value: Any) -> Optional[str]:
    d = parse_utc(value)
    if d is not None:
        return iso_utc(d)
    return to_text(value)


def deals_to_records(deals: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    One normalizer-ready record per closing deal.

    The opening deal of the position supplies the direction, entry price and
    open time. P&L is profit + commission + swap as reported by the broker.
    """
    out: list[dict[str, Any]] = []
    seen: set[tuple[str, str]] = set()
    for pid, group in group_by_position(deals).items():
        entry_deal = next((d for d in group if (to_text(d.get("entryType")) or "").upper() == ENTRY_IN), group[0])
        entry_price = parse_number(entry_deal.get("price"))
        if entry_price is None:
            entry_price = 0.0
        direction = deal_direction(to_text(entry_deal.get("type"))) or "long"
        open_time = _iso(entry_deal.get("time"))

        for d in group:
            ticket = to_text(d.get("id"))
            symbol = to_text(d.get("symbol"))
            entry_type = to_text(d.get("entryType"))
            close_time = _iso(d.get("time"))
            if not ticket or not symbol or not entry_type or not close_time:
                continue
            if not is_closing_deal(entry_type):
                continue
            key = (pid, ticket)
            if key in seen:
                continue
            seen.add(key)

            close_price = parse_number(d.get("price"))
            commission = parse_number(d.get("commission")) or 0.0
            swap = parse_number(d.get("swap")) or 0.0
            out.append(
                {
                    "ticket": ticket,
                    "position_id": pid,
                    "symbol": symbol,
                    "type": direction,
                    "open_price": entry_price,
                    "close_price": close_price if close_price is not None else entry_price,
                    "volume": parse_number(d.get("volume")) or 0.0,
                    "profit": parse_number(d.get("profit")) or 0.0,
                    "commission": commission or None,
                    "swap": swap or None,
                    "open_time": open_time,
                    "close_time": close_time,
                    "comment": f"Imported via MetaApi (deal {ticket}, position {pid})",
                }
            )
    return out
