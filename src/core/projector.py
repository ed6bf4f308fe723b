from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Optional

from src.core.identity import resolve_trade_id
from src.core.normalizer import NormalizedTrade


@dataclass(frozen=True)
class PnL:
    pnl: float
    pnl_percentage: float
    outcome: str


@dataclass(frozen=True)
class TradeRow:
    """Canonical trade as written to the `trades` table."""

    id: str
    user_id: str
    date: dt.date
    symbol: str
    type: str
    entry: float
    exit: float
    quantity: float
    outcome: str
    pnl: float
    pnl_percentage: float
    notes: Optional[str] = None
    source: Optional[str] = None
    broker: Optional[str] = None
    account_login: Optional[str] = None
    ticket: Optional[str] = None
    position_id: Optional[str] = None
    open_time: Optional[dt.datetime] = None
    close_time: Optional[dt.datetime] = None
    commission: Optional[float] = None
    swap: Optional[float] = None

    def values(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


def outcome_for(pnl: float) -> str:
    if pnl > 0:
        return "win"
    if pnl < 0:
        return "loss"
    return "breakeven"


def compute_pnl(entry: float, exit: float, quantity: float, side: str) -> float:
    if side == "short":
        return (entry - exit) * quantity
    return (exit - entry) * quantity


def pnl_percentage(entry: float, exit: float, side: str) -> float:
    if entry == 0 or not math.isfinite(entry):
        return 0.0
    raw = ((exit - entry) / entry) * 100.0
    out = -raw if side == "short" else raw
    return out if math.isfinite(out) else 0.0


def project(entry: float, exit: float, quantity: float, side: str, *, reported_pnl: Optional[float] = None) -> PnL:
    """
    P&L for one trade. A broker-reported figure wins over the computed estimate.
    """
    pnl = float(reported_pnl) if reported_pnl is not None else compute_pnl(entry, exit, quantity, side)
    if not math.isfinite(pnl):
        pnl = 0.0
    return PnL(pnl=pnl, pnl_percentage=pnl_percentage(entry, exit, side), outcome=outcome_for(pnl))


def reported_pnl(fields: NormalizedTrade) -> Optional[float]:
    """Broker ledger P&L (profit + commission + swap) when the source carries a profit value."""
    if fields.profit is None:
        return None
    return fields.profit + (fields.commission or 0.0) + (fields.swap or 0.0)


def build_trade_row(
    fields: NormalizedTrade,
    *,
    user_id: str,
    scope: str,
    source: str,
    broker: Optional[str] = None,
    account_login: Optional[str] = None,
    notes: Optional[str] = None,
) -> TradeRow:
    result = project(fields.entry, fields.exit, fields.quantity, fields.side, reported_pnl=reported_pnl(fields))
    return TradeRow(
        id=resolve_trade_id(user_id, scope, fields.ticket),
        user_id=user_id,
        date=fields.date,
        symbol=fields.symbol,
        type=fields.side,
        entry=fields.entry,
        exit=fields.exit,
        quantity=fields.quantity,
        outcome=result.outcome,
        pnl=result.pnl,
        pnl_percentage=result.pnl_percentage,
        notes=notes if notes is not None else fields.comment,
        source=source,
        broker=broker,
        account_login=account_login,
        ticket=fields.ticket,
        position_id=fields.position_id,
        open_time=fields.open_time,
        close_time=fields.close_time,
        commission=fields.commission,
        swap=fields.swap,
    )
