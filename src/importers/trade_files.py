from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import re
from pathlib import Path
from typing import Any, Optional

from bs4 import BeautifulSoup
from sqlalchemy.orm import Session

from src.core.identity import stable_ticket
from src.core.normalizer import (
    NormalizedTrade,
    normalize_side,
    parse_localized_number,
    parse_number,
    parse_trade_time,
)
from src.core.sync_ingest import SyncOutcome, ingest_records
from src.db.audit import log_change


log = logging.getLogger(__name__)

_DELIMITERS = (",", ";", "\t")
_MT_SPLIT_RE = re.compile(r"\t+|\s{2,}")
_WS_RE = re.compile(r"\s+")

SOURCE_LABELS = {
    "csv": "Imported from CSV",
    "mt_report": "Imported from MT4/MT5",
    "mt_html": "Imported from MT4/MT5",
}


def detect_delimiter(header_line: str) -> str:
    counts = [(header_line.count(d), d) for d in _DELIMITERS]
    best = max(counts, key=lambda c: c[0])
    return best[1] if best[0] > 0 else ","


def _find_column(headers: list[str], needles: tuple[str, ...], *, exclude: tuple[str, ...] = ()) -> Optional[int]:
    for i, h in enumerate(headers):
        if any(n in h for n in needles) and not any(x in h for x in exclude):
            return i
    return None


def _cell(parts: list[str], idx: Optional[int]) -> str:
    if idx is None or idx >= len(parts):
        return ""
    return parts[idx].strip()


def parse_csv_trades(content: str) -> list[dict[str, Any]]:
    """
    Rows of a spreadsheet export as normalizer-ready records.

    Columns are found by header substring. Without a profit column the P&L is
    left to the projector. Rows without a ticket get a content-derived one.
    """
    lines = [ln for ln in content.splitlines() if ln.strip()]
    if len(lines) < 2:
        return []
    delimiter = detect_delimiter(lines[0])
    rows = list(csv.reader(io.StringIO("\n".join(lines)), delimiter=delimiter))
    headers = [h.strip().lower() for h in rows[0]]

    idx_ticket = _find_column(headers, ("ticket", "order", "deal"))
    idx_date = _find_column(headers, ("date", "time"))
    # The first timestamp column is usually "Open Time"; a later "Close Time" is kept apart.
    date_key = "close_time" if idx_date is not None and "close" in headers[idx_date] else "open_time"
    idx_close = next(
        (i for i, h in enumerate(headers) if "close" in h and ("time" in h or "date" in h) and i != idx_date),
        None,
    )
    idx_symbol = _find_column(headers, ("symbol", "instrument"))
    idx_type = _find_column(headers, ("type", "side"))
    idx_entry = _find_column(headers, ("entry", "open"), exclude=("date", "time"))
    if idx_entry is None:
        idx_entry = _find_column(headers, ("entry", "open"))
    idx_exit = _find_column(headers, ("exit", "close"), exclude=("date", "time"))
    if idx_exit is None:
        idx_exit = _find_column(headers, ("exit", "close"))
    idx_size = _find_column(headers, ("size", "volume", "quantity"))
    idx_profit = _find_column(headers, ("profit", "p&l", "pnl"))

    out: list[dict[str, Any]] = []
    for parts in rows[1:]:
        rec: dict[str, Any] = {
            "symbol": _cell(parts, idx_symbol),
            "type": _cell(parts, idx_type),
            "open_price": _cell(parts, idx_entry),
            "close_price": _cell(parts, idx_exit),
            "volume": _cell(parts, idx_size),
            date_key: _cell(parts, idx_date),
        }
        if idx_close is not None:
            rec["close_time"] = _cell(parts, idx_close)
        if idx_profit is not None:
            rec["profit"] = _cell(parts, idx_profit)
        ticket = _cell(parts, idx_ticket)
        rec["ticket"] = ticket or stable_ticket(
            [_cell(parts, idx_date), rec["symbol"], rec["type"], rec["open_price"], rec["close_price"], rec["volume"], rec.get("profit")]
        )
        for k in ("open_price", "close_price", "volume", "profit"):
            if k in rec:
                rec[k] = parse_localized_number(rec[k])
        out.append(rec)
    return out


def parse_mt_report(content: str) -> list[dict[str, Any]]:
    """
    Plain-text MT4/MT5 account history.

    Layout: ticket, open time, type, size, item, open price, S/L, T/P,
    close time, close price, ..., profit.
    """
    lines = content.splitlines()
    start = 0
    for i, line in enumerate(lines):
        if "Ticket" in line or "Order" in line or "Deal" in line:
            start = i + 1
            break

    out: list[dict[str, Any]] = []
    for line in lines[start:]:
        s = line.strip()
        if not s:
            continue
        parts = [p.strip() for p in _MT_SPLIT_RE.split(s)]
        if len(parts) < 10:
            continue
        profit = parse_number(parts[-1])
        if profit is None:
            continue
        out.append(
            {
                "ticket": parts[0],
                "open_time": parts[1],
                "type": parts[2],
                "volume": parts[3],
                "symbol": parts[4],
                "open_price": parts[5],
                "close_time": parts[8],
                "close_price": parts[9],
                "profit": profit,
            }
        )
    return out




def read_statement(raw: bytes) -> str:
    """Decode an exported statement; MT terminals write HTML reports as UTF-16."""
    if raw[:2] in (b"\xff\xfe", b"\xfe\xff"):
        return raw.decode("utf-16", errors="ignore")
    head = raw[:512]
    # BOM-less UTF-16LE: every other byte of ASCII markup is NUL.
    if head and head.count(b"\x00") > len(head) // 4:
        return raw.decode("utf-16-le", errors="ignore")
    return raw.decode("utf-8-sig", errors="ignore")


def _html_tables(content: str) -> list[list[list[str]]]:
    soup = BeautifulSoup(content, "html.parser")
    tables = []
    for table in soup.find_all("table"):
        rows = []
        for tr in table.find_all("tr"):
            rows.append([c.get_text(" ", strip=True).replace("\u00a0", " ").strip() for c in tr.find_all(["th", "td"])])
        tables.append(rows)
    return tables


def _header_index(headers: list[str], *patterns: str) -> Optional[int]:
    for i, h in enumerate(headers):
        if any(re.search(p, h) for p in patterns):
            return i
    return None


def _price_columns(headers: list[str], idx_close_time: Optional[int]) -> tuple[Optional[int], Optional[int]]:
    open_idx = _header_index(headers, r"open price")
    if open_idx is None:
        open_idx = _header_index(headers, r"^open$")
    close_idx = _header_index(headers, r"close price")
    if close_idx is None:
        close_idx = _header_index(headers, r"^close$", r"close.*price")
    if open_idx is not None and close_idx is not None:
        return open_idx, close_idx

    # MT4 statements carry two bare "Price" columns split by "Close Time".
    prices = [i for i, h in enumerate(headers) if "price" in h]
    if len(prices) >= 2:
        if idx_close_time is not None:
            before = next((i for i in reversed(prices) if i < idx_close_time), None)
            after = next((i for i in prices if i > idx_close_time), None)
            return before, after if after is not None else prices[1]
        return prices[0], prices[1]
    any_price = _header_index(headers, r"price")
    return any_price, any_price


def _positions_table(rows: list[list[str]]) -> list[dict[str, Any]]:
    for hi, header_cells in enumerate(rows):
        headers = [_WS_RE.sub(" ", h.strip().lower()) for h in header_cells]
        if len(headers) < 6:
            continue
        if _header_index(headers, r"ticket", r"order", r"deal", r"position") is None:
            continue
        if _header_index(headers, r"profit", r"p&l", r"pnl") is None:
            continue
        if _header_index(headers, r"symbol", r"item", r"instrument") is None:
            continue

        idx_ticket = _header_index(headers, r"ticket", r"order", r"deal", r"position")
        idx_open_time = _header_index(headers, r"open time", r"^time$")
        if idx_open_time is None:
            idx_open_time = _header_index(headers, r"time")
        idx_close_time = _header_index(headers, r"close time")
        if idx_close_time is None:
            # MT5 positions repeat a bare "Time" header for the close.
            bare = [i for i, h in enumerate(headers) if h == "time"]
            idx_close_time = bare[1] if len(bare) > 1 else None
        idx_type = _header_index(headers, r"type", r"action", r"side")
        idx_size = _header_index(headers, r"size", r"volume", r"lots?")
        idx_symbol = _header_index(headers, r"symbol", r"item", r"instrument")
        idx_profit = _header_index(headers, r"profit", r"p&l", r"pnl")
        idx_open_price, idx_close_price = _price_columns(headers, idx_close_time)
        required = (idx_ticket, idx_type, idx_size, idx_symbol, idx_open_price, idx_close_price, idx_profit)
        if any(i is None for i in required) or idx_open_price == idx_close_price:
            continue

        out: list[dict[str, Any]] = []
        for cells in rows[hi + 1:]:
            if len(cells) < len(headers):
                continue
            ticket = _cell(cells, idx_ticket)
            side = normalize_side(_cell(cells, idx_type))
            if not ticket or not _cell(cells, idx_symbol) or side is None:
                continue
            nums = [parse_number(_cell(cells, i)) for i in (idx_size, idx_open_price, idx_close_price, idx_profit)]
            if any(n is None for n in nums):
                continue
            volume, entry, exit_, profit = nums
            out.append(
                {
                    "ticket": ticket,
                    "symbol": _cell(cells, idx_symbol),
                    "type": side,
                    "volume": volume,
                    "open_price": entry,
                    "close_price": exit_,
                    "profit": profit,
                    "open_time": _cell(cells, idx_open_time),
                    "close_time": _cell(cells, idx_close_time),
                }
            )
        if out:
            return out
    return []


def _weighted_price(deals: list[dict[str, Any]]) -> Optional[float]:
    total = sum(d["volume"] for d in deals)
    if not total:
        return None
    return sum(d["price"] * d["volume"] for d in deals) / total


def _deal_sort_key(deal: dict[str, Any]) -> dt.datetime:
    return parse_trade_time(deal["time"]) or dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def _deals_table(rows: list[list[str]]) -> list[dict[str, Any]]:
    """MT5 "Deals" section: in/out legs grouped into one trade per position."""
    for hi, header_cells in enumerate(rows):
        headers = [_WS_RE.sub(" ", h.strip().lower()) for h in header_cells]
        if len(headers) < 6:
            continue
        if _header_index(headers, r"deal", r"position") is None:
            continue

        idx_time = _header_index(headers, r"^time$", r"time")
        idx_type = _header_index(headers, r"^type$", r"type", r"side", r"action")
        idx_symbol = _header_index(headers, r"symbol", r"item", r"instrument")
        idx_volume = _header_index(headers, r"volume", r"lots?", r"size")
        idx_price = _header_index(headers, r"^price$", r"price")
        idx_profit = _header_index(headers, r"profit", r"p&l", r"pnl")
        if any(i is None for i in (idx_time, idx_type, idx_symbol, idx_volume, idx_price, idx_profit)):
            continue
        idx_entry = _header_index(headers, r"^entry$", r"entry", r"direction")
        idx_position = _header_index(headers, r"position", r"pos id")
        idx_order = _header_index(headers, r"order", r"^id$")
        idx_commission = _header_index(headers, r"commission")
        idx_swap = _header_index(headers, r"swap")

        deals: list[dict[str, Any]] = []
        for cells in rows[hi + 1:]:
            if len(cells) < len(headers):
                continue
            when = _cell(cells, idx_time)
            side = normalize_side(_cell(cells, idx_type))
            if not when or not _cell(cells, idx_symbol) or side is None:
                continue
            volume = parse_number(_cell(cells, idx_volume))
            price = parse_number(_cell(cells, idx_price))
            profit = parse_number(_cell(cells, idx_profit))
            if volume is None or price is None or profit is None:
                continue
            position = _cell(cells, idx_position if idx_position is not None else idx_order)
            if not position:
                continue
            entry = _cell(cells, idx_entry).lower()
            if "in" in entry and "out" not in entry:
                leg = "in"
            elif "out" in entry and "in" not in entry:
                leg = "out"
            else:
                leg = "inout"
            deals.append(
                {
                    "position": position,
                    "time": when,
                    "symbol": _cell(cells, idx_symbol),
                    "side": side,
                    "volume": volume,
                    "price": price,
                    "profit": profit
                    + (parse_number(_cell(cells, idx_commission)) or 0.0)
                    + (parse_number(_cell(cells, idx_swap)) or 0.0),
                    "leg": leg,
                }
            )

        groups: dict[str, list[dict[str, Any]]] = {}
        for d in deals:
            groups.setdefault(d["position"], []).append(d)
        out: list[dict[str, Any]] = []
        for position, group in groups.items():
            group.sort(key=_deal_sort_key)
            entries = [d for d in group if d["leg"] in ("in", "inout")]
            exits = [d for d in group if d["leg"] in ("out", "inout")]
            if not entries or not exits:
                continue
            entry_price = _weighted_price(entries)
            exit_price = _weighted_price(exits)
            if entry_price is None or exit_price is None:
                continue
            out.append(
                {
                    "ticket": position,
                    "position_id": position,
                    "symbol": entries[0]["symbol"],
                    "type": entries[0]["side"],
                    "open_price": entry_price,
                    "close_price": exit_price,
                    "volume": sum(d["volume"] for d in entries),
                    "profit": sum(d["profit"] for d in group),
                    "open_time": entries[0]["time"],
                    "close_time": exits[-1]["time"],
                }
            )
        if out:
            return out
    return []


def parse_mt_html_report(content: str) -> list[dict[str, Any]]:
    """
    MT4/MT5 HTML statement.

    Columns are picked by header pattern. A closed-positions table wins; an
    MT5 deals table is the fallback, its legs folded into one trade per position.
    """
    tables = _html_tables(content)
    for rows in tables:
        found = _positions_table(rows)
        if found:
            return found
    for rows in tables:
        found = _deals_table(rows)
        if found:
            return found
    return []


def detect_format(filename: Optional[str], content: str) -> str:
    suffix = Path(filename or "").suffix.lower()
    if suffix == ".csv":
        return "csv"
    if suffix in {".htm", ".html"}:
        return "mt_html"
    if suffix in {".txt", ".log"}:
        return "mt_report"
    lead = content.lstrip()[:512].lower()
    if lead.startswith("<!doctype") or lead.startswith("<html") or "<table" in lead:
        return "mt_html"
    # MT statements often carry a title line above the column header.
    head = [ln for ln in content.splitlines() if ln.strip()][:5]
    for line in head:
        if any(k in line for k in ("Ticket", "Order", "Deal")):
            return "mt_report" if line.count(",") < 2 and line.count(";") < 2 else "csv"
    return "csv"


def _note_for(source: str) -> Any:
    label = SOURCE_LABELS.get(source, "Imported")

    def _note(fields: NormalizedTrade) -> str:
        if fields.ticket.startswith("HASH:"):
            return label
        return f"{label} - Ticket: {fields.ticket}"

    return _note


def import_trade_file(
    session: Session,
    *,
    user_id: str,
    content: str,
    filename: Optional[str] = None,
    fmt: Optional[str] = None,
    broker: Optional[str] = None,
    account_login: Optional[str] = None,
) -> SyncOutcome:
    """Parse a CSV, MT text report or MT HTML statement and ingest it. Replaying the same file is a no-op."""
    source = (fmt or detect_format(filename, content)).strip().lower()
    source = {"mt": "mt_report", "html": "mt_html"}.get(source, source)
    if source not in SOURCE_LABELS:
        raise ValueError(f"Unsupported file format: {fmt}")
    parsers = {"csv": parse_csv_trades, "mt_report": parse_mt_report, "mt_html": parse_mt_html_report}
    records = parsers[source](content)

    outcome = ingest_records(
        session,
        user_id=user_id,
        records=records,
        source=source,
        broker=broker,
        account_login=account_login,
        notes_fn=_note_for(source),
    )
    log_change(
        session,
        actor=user_id,
        action="IMPORT",
        entity="Trade",
        entity_id=None,
        new=outcome.to_dict(),
        note=f"{source} file {filename or ''}".strip(),
    )
    session.commit()
    log.info("File import done: user=%s source=%s upserted=%s", user_id, source, outcome.upserted)
    return outcome
