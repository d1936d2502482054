"""
Canonical bid history for one lot.

The site's bid table is a poor clock: recent rows carry an exact time, older
rows only a (sometimes guessed) calendar day, and the table can lag the live
price widget. Every poll we therefore merge what the table shows into the
history we already hold:

  • rows matching an existing entry (same amount, close enough in time) only
    ever *improve* that entry's timestamp precision, never degrade it;
  • unmatched rows are appended;
  • a final collapse pass guarantees each (amount, time bucket) appears once.

Precision ranks: observed (3) > scraped-time (2) > scraped-date (1) > unknown (0).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from lotwatch.core import Bid, BidSource, RawBidRow
from lotwatch.settings import MatchingCfg

log = logging.getLogger("lotwatch.history")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_amount(value: Any) -> Optional[Decimal]:
    """Finite, non-negative Decimal or ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_bid(row: RawBidRow) -> Optional[Bid]:
    amount = parse_amount(getattr(row, "amount", None))
    if amount is None:
        return None
    text = getattr(row, "amount_text", None) or None
    when = getattr(row, "time_iso", None)
    day = getattr(row, "date_iso", None)
    if isinstance(when, datetime):
        return Bid(amount, text, time_iso=_as_utc(when), source=BidSource.SCRAPED_TIME)
    if isinstance(day, datetime):
        day = day.date()
    if isinstance(day, date):
        return Bid(amount, text, date_iso=day, source=BidSource.SCRAPED_DATE)
    return Bid(amount, text, source=BidSource.UNKNOWN)


def _sort_key(bid: Bid):
    eff = bid.effective_time
    return (eff is not None, eff or _EPOCH, bid.amount, -bid.rank)


def _eligible(existing: Bid, incoming: Bid, cfg: MatchingCfg) -> bool:
    if existing.amount != incoming.amount:
        return False
    a, b = existing.effective_time, incoming.effective_time
    if existing.time_iso is not None and incoming.time_iso is not None:
        return abs(a - b) <= timedelta(milliseconds=cfg.precise_window_ms)
    if a is None:
        # no time at all: the same amount with any time is an upgrade
        return True
    if b is None:
        return False
    if existing.date_only and incoming.date_only and existing.date_iso == incoming.date_iso:
        return True
    return abs(a - b) <= timedelta(milliseconds=cfg.coarse_window_ms)


def _best_candidate(bids: list[Bid], incoming: Bid, cfg: MatchingCfg) -> Optional[Bid]:
    best = None
    for bid in bids:
        if _eligible(bid, incoming, cfg) and (best is None or bid.rank > best.rank):
            best = bid
    return best


def _duplicates(a: Bid, b: Bid, cfg: MatchingCfg) -> bool:
    if a.amount != b.amount:
        return False
    ta, tb = a.effective_time, b.effective_time
    if ta is None or tb is None:
        return ta is None and tb is None
    if a.date_only and b.date_only:
        return a.date_iso == b.date_iso
    return abs(ta - tb) <= timedelta(milliseconds=cfg.precise_window_ms)


def _keep_better(kept: Bid, other: Bid) -> Bid:
    winner, loser = (other, kept) if other.rank > kept.rank else (kept, other)
    if winner.amount_text is None and loser.amount_text:
        winner = replace(winner, amount_text=loser.amount_text)
    return winner


def collapse(bids: Iterable[Bid], cfg: Optional[MatchingCfg] = None) -> list[Bid]:
    """Sort ascending and fold duplicates, keeping the most precise entry."""
    cfg = cfg or MatchingCfg()
    out: list[Bid] = []
    for bid in sorted(bids, key=_sort_key):
        for i in range(len(out) - 1, -1, -1):
            if _duplicates(out[i], bid, cfg):
                out[i] = _keep_better(out[i], bid)
                break
        else:
            out.append(bid)
    out.sort(key=_sort_key)
    return out


def merge_history(
    existing: Iterable[Bid],
    scraped: Iterable[RawBidRow],
    cfg: Optional[MatchingCfg] = None,
) -> tuple[list[Bid], bool]:
    """Merge scraped rows into ``existing``.

    Returns the new canonical list and a dirty flag telling the caller whether
    anything was added, upgraded or folded away (i.e. whether to persist).
    ``existing`` is never mutated.
    """
    cfg = cfg or MatchingCfg()
    working = [replace(b) for b in existing]
    dirty = False

    for row in scraped or ():
        incoming = _row_to_bid(row)
        if incoming is None:
            log.debug("dropping malformed bid row %r", row)
            continue
        cand = _best_candidate(working, incoming, cfg)
        if cand is None:
            working.append(incoming)
            dirty = True
            continue
        if incoming.rank > cand.rank:
            cand.time_iso = incoming.time_iso
            cand.date_iso = incoming.date_iso
            cand.source = incoming.source
            dirty = True
        if cand.amount_text is None and incoming.amount_text:
            cand.amount_text = incoming.amount_text
            dirty = True

    size = len(working)
    working = collapse(working, cfg)
    return working, dirty or len(working) != size


def reconcile(
    existing: Iterable[Bid],
    scraped: Iterable[RawBidRow],
    cfg: Optional[MatchingCfg] = None,
) -> list[Bid]:
    return merge_history(existing, scraped, cfg)[0]


# --------------------------------------------------------------------------- #
#  Observed bids
# --------------------------------------------------------------------------- #


def price_changed(previous: Optional[Decimal], new: Any) -> bool:
    price = parse_amount(new)
    return price is not None and (previous is None or price != previous)


def synthesize_observed(
    bids: Iterable[Bid],
    previous_price: Optional[Decimal],
    new_price: Any,
    now: datetime,
) -> tuple[list[Bid], bool]:
    """Record a live price move the bid table has not shown yet."""
    out = list(bids)
    price = parse_amount(new_price)
    if price is None or not price_changed(previous_price, price):
        return out, False
    if any(b.amount == price and b.time_iso is not None for b in out):
        return out, False
    out.append(Bid(amount=price, time_iso=_as_utc(now), source=BidSource.OBSERVED))
    out.sort(key=_sort_key)
    return out, True
