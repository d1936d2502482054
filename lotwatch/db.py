# lotwatch/db.py
from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional, List

from sqlmodel import SQLModel, Field, create_engine, Session, select
from sqlalchemy import delete
from sqlalchemy.engine import Engine

from lotwatch.core import AlertState, Bid, BidSource, Listing, utcnow

log = logging.getLogger("lotwatch.db")


class ListingRecord(SQLModel, table=True):
    __tablename__ = "listing"
    id: str = Field(primary_key=True)
    url: str = Field(index=True)
    title: str
    display_name: Optional[str] = None
    currency: str = Field(default="EUR", max_length=8)
    image: Optional[str] = None
    current_price: Optional[str] = None
    ends_at: Optional[datetime] = None
    last_change_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class BidRecord(SQLModel, table=True):
    __tablename__ = "bid"
    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: str = Field(index=True)
    position: int
    amount: str = Field(description="Decimal as text, exact")
    amount_text: Optional[str] = None
    time_iso: Optional[datetime] = None
    date_iso: Optional[date] = None
    source: str = Field(default=BidSource.UNKNOWN.value, max_length=16)


class AlertRecord(SQLModel, table=True):
    __tablename__ = "alert"
    listing_id: str = Field(primary_key=True)
    last_known_price: Optional[str] = None
    last_bid_alert_at: Optional[datetime] = None
    last_30m_ping_at: Optional[datetime] = None
    message_id: Optional[str] = None
    last_edit_at: Optional[datetime] = None


_engine: Optional[Engine] = None
_db_path: Optional[Path] = None


def configure(database: str | Path) -> Engine:
    """Point the store at a SQLite file and create missing tables."""
    global _engine, _db_path
    _db_path = Path(database)
    _db_path.parent.mkdir(parents=True, exist_ok=True)
    _engine = create_engine(f"sqlite:///{_db_path}", echo=False)
    SQLModel.metadata.create_all(_engine)
    return _engine


def engine() -> Engine:
    if _engine is None:
        raise RuntimeError("lotwatch.db is not configured; call db.configure() first")
    return _engine


# ---- conversions -----------------------------------------------------------


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # rows written by older drivers come back naive; everything we store is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _to_listing(row: ListingRecord, bids: list[Bid]) -> Listing:
    return Listing(
        id=row.id,
        url=row.url,
        title=row.title,
        display_name=row.display_name,
        currency=row.currency,
        image=row.image,
        current_price=_dec(row.current_price),
        ends_at=_utc(row.ends_at),
        last_change_at=_utc(row.last_change_at),
        last_updated=_utc(row.last_updated),
        error=row.error,
        bids=bids,
    )


def _to_bid(row: BidRecord) -> Bid:
    return Bid(
        amount=Decimal(row.amount),
        amount_text=row.amount_text,
        time_iso=_utc(row.time_iso),
        date_iso=row.date_iso,
        source=BidSource(row.source),
    )


# ---- listings --------------------------------------------------------------


def listing_add(url: str, display_name: Optional[str] = None) -> Listing:
    row = ListingRecord(
        id=f"id-{uuid.uuid4().hex[:8]}",
        url=url,
        title=display_name or url,
        display_name=display_name,
    )
    with Session(engine()) as s:
        s.add(row)
        s.commit()
        s.refresh(row)
        return _to_listing(row, [])


def listing_get(listing_id: str) -> Optional[Listing]:
    with Session(engine()) as s:
        row = s.get(ListingRecord, listing_id)
        if row is None:
            return None
        return _to_listing(row, _history(s, listing_id))


def listing_list() -> List[Listing]:
    with Session(engine()) as s:
        rows = s.exec(select(ListingRecord).order_by(ListingRecord.created_at.desc())).all()
        return [_to_listing(r, _history(s, r.id)) for r in rows]


def listing_save(listing: Listing) -> None:
    """Persist the snapshot fields of ``listing`` (not its bids)."""
    with Session(engine()) as s:
        row = s.get(ListingRecord, listing.id)
        if row is None:
            return
        row.url = listing.url
        row.title = listing.title
        row.display_name = listing.display_name
        row.currency = listing.currency
        row.image = listing.image
        row.current_price = (
            str(listing.current_price) if listing.current_price is not None else None
        )
        row.ends_at = _utc(listing.ends_at)
        row.last_change_at = _utc(listing.last_change_at)
        row.last_updated = _utc(listing.last_updated)
        row.error = listing.error
        s.add(row)
        s.commit()


def listing_rename(listing_id: str, display_name: Optional[str]) -> bool:
    with Session(engine()) as s:
        row = s.get(ListingRecord, listing_id)
        if row is None:
            return False
        row.display_name = display_name or None
        s.add(row)
        s.commit()
        return True


def listing_remove(listing_id: str) -> bool:
    """Delete the listing together with its history and alert state."""
    with Session(engine()) as s:
        row = s.get(ListingRecord, listing_id)
        if row is None:
            return False
        s.execute(delete(BidRecord).where(BidRecord.listing_id == listing_id))
        s.execute(delete(AlertRecord).where(AlertRecord.listing_id == listing_id))
        s.delete(row)
        s.commit()
        return True


# ---- history ---------------------------------------------------------------


def _history(s: Session, listing_id: str) -> list[Bid]:
    rows = s.exec(
        select(BidRecord)
        .where(BidRecord.listing_id == listing_id)
        .order_by(BidRecord.position)
    ).all()
    return [_to_bid(r) for r in rows]


def history_load(listing_id: str) -> list[Bid]:
    with Session(engine()) as s:
        return _history(s, listing_id)


def history_save(listing_id: str, bids: list[Bid]) -> None:
    """Replace the whole stored history of one listing in a single transaction."""
    with Session(engine()) as s:
        s.execute(delete(BidRecord).where(BidRecord.listing_id == listing_id))
        for pos, b in enumerate(bids):
            s.add(
                BidRecord(
                    listing_id=listing_id,
                    position=pos,
                    amount=str(b.amount),
                    amount_text=b.amount_text,
                    time_iso=_utc(b.time_iso),
                    date_iso=b.date_iso,
                    source=b.source.value,
                )
            )
        s.commit()


# ---- alert state -----------------------------------------------------------


def alert_load(listing_id: str) -> AlertState:
    with Session(engine()) as s:
        row = s.get(AlertRecord, listing_id)
        if row is None:
            return AlertState()
        return AlertState(
            last_known_price=_dec(row.last_known_price),
            last_bid_alert_at=_utc(row.last_bid_alert_at),
            last_30m_ping_at=_utc(row.last_30m_ping_at),
            message_id=row.message_id,
            last_edit_at=_utc(row.last_edit_at),
        )


def alert_save(listing_id: str, state: AlertState) -> None:
    with Session(engine()) as s:
        row = s.get(AlertRecord, listing_id) or AlertRecord(listing_id=listing_id)
        row.last_known_price = (
            str(state.last_known_price) if state.last_known_price is not None else None
        )
        row.last_bid_alert_at = _utc(state.last_bid_alert_at)
        row.last_30m_ping_at = _utc(state.last_30m_ping_at)
        row.message_id = state.message_id
        row.last_edit_at = _utc(state.last_edit_at)
        s.add(row)
        s.commit()


# ---- backups ---------------------------------------------------------------


def backup_database(backup_dir: str | Path, label: str = "manual") -> Optional[Path]:
    """Copy the SQLite file to ``backup_dir`` (temp file + rename)."""
    if _db_path is None or not _db_path.exists():
        return None
    target_dir = Path(backup_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    stamp = utcnow().strftime("%Y-%m-%dT%H-%M-%S")
    target = target_dir / f"{stamp}_{label}.sqlite"
    tmp = target.with_suffix(".tmp")
    shutil.copy2(_db_path, tmp)
    os.replace(tmp, target)
    log.info("[backup] snapshot %s", target)
    return target


def prune_backups(backup_dir: str | Path, retention_days: int = 30) -> int:
    target_dir = Path(backup_dir)
    if not target_dir.exists():
        return 0
    cutoff = time.time() - retention_days * 24 * 3600
    removed = 0
    for path in target_dir.glob("*.sqlite"):
        if path.stat().st_mtime < cutoff:
            path.unlink()
            removed += 1
    return removed
