from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BidSource(str, Enum):
    """Where a bid's timestamp came from, ordered by how much we trust it."""

    OBSERVED = "observed"
    SCRAPED_TIME = "scraped-time"
    SCRAPED_DATE = "scraped-date"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {
    BidSource.OBSERVED: 3,
    BidSource.SCRAPED_TIME: 2,
    BidSource.SCRAPED_DATE: 1,
    BidSource.UNKNOWN: 0,
}


@dataclass
class Bid:
    """One entry of a listing's canonical history."""

    amount: Decimal
    amount_text: Optional[str] = None
    time_iso: Optional[datetime] = None
    date_iso: Optional[date] = None
    source: BidSource = BidSource.UNKNOWN

    @property
    def rank(self) -> int:
        return self.source.rank

    @property
    def date_only(self) -> bool:
        return self.time_iso is None and self.date_iso is not None

    @property
    def effective_time(self) -> Optional[datetime]:
        if self.time_iso is not None:
            return self.time_iso
        if self.date_iso is not None:
            return datetime.combine(self.date_iso, time.min, tzinfo=timezone.utc)
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "amount_text": self.amount_text,
            "time_iso": self.time_iso.isoformat() if self.time_iso else None,
            "date_iso": self.date_iso.isoformat() if self.date_iso else None,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class RawBidRow:
    """A bid row as the site's history table showed it. Anything may be missing."""

    amount: Any = None
    amount_text: Optional[str] = None
    time_iso: Optional[datetime] = None
    date_iso: Optional[date] = None


@dataclass(frozen=True)
class RawScrapeResult:
    """Best-effort page snapshot.

    Missing fields default to ``None`` (or an empty bid list) and mean
    "the page did not say", never "the value is zero".
    """

    title: Optional[str] = None
    image: Optional[str] = None
    currency: str = "EUR"
    current_price: Optional[float] = None
    ends_at: Optional[datetime] = None
    bids: tuple[RawBidRow, ...] = ()


@dataclass
class AlertState:
    last_known_price: Optional[Decimal] = None
    last_bid_alert_at: Optional[datetime] = None
    last_30m_ping_at: Optional[datetime] = None
    message_id: Optional[str] = None
    last_edit_at: Optional[datetime] = None


@dataclass
class Listing:
    id: str
    url: str
    title: str
    display_name: Optional[str] = None
    currency: str = "EUR"
    image: Optional[str] = None
    current_price: Optional[Decimal] = None
    ends_at: Optional[datetime] = None
    last_change_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    current_interval: int = 0
    error: Optional[str] = None
    bids: list[Bid] = field(default_factory=list)

    def recent_bids(self, limit: int) -> list[Bid]:
        """Newest first, at most ``limit`` entries."""
        return list(reversed(self.bids))[:limit]

    def snapshot(self, limit: int = 50) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "display_name": self.display_name,
            "currency": self.currency,
            "image": self.image,
            "current_price": (
                str(self.current_price) if self.current_price is not None else None
            ),
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "last_change_at": (
                self.last_change_at.isoformat() if self.last_change_at else None
            ),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "current_interval": self.current_interval,
            "error": self.error,
            "bids": [b.to_dict() for b in self.recent_bids(limit)],
        }


class BidParseError(RuntimeError):
    """Raised when mandatory lot data cannot be extracted from the HTML/DOM."""


class UnknownListing(KeyError):
    """Raised when a listing id is not (or no longer) tracked."""


class AuctionSite(ABC):
    """A pluggable lot page reader."""

    @abstractmethod
    async def fetch(self, item_url: str, **kwargs: Any) -> RawScrapeResult: ...
