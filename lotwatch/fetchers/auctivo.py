"""
Auctivo lot page scraper (bid table only).

Extracts:
  • title / image     (og tags or first <h1>)
  • ends_at           (first <time datetime=...>)
  • bids              (table with "Bod" / "Datum" headers)
  • current_price     (amount of the top bid row)

The "Datum" column is Dutch and mostly relative ("vandaag", "3 dagen
geleden", "vorige week", "14:05"), so most rows only resolve to a calendar
day. Rows with an unreadable date are assumed one day older than the row
above them.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from bs4 import BeautifulSoup, Tag

from lotwatch.core import AuctionSite, BidParseError, RawBidRow, RawScrapeResult

# --------------------------------------------------------------------------- #
#  Selectors & regex helpers
# --------------------------------------------------------------------------- #

SITE_TZ = ZoneInfo("Europe/Amsterdam")
MAX_ROWS = 120

_URL_RE = re.compile(r"auctivo\.net|auctio\.nl|bva-?auctions?", re.I)
_AMOUNT_RE = re.compile(r"€\s*([\d.]+(?:,\d{1,2})?)")
_ABS_DATE_RE = re.compile(r"\b(\d{1,2})-(\d{1,2})-(\d{2,4})\b")
_ISO_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_TIME_RE = re.compile(r"\b(\d{1,2}):(\d{2})(?::(\d{2}))?\b")
_DAYS_AGO_RE = re.compile(r"(\d+)\s*dag(?:en)?\s+geleden")
_WEEKS_AGO_RE = re.compile(r"(\d+)\s*weken?\s+geleden")
_BID_HDR_RE = re.compile(r"\bbod\b")
_CAPTION_RE = re.compile(r"geschiedenis|bieden|bid")


def supports(url: str) -> bool:
    return bool(_URL_RE.search(url or ""))


def parse_amount_text(text: Optional[str]) -> Optional[Decimal]:
    """'€ 1.234,50' -> Decimal('1234.50')"""
    if not text:
        return None
    m = _AMOUNT_RE.search(" ".join(text.split()))
    if not m:
        return None
    try:
        return Decimal(m.group(1).replace(".", "").replace(",", "."))
    except InvalidOperation:
        return None


def _at(day: date, hh: int, mi: int, ss: int) -> datetime:
    local = datetime(day.year, day.month, day.day, hh, mi, ss, tzinfo=SITE_TZ)
    return local.astimezone(timezone.utc)


def parse_when(
    text: Optional[str], base: datetime
) -> tuple[Optional[datetime], Optional[date]]:
    """Resolve a Dutch bid-table date to ``(exact UTC time, None)`` or
    ``(None, calendar day)``; ``(None, None)`` when unreadable.

    ``base`` is "now" in the site's timezone.
    """
    if not text:
        return None, None
    t = " ".join(str(text).split()).lower()
    if _ISO_RE.match(t):
        return _parse_iso(t)
    today = base.date()
    monday = today - timedelta(days=today.weekday())
    clock = _TIME_RE.search(t)

    day: Optional[date] = None
    if m := _ABS_DATE_RE.search(t):
        dd, mm, yy = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if yy < 100:
            yy += 2000
        try:
            day = date(yy, mm, dd)
        except ValueError:
            return None, None
    elif re.search(r"\beergisteren\b", t):
        day = today - timedelta(days=2)
    elif re.search(r"\bgisteren\b", t):
        day = today - timedelta(days=1)
    elif re.search(r"\bvandaag\b", t):
        day = today
    elif m := _DAYS_AGO_RE.search(t):
        return None, today - timedelta(days=int(m.group(1)))
    elif re.search(r"\bvorige\s+week\b", t):
        return None, monday - timedelta(days=7)
    elif m := _WEEKS_AGO_RE.search(t):
        return None, monday - timedelta(days=7 * int(m.group(1)))

    if day is not None:
        if clock:
            hh, mi, ss = int(clock.group(1)), int(clock.group(2)), int(clock.group(3) or 0)
            if (hh, mi, ss) != (0, 0, 0):
                return _at(day, hh, mi, ss), None
        return None, day

    if clock:
        hh, mi, ss = int(clock.group(1)), int(clock.group(2)), int(clock.group(3) or 0)
        if hh < 24 and mi < 60:
            return _at(today, hh, mi, ss), None
    return None, None


def _parse_iso(text: str) -> tuple[Optional[datetime], Optional[date]]:
    text = text.strip().upper().replace("Z", "+00:00")
    if len(text) == 10:
        try:
            return None, date.fromisoformat(text)
        except ValueError:
            return None, None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None, None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=SITE_TZ)
    return parsed.astimezone(timezone.utc), None


# --------------------------------------------------------------------------- #
#  Scraper
# --------------------------------------------------------------------------- #


class AuctivoAuction(AuctionSite):
    """Auctivo / BVA timed-lot scraper."""

    def __init__(self, timeout: float = 30):
        self.timeout = timeout

    async def fetch(
        self,
        item_url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        proxy: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RawScrapeResult:
        html = await self._get_html(item_url, headers=headers, proxy=proxy)
        return self.parse(html, now=now)

    # ---------------- HTTP ---------------- #

    async def _get_html(
        self,
        url: str,
        *,
        headers: Optional[dict[str, str]],
        proxy: Optional[str],
    ) -> str:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            headers=headers,
            proxy=proxy,
        ) as client:
            r = await client.get(url)
            r.raise_for_status()
            return r.text

    # --------------- PARSE ---------------- #

    def parse(self, html: str, now: Optional[datetime] = None) -> RawScrapeResult:
        soup = BeautifulSoup(html, "html.parser")
        base = (now or datetime.now(timezone.utc)).astimezone(SITE_TZ)

        ends_at = self._ends_at(soup)
        table = self._bid_table(soup)
        if table is None and ends_at is None:
            raise BidParseError("Page structure changed – no bid table or end time")

        bids = self._rows(table, base) if table is not None else []
        current = None
        if bids:
            current = parse_amount_text(bids[0].amount_text)

        return RawScrapeResult(
            title=self._meta(soup, "og:title") or self._first_text(soup, ["h1"]),
            image=self._meta(soup, "og:image"),
            currency="EUR",
            current_price=float(current) if current is not None else None,
            ends_at=ends_at,
            bids=tuple(bids),
        )

    def _rows(self, table: Tag, base: datetime) -> list[RawBidRow]:
        rows: list[RawBidRow] = []
        seen: set[tuple] = set()
        anchor: Optional[date] = None
        for tr in table.select("tbody tr") or table.select("tr"):
            tds = tr.find_all("td")
            if len(tds) < 2:
                continue
            amount_text = tds[0].get_text(" ", strip=True)
            if "€" not in amount_text:
                continue
            when, day = parse_when(self._when_cell(tds[1]), base)
            if when is not None:
                anchor = when.astimezone(SITE_TZ).date()
            elif day is not None:
                anchor = day
            elif anchor is not None:
                day = anchor = anchor - timedelta(days=1)

            amount = parse_amount_text(amount_text)
            key = (amount if amount is not None else amount_text, when or day)
            if key in seen:
                continue
            seen.add(key)
            rows.append(
                RawBidRow(amount=amount, amount_text=amount_text, time_iso=when, date_iso=day)
            )
        return rows[:MAX_ROWS]

    # ------------ small helpers ---------- #
    @staticmethod
    def _ends_at(soup: BeautifulSoup) -> Optional[datetime]:
        node = soup.select_one("time[datetime]")
        if node is None:
            return None
        return _parse_iso(node["datetime"])[0]

    @staticmethod
    def _bid_table(soup: BeautifulSoup) -> Optional[Tag]:
        fallback = None
        for tbl in soup.find_all("table"):
            headers = [
                th.get_text(" ", strip=True).lower() for th in tbl.select("thead th, tr th")
            ]
            if any(_BID_HDR_RE.search(h) for h in headers) and any(
                "datum" in h for h in headers
            ):
                return tbl
            caption = tbl.caption.get_text(" ", strip=True).lower() if tbl.caption else ""
            if fallback is None and _CAPTION_RE.search(caption):
                fallback = tbl
        return fallback

    @staticmethod
    def _when_cell(td: Tag) -> str:
        tm = td.find("time")
        if tm is not None:
            if tm.get("datetime"):
                return tm["datetime"].strip()
            if txt := tm.get_text(strip=True):
                return txt
        for attr in ("aria-label", "title"):
            if td.get(attr):
                return td[attr].strip()
        return td.get_text(" ", strip=True)

    @staticmethod
    def _meta(soup: BeautifulSoup, prop: str) -> Optional[str]:
        node = soup.find("meta", attrs={"property": prop})
        if node and node.get("content"):
            return node["content"].strip()
        return None

    @staticmethod
    def _first_text(soup: BeautifulSoup, selectors: list[str]) -> Optional[str]:
        for sel in selectors:
            node = soup.select_one(sel)
            if node and (txt := node.get_text(" ", strip=True)):
                return txt
        return None
