"""
Registry of tracked lots and the per-lot poll pipeline.

Each lot gets its own self-rescheduling loop:

    fetch -> merge history -> observed bid -> notify -> persist -> publish -> re-arm

A lot removed while its poll is in flight is detected by registry identity
after every await; its result is then dropped without touching the store,
the webhook or the event hub.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from lotwatch import db
from lotwatch.core import (
    AlertState,
    AuctionSite,
    Listing,
    RawScrapeResult,
    UnknownListing,
    utcnow,
)
from lotwatch.events import EventHub
from lotwatch.fetchers.auctivo import AuctivoAuction
from lotwatch.history import collapse, merge_history, parse_amount, price_changed, synthesize_observed
from lotwatch.notify import Action, Notifier
from lotwatch.scheduler import PollScheduler
from lotwatch.settings import NotifyCfg, Settings, load_settings

log = logging.getLogger("lotwatch.tracker")


@dataclass
class TrackedLot:
    listing: Listing
    alert: AlertState
    # history changed since the last successful write
    dirty: bool = False


class Tracker:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        fetcher: Optional[AuctionSite] = None,
        notifier: Optional[Notifier] = None,
        scheduler: Optional[PollScheduler] = None,
        hub: Optional[EventHub] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or load_settings()
        self.fetcher = fetcher or AuctivoAuction(timeout=self.settings.network.timeout_seconds)
        self.notifier = notifier or Notifier(self.settings, clock=clock)
        self.scheduler = scheduler or PollScheduler(self.settings)
        self.hub = hub or EventHub()
        self.clock = clock
        self._lots: dict[str, TrackedLot] = {}

    # ---- registry ----------------------------------------------------------

    def __contains__(self, listing_id: str) -> bool:
        return listing_id in self._lots

    def get(self, listing_id: str) -> Listing:
        try:
            return self._lots[listing_id].listing
        except KeyError:
            raise UnknownListing(listing_id) from None

    def alert_state(self, listing_id: str) -> AlertState:
        try:
            return self._lots[listing_id].alert
        except KeyError:
            raise UnknownListing(listing_id) from None

    def listings(self) -> list[Listing]:
        return [lot.listing for lot in self._lots.values()]

    def snapshot(self, listing: Listing) -> dict:
        return listing.snapshot(self.settings.storage.history_view_limit)

    def load(self) -> int:
        """Register every stored listing, folding legacy duplicate history."""
        count = 0
        for listing in db.listing_list():
            if listing.id in self._lots:
                continue
            clean = collapse(listing.bids, self.settings.matching)
            if len(clean) != len(listing.bids):
                log.info("%s: folded %d duplicate bids", listing.id, len(listing.bids) - len(clean))
                db.history_save(listing.id, clean)
            listing.bids = clean
            self._register(listing, db.alert_load(listing.id))
            count += 1
        return count

    def start(self) -> None:
        self.load()
        self.scheduler.start()
        log.info("tracking %d lots", len(self._lots))

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    def enable_backups(self) -> None:
        """Snapshot the store now and every ``storage.backup_interval_hours``."""
        self.backup("startup")
        self.scheduler.every(
            "backup", self.settings.storage.backup_interval_hours, self.backup, "periodic"
        )

    def backup(self, label: str = "manual") -> None:
        cfg = self.settings.storage
        try:
            db.backup_database(cfg.backup_dir, label)
            pruned = db.prune_backups(cfg.backup_dir, cfg.backup_retention_days)
        except OSError as exc:
            log.error("[backup] failed: %s", exc)
            return
        if pruned:
            log.info("[backup] pruned %d old snapshots", pruned)

    def add(self, url: str, display_name: Optional[str] = None) -> Listing:
        listing = db.listing_add(url, display_name=display_name)
        self._register(listing, AlertState())
        log.info("tracking %s (%s)", listing.id, url)
        return listing

    def remove(self, listing_id: str) -> bool:
        lot = self._lots.pop(listing_id, None)
        self.scheduler.cancel(listing_id)
        removed = db.listing_remove(listing_id)
        if lot is None and not removed:
            return False
        self.hub.publish("remove", {"id": listing_id})
        log.info("stopped tracking %s", listing_id)
        return True

    def rename(self, listing_id: str, display_name: Optional[str]) -> Listing:
        listing = self.get(listing_id)
        listing.display_name = display_name or None
        db.listing_rename(listing_id, listing.display_name)
        self.hub.publish("update", self.snapshot(listing))
        return listing

    def reload_settings(self, settings: Optional[Settings] = None) -> Settings:
        self.settings = settings or load_settings()
        self.scheduler.reconfigure(self.settings)
        self.notifier.reconfigure(self.settings)
        if isinstance(self.fetcher, AuctivoAuction):
            self.fetcher.timeout = self.settings.network.timeout_seconds
        log.info("settings reloaded")
        return self.settings

    def update_notify(self, **changes: Any) -> NotifyCfg:
        """Change notification settings at runtime (not written back to the TOML file)."""
        notify = NotifyCfg.model_validate(self.settings.notify.model_dump() | changes)
        self.reload_settings(self.settings.model_copy(update={"notify": notify}))
        return notify

    def _register(self, listing: Listing, alert: AlertState) -> None:
        self._lots[listing.id] = TrackedLot(listing, alert)
        # first poll right away
        self.scheduler.arm(listing.id, 0, self.poll, listing.id)

    def _tracked(self, lot: TrackedLot) -> bool:
        return self._lots.get(lot.listing.id) is lot

    # ---- poll pipeline -----------------------------------------------------

    async def poll(self, listing_id: str) -> None:
        lot = self._lots.get(listing_id)
        if lot is None:
            return
        self.scheduler.mark_polling(listing_id)
        try:
            await self._poll(lot)
        except Exception:
            log.exception("poll of %s crashed", listing_id)
        finally:
            if self._tracked(lot):
                delay = self._next_delay(lot.listing)
                self.scheduler.arm(listing_id, delay, self.poll, listing_id)

    async def _poll(self, lot: TrackedLot) -> None:
        listing = lot.listing
        raw, error = await self._fetch(listing.url)
        if not self._tracked(lot):
            log.info("%s removed during poll; result discarded", listing.id)
            return

        if raw is None:
            listing.error = error
        else:
            self._apply(lot, raw, self.clock())
            action = await self.notifier.tick(listing, lot.alert)
            if not self._tracked(lot):
                log.info("%s removed during notify; result discarded", listing.id)
                return
            if action is not Action.NONE:
                self._save_alert(lot)

        self._next_delay(listing)
        self._persist(lot)
        self.hub.publish("update", self.snapshot(listing))

    async def _fetch(self, url: str) -> tuple[Optional[RawScrapeResult], Optional[str]]:
        try:
            raw = await self.fetcher.fetch(
                url,
                headers=self.settings.random_headers(),
                proxy=self.settings.random_proxy(),
            )
        except Exception as exc:  # any fetch failure means "no data this cycle"
            log.warning("%s failed: %s", url, exc)
            return None, str(exc) or exc.__class__.__name__
        return raw, None

    def _apply(self, lot: TrackedLot, raw: RawScrapeResult, now: datetime) -> None:
        listing = lot.listing
        bids, dirty = merge_history(listing.bids, raw.bids, self.settings.matching)
        new_price = parse_amount(raw.current_price)
        bids, added = synthesize_observed(bids, listing.current_price, new_price, now)

        if price_changed(listing.current_price, new_price):
            listing.last_change_at = now
            log.info("%s → € %s", listing.title, new_price)
        elif raw.ends_at and listing.ends_at and raw.ends_at != listing.ends_at:
            # extended end time
            listing.last_change_at = now

        listing.bids = bids
        lot.dirty = lot.dirty or dirty or added
        listing.title = raw.title or listing.title
        listing.image = raw.image or listing.image
        listing.currency = raw.currency or listing.currency
        if new_price is not None:
            listing.current_price = new_price
        if raw.ends_at:
            listing.ends_at = raw.ends_at
        listing.last_updated = now
        listing.error = None

    def _next_delay(self, listing: Listing) -> int:
        listing.current_interval = self.scheduler.delay_for(listing.ends_at, self.clock())
        return listing.current_interval

    def _persist(self, lot: TrackedLot) -> None:
        try:
            db.listing_save(lot.listing)
            if lot.dirty:
                db.history_save(lot.listing.id, lot.listing.bids)
                lot.dirty = False
        except SQLAlchemyError as exc:
            # stays dirty, retried next poll
            log.error("persisting %s failed: %s", lot.listing.id, exc)

    def _save_alert(self, lot: TrackedLot) -> None:
        try:
            db.alert_save(lot.listing.id, lot.alert)
        except SQLAlchemyError as exc:
            log.error("saving alert state of %s failed: %s", lot.listing.id, exc)
