"""Tests for the tracker registry and the per-lot poll pipeline."""
import asyncio
from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, FakeFetcher

from lotwatch import db
from lotwatch.core import Bid, BidSource, RawBidRow, RawScrapeResult, UnknownListing
from lotwatch.notify import DiscordWebhook, Notifier
from lotwatch.scheduler import PollState
from lotwatch.settings import NetworkCfg, PollingCfg, Settings
from lotwatch.tracker import Tracker

URL = "https://www.auctivo.net/lot/1"


def _result(price=100.0, ends_in=timedelta(hours=2), rows=None):
    return RawScrapeResult(
        title="Vintage fiets",
        image="https://img.test/x.jpg",
        current_price=price,
        ends_at=NOW + ends_in if ends_in is not None else None,
        bids=tuple(rows if rows is not None else [RawBidRow(amount=price, time_iso=NOW - timedelta(minutes=2))]),
    )


@pytest.fixture
def fetcher():
    return FakeFetcher(_result())


@pytest.fixture
def tracker(store, settings, fetcher, sink, clock):
    notifier = Notifier(settings, sink_factory=lambda url: sink, clock=clock)
    return Tracker(settings, fetcher=fetcher, notifier=notifier, clock=clock)


def _drain(q):
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events


def test_add_registers_and_arms_first_poll(tracker):
    listing = tracker.add(URL, display_name="fiets")
    assert listing.id in tracker
    assert tracker.get(listing.id).display_name == "fiets"
    assert tracker.scheduler.state(listing.id) is PollState.IDLE
    assert db.listing_get(listing.id) is not None


def test_successful_poll_updates_persists_and_publishes(tracker, fetcher):
    listing = tracker.add(URL)
    q = tracker.hub.register()
    asyncio.run(tracker.poll(listing.id))

    assert fetcher.calls == [URL]
    current = tracker.get(listing.id)
    assert current.title == "Vintage fiets"
    assert current.current_price == Decimal(100)
    assert current.last_change_at == NOW
    assert current.last_updated == NOW
    assert current.error is None
    assert current.current_interval == 37000
    assert [b.source for b in current.bids] == [BidSource.SCRAPED_TIME]

    stored = db.listing_get(listing.id)
    assert stored.current_price == Decimal(100)
    assert stored.bids == current.bids

    events = _drain(q)
    assert [e for e, _ in events] == ["update"]
    assert events[0][1]["id"] == listing.id
    assert tracker.scheduler.state(listing.id) is PollState.IDLE


def test_price_move_between_polls(tracker, fetcher, sink, clock):
    """Test a price move adds an observed bid and a pinging alert."""
    listing = tracker.add(URL)
    asyncio.run(tracker.poll(listing.id))
    assert len(sink.created) == 1  # tracking message

    clock.advance(seconds=37)
    fetcher.result = _result(price=120.0, rows=[RawBidRow(amount=100, time_iso=NOW - timedelta(minutes=2))])
    asyncio.run(tracker.poll(listing.id))

    current = tracker.get(listing.id)
    assert current.current_price == Decimal(120)
    assert current.last_change_at == clock.now
    observed = [b for b in current.bids if b.source is BidSource.OBSERVED]
    assert len(observed) == 1 and observed[0].amount == Decimal(120)
    assert sink.created[-1][1] is True
    assert tracker.alert_state(listing.id).last_known_price == Decimal(120)
    assert db.alert_load(listing.id).message_id == "m2"


def test_fast_polling_near_the_end(tracker, fetcher):
    fetcher.result = _result(ends_in=timedelta(minutes=10))
    listing = tracker.add(URL)
    asyncio.run(tracker.poll(listing.id))
    assert tracker.get(listing.id).current_interval == 7000


def test_scrape_failure_is_recorded_and_rescheduled(tracker, fetcher):
    listing = tracker.add(URL)
    asyncio.run(tracker.poll(listing.id))

    fetcher.error = RuntimeError("timeout")
    q = tracker.hub.register()
    asyncio.run(tracker.poll(listing.id))

    current = tracker.get(listing.id)
    assert current.error == "timeout"
    assert current.current_price == Decimal(100)
    assert tracker.scheduler.state(listing.id) is PollState.IDLE
    assert [e for e, _ in _drain(q)] == ["update"]
    assert db.listing_get(listing.id).error == "timeout"


def test_failure_before_any_data_uses_default_interval(tracker, fetcher):
    fetcher.error = RuntimeError("down")
    listing = tracker.add(URL)
    asyncio.run(tracker.poll(listing.id))
    assert tracker.get(listing.id).current_interval == 37000


def test_removed_during_poll_discards_result(tracker, fetcher, sink):
    """Test an in-flight poll for a removed lot publishes and re-arms nothing."""
    listing = tracker.add(URL)
    q = tracker.hub.register()
    fetcher.on_fetch = lambda: tracker.remove(listing.id)
    asyncio.run(tracker.poll(listing.id))

    assert listing.id not in tracker
    assert [e for e, _ in _drain(q)] == ["remove"]
    assert sink.calls == 0
    assert tracker.scheduler.state(listing.id) is None
    assert db.listing_get(listing.id) is None


def test_unchanged_poll_does_not_rewrite_history(tracker, monkeypatch):
    listing = tracker.add(URL)
    writes = []
    real = db.history_save
    monkeypatch.setattr(db, "history_save", lambda lid, bids: (writes.append(lid), real(lid, bids)))
    asyncio.run(tracker.poll(listing.id))
    asyncio.run(tracker.poll(listing.id))
    assert writes == [listing.id]


def test_failed_write_is_retried_next_poll(tracker, monkeypatch):
    listing = tracker.add(URL)
    real = db.history_save

    def broken(lid, bids):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(db, "history_save", broken)
    asyncio.run(tracker.poll(listing.id))
    assert db.history_load(listing.id) == []

    monkeypatch.setattr(db, "history_save", real)
    asyncio.run(tracker.poll(listing.id))
    assert len(db.history_load(listing.id)) == 1


def test_remove_and_rename(tracker):
    listing = tracker.add(URL)
    q = tracker.hub.register()
    tracker.rename(listing.id, "nieuw")
    assert db.listing_get(listing.id).display_name == "nieuw"
    assert tracker.remove(listing.id) is True
    assert tracker.remove(listing.id) is False
    assert [e for e, _ in _drain(q)] == ["update", "remove"]
    with pytest.raises(UnknownListing):
        tracker.get(listing.id)


def test_load_folds_stored_duplicates(store, settings, fetcher):
    listing = db.listing_add(URL)
    t0 = NOW - timedelta(hours=1)
    db.history_save(
        listing.id,
        [
            Bid(Decimal(100), time_iso=t0, source=BidSource.SCRAPED_TIME),
            Bid(Decimal(100), time_iso=t0 + timedelta(minutes=1), source=BidSource.OBSERVED),
            Bid(Decimal(90), date_iso=date(2025, 10, 1), source=BidSource.SCRAPED_DATE),
        ],
    )
    tracker = Tracker(settings, fetcher=fetcher)
    assert tracker.load() == 1
    assert len(tracker.get(listing.id).bids) == 2
    assert len(db.history_load(listing.id)) == 2
    assert tracker.scheduler.state(listing.id) is PollState.IDLE


def test_reload_settings_reaches_scheduler_and_notifier(tracker):
    new = Settings(polling=PollingCfg(default_interval_ms=45000))
    tracker.reload_settings(new)
    assert tracker.scheduler.settings is new
    assert tracker.notifier.settings is new
    assert tracker.scheduler.delay_for(None, NOW) == 45000


def test_backup_writes_snapshot(tracker, store):
    tracker.settings.storage.backup_dir = str(store / "backups")
    tracker.backup("manual")
    assert len(list((store / "backups").glob("*_manual.sqlite"))) == 1


class _RemovingSink:
    """Sink that drops the lot from the tracker while the webhook call is in flight."""

    def __init__(self, tracker, listing_id):
        self.tracker = tracker
        self.listing_id = listing_id

    async def create(self, payload, ping=False):
        self.tracker.remove(self.listing_id)
        return "m1"

    async def edit(self, message_id, payload):
        self.tracker.remove(self.listing_id)


def test_removed_during_notify_discards_result(store, settings, fetcher, clock, monkeypatch):
    holder = {}
    notifier = Notifier(settings, sink_factory=lambda url: holder["sink"], clock=clock)
    tracker = Tracker(settings, fetcher=fetcher, notifier=notifier, clock=clock)
    listing = tracker.add(URL)
    holder["sink"] = _RemovingSink(tracker, listing.id)
    writes = []
    monkeypatch.setattr(db, "history_save", lambda lid, bids: writes.append(lid))
    monkeypatch.setattr(db, "alert_save", lambda lid, state: writes.append(lid))
    q = tracker.hub.register()

    asyncio.run(tracker.poll(listing.id))

    assert [e for e, _ in _drain(q)] == ["remove"]
    assert writes == []
    assert db.listing_get(listing.id) is None
    assert tracker.scheduler.state(listing.id) is None


def test_unusable_webhook_reply_does_not_break_the_poll(store, settings, fetcher, clock):
    hook = DiscordWebhook(
        "https://discord.test/api/webhooks/1/token",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, text="ok")),
    )
    notifier = Notifier(settings, sink_factory=lambda url: hook, clock=clock)
    tracker = Tracker(settings, fetcher=fetcher, notifier=notifier, clock=clock)
    listing = tracker.add(URL)
    q = tracker.hub.register()

    asyncio.run(tracker.poll(listing.id))

    assert [e for e, _ in _drain(q)] == ["update"]
    assert len(db.history_load(listing.id)) == 1
    alert = db.alert_load(listing.id)
    assert alert.message_id is None
    assert alert.last_edit_at == NOW


def test_reload_settings_reaches_fetcher_timeout(store, settings):
    tracker = Tracker(settings)
    assert tracker.fetcher.timeout == 30.0
    tracker.reload_settings(Settings(network=NetworkCfg(timeout_seconds=5)))
    assert tracker.fetcher.timeout == 5
