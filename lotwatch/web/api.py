# lotwatch/web/api.py
from __future__ import annotations
from typing import Optional, List

import httpx
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field, HttpUrl
from sse_starlette import EventSourceResponse

from lotwatch.core import UnknownListing
from lotwatch.events import stream
from lotwatch.fetchers.auctivo import supports
from lotwatch.notify import NotifyError
from lotwatch.tracker import Tracker

api = FastAPI(
    title="lotwatch API", version="1.0.0", docs_url="/docs", openapi_url="/openapi.json"
)

KEEPALIVE_SECONDS = 15

_tracker: Optional[Tracker] = None


def bind(tracker: Tracker) -> None:
    global _tracker
    _tracker = tracker


def get_tracker() -> Tracker:
    if _tracker is None:
        raise HTTPException(503, "tracker not running")
    return _tracker


class ListingIn(BaseModel):
    url: HttpUrl
    display_name: Optional[str] = None


class RenameIn(BaseModel):
    display_name: Optional[str] = None


class NotifyIn(BaseModel):
    enabled: Optional[bool] = None
    webhook_url: Optional[str] = None
    ping_on_new_bid: Optional[bool] = None
    ping_at_30m: Optional[bool] = None
    update_interval_sec: Optional[int] = Field(default=None, ge=15)


class BidOut(BaseModel):
    amount: str
    amount_text: Optional[str] = None
    time_iso: Optional[str] = None
    date_iso: Optional[str] = None
    source: str


class ListingOut(BaseModel):
    id: str
    url: str
    title: str
    display_name: Optional[str] = None
    currency: str
    image: Optional[str] = None
    current_price: Optional[str] = None
    ends_at: Optional[str] = None
    last_change_at: Optional[str] = None
    last_updated: Optional[str] = None
    current_interval: int
    error: Optional[str] = None
    bids: List[BidOut]


def _lookup(tracker: Tracker, listing_id: str):
    try:
        return tracker.get(listing_id)
    except UnknownListing:
        raise HTTPException(404, "Not currently tracked")


@api.get("/listings", response_model=List[ListingOut])
def listings(tracker: Tracker = Depends(get_tracker)):
    return [tracker.snapshot(l) for l in tracker.listings()]


@api.get("/listings/{listing_id}", response_model=ListingOut)
def listing(listing_id: str, tracker: Tracker = Depends(get_tracker)):
    return tracker.snapshot(_lookup(tracker, listing_id))


@api.post("/listings", response_model=ListingOut, status_code=201)
def add_listing(payload: ListingIn, tracker: Tracker = Depends(get_tracker)):
    url = str(payload.url)
    if not supports(url):
        raise HTTPException(400, "Unsupported auction site")
    return tracker.snapshot(tracker.add(url, display_name=payload.display_name))


@api.patch("/listings/{listing_id}", response_model=ListingOut)
def rename_listing(
    listing_id: str, payload: RenameIn, tracker: Tracker = Depends(get_tracker)
):
    _lookup(tracker, listing_id)
    return tracker.snapshot(tracker.rename(listing_id, payload.display_name))


@api.delete("/listings/{listing_id}", status_code=204)
def delete_listing(listing_id: str, tracker: Tracker = Depends(get_tracker)):
    if not tracker.remove(listing_id):
        raise HTTPException(404, "Not currently tracked")


@api.get("/events")
async def events(tracker: Tracker = Depends(get_tracker)):
    """Server-sent events: ``update`` with a listing snapshot, ``remove`` with its id."""

    def snapshot():
        return "snapshot", [tracker.snapshot(l) for l in tracker.listings()]

    return EventSourceResponse(stream(tracker.hub, snapshot), ping=KEEPALIVE_SECONDS)


@api.get("/settings")
def settings(tracker: Tracker = Depends(get_tracker)):
    data = tracker.settings.model_dump()
    if data["notify"]["webhook_url"]:
        data["notify"]["webhook_url"] = "***"
    return data


@api.post("/settings/notify")
def update_notify(payload: NotifyIn, tracker: Tracker = Depends(get_tracker)):
    """Change notification settings until the next reload from the TOML file."""
    notify = tracker.update_notify(**payload.model_dump(exclude_none=True))
    return {"ok": True, "active": notify.active}


@api.post("/settings/reload")
def reload_settings(tracker: Tracker = Depends(get_tracker)):
    tracker.reload_settings()
    return {"ok": True}


@api.post("/notify/test")
async def notify_test(tracker: Tracker = Depends(get_tracker)):
    try:
        message_id = await tracker.notifier.send_test()
    except NotifyError as exc:
        raise HTTPException(400, str(exc))
    except httpx.HTTPError as exc:
        raise HTTPException(502, f"webhook failed: {exc}")
    return {"ok": True, "message_id": message_id}
