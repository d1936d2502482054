"""
Discord alerts for tracked lots.

Per lot we either have no message yet or we are *tracking* one message that
routine refreshes edit in place. Bids and the closing-soon window post fresh
messages that ping the channel. Exactly one action fires per poll:

  1. price changed           -> new message + @everyone (no cooldown)
  2. <= 30 min left          -> new message + @everyone (at most once a minute)
  3. edit interval elapsed   -> edit tracked message (or create one, no ping)
  4. otherwise               -> nothing
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import httpx

from lotwatch.core import AlertState, Listing, utcnow
from lotwatch.settings import Settings

log = logging.getLogger("lotwatch.notify")

CLOSING_SOON = timedelta(minutes=30)
_RED = 0xFF4D4F
_BLURPLE = 0x5865F2


class NotifyError(RuntimeError):
    """The webhook answered but not with something we can use."""


class Action(str, Enum):
    PRICE_ALERT = "price_alert"
    CLOSING_SOON = "closing_soon"
    REFRESH = "refresh"
    NONE = "none"


class NotificationSink(Protocol):
    async def create(self, payload: dict[str, Any], ping: bool = False) -> str: ...

    async def edit(self, message_id: str, payload: dict[str, Any]) -> None: ...


# --------------------------------------------------------------------------- #
#  Payload
# --------------------------------------------------------------------------- #


def euro(amount: Optional[Decimal]) -> str:
    if amount is None:
        return "—"
    return "€ " + f"{amount:.2f}".replace(".", ",")


def _unix(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value else None


def closing_soon(ends_at: Optional[datetime], now: datetime) -> bool:
    if ends_at is None:
        return False
    remaining = ends_at - now
    return timedelta(0) < remaining <= CLOSING_SOON


def build_embed(
    listing: Listing, now: datetime, username: str = "Auction Tracker"
) -> dict[str, Any]:
    fields = [{"name": "Price", "value": euro(listing.current_price), "inline": True}]
    if ends := _unix(listing.ends_at):
        fields.append({"name": "Ends", "value": f"<t:{ends}:F>\n<t:{ends}:R>", "inline": True})
    if changed := _unix(listing.last_change_at):
        fields.append({"name": "Last change", "value": f"<t:{changed}:R>", "inline": True})

    embed: dict[str, Any] = {
        "title": listing.title or "Auction lot",
        "url": listing.url,
        "color": _RED if closing_soon(listing.ends_at, now) else _BLURPLE,
        "fields": fields,
        "timestamp": now.isoformat(),
        "footer": {"text": "Live updates via Auction Tracker"},
    }
    if listing.display_name:
        embed["description"] = f"**{listing.display_name}**"
    if listing.image:
        embed["image"] = {"url": listing.image}
    return {"username": username, "embeds": [embed]}


# --------------------------------------------------------------------------- #
#  Sink
# --------------------------------------------------------------------------- #


class DiscordWebhook:
    """Create/edit messages through a Discord webhook URL."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def create(self, payload: dict[str, Any], ping: bool = False) -> str:
        body = dict(payload)
        if ping:
            body["content"] = "@everyone"
            body["allowed_mentions"] = {"parse": ["everyone"]}
        async with self._client() as client:
            r = await client.post(self.webhook_url, params={"wait": "true"}, json=body)
            r.raise_for_status()
        try:
            data = r.json()
        except ValueError:
            raise NotifyError(f"webhook answered with non-JSON body: {r.text[:80]!r}") from None
        msg_id = data.get("id") if isinstance(data, dict) else None
        if not msg_id:
            raise NotifyError("webhook response carried no message id")
        return str(msg_id)

    async def edit(self, message_id: str, payload: dict[str, Any]) -> None:
        async with self._client() as client:
            r = await client.patch(
                f"{self.webhook_url}/messages/{message_id}", json=payload
            )
            r.raise_for_status()


# --------------------------------------------------------------------------- #
#  State machine
# --------------------------------------------------------------------------- #


def decide(
    listing: Listing, state: AlertState, now: datetime, settings: Settings
) -> Action:
    cfg = settings.notify
    price = listing.current_price

    if (
        cfg.ping_on_new_bid
        and price is not None
        and state.last_known_price is not None
        and price != state.last_known_price
    ):
        return Action.PRICE_ALERT

    if cfg.ping_at_30m and closing_soon(listing.ends_at, now):
        cooldown = timedelta(seconds=cfg.closing_soon_cooldown_sec)
        if state.last_30m_ping_at is None or now - state.last_30m_ping_at >= cooldown:
            return Action.CLOSING_SOON

    interval = timedelta(seconds=cfg.update_interval_sec)
    if state.last_edit_at is None or now - state.last_edit_at >= interval:
        return Action.REFRESH
    return Action.NONE


class Notifier:
    def __init__(
        self,
        settings: Settings,
        sink_factory: Optional[Callable[[str], NotificationSink]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.sink_factory = sink_factory or (
            lambda url: DiscordWebhook(url, timeout=self.settings.network.timeout_seconds)
        )
        self.clock = clock

    def reconfigure(self, settings: Settings) -> None:
        self.settings = settings

    async def send_test(self) -> str:
        """Post a sample embed. Delivery errors propagate to the caller."""
        if not self.settings.notify.webhook_url:
            raise NotifyError("no webhook configured")
        now = self.clock()
        sample = Listing(
            id="test",
            url="https://example.com/",
            title="Test embed",
            display_name="Auction Tracker",
            current_price=Decimal("12.34"),
            ends_at=now + timedelta(hours=1),
            last_change_at=now,
        )
        sink = self.sink_factory(self.settings.notify.webhook_url)
        return await sink.create(
            build_embed(sample, now, self.settings.notify.username), ping=False
        )

    async def tick(self, listing: Listing, state: AlertState) -> Action:
        """Run one transition for ``listing``. Mutates ``state`` in place."""
        if not self.settings.notify.active:
            return Action.NONE
        now = self.clock()
        action = decide(listing, state, now, self.settings)
        if action is Action.NONE:
            return action

        sink = self.sink_factory(self.settings.notify.webhook_url)
        payload = build_embed(listing, now, self.settings.notify.username)
        price = listing.current_price

        # timestamps are committed before the call; the message id only after
        if action is Action.PRICE_ALERT:
            state.last_known_price = price
            state.last_bid_alert_at = now
            state.last_edit_at = now
            await self._create(sink, state, payload, ping=True)
        elif action is Action.CLOSING_SOON:
            state.last_30m_ping_at = now
            state.last_edit_at = now
            if price is not None:
                state.last_known_price = price
            await self._create(sink, state, payload, ping=True)
        else:
            state.last_edit_at = now
            if price is not None:
                state.last_known_price = price
            if state.message_id:
                await self._edit(sink, state, payload)
            else:
                await self._create(sink, state, payload, ping=False)

        log.info("%s: %s", listing.id, action.value)
        return action

    async def _create(
        self, sink: NotificationSink, state: AlertState, payload: dict, ping: bool
    ) -> None:
        try:
            state.message_id = await sink.create(payload, ping=ping)
        except (httpx.HTTPError, NotifyError) as exc:
            log.warning("webhook create failed: %s", exc)

    async def _edit(self, sink: NotificationSink, state: AlertState, payload: dict) -> None:
        try:
            await sink.edit(state.message_id, payload)
        except httpx.HTTPStatusError as exc:
            log.warning("webhook edit failed: %s", exc)
            if exc.response.status_code == 404:
                # message deleted on the Discord side; next refresh posts a new one
                state.message_id = None
        except httpx.HTTPError as exc:
            log.warning("webhook edit failed: %s", exc)
