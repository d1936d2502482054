"""Shared fixtures: a throwaway store, a settable clock and fakes for the collaborators."""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from lotwatch import db
from lotwatch.core import RawScrapeResult
from lotwatch.settings import NotifyCfg, Settings

NOW = datetime(2025, 10, 15, 12, 0, tzinfo=timezone.utc)
WEBHOOK = "https://discord.test/api/webhooks/1/token"


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeFetcher:
    def __init__(self, result: RawScrapeResult | None = None, error: Exception | None = None):
        self.result = result or RawScrapeResult()
        self.error = error
        self.calls: list[str] = []
        self.on_fetch = None

    async def fetch(self, item_url: str, **kwargs) -> RawScrapeResult:
        self.calls.append(item_url)
        if self.on_fetch is not None:
            self.on_fetch()
        if self.error is not None:
            raise self.error
        return self.result


class FakeSink:
    def __init__(self):
        self.created: list[tuple[dict, bool]] = []
        self.edited: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None

    async def create(self, payload: dict, ping: bool = False) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append((payload, ping))
        return f"m{len(self.created)}"

    async def edit(self, message_id: str, payload: dict) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.edited.append((message_id, payload))

    @property
    def calls(self) -> int:
        return len(self.created) + len(self.edited)


def connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("boom", request=httpx.Request("POST", WEBHOOK))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def settings():
    return Settings(notify=NotifyCfg(enabled=True, webhook_url=WEBHOOK))


@pytest.fixture
def store(tmp_path):
    db.configure(tmp_path / "lotwatch.sqlite")
    return tmp_path
