import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lotwatch.core import utcnow
from lotwatch.settings import PollingCfg, Settings

log = logging.getLogger("lotwatch.scheduler")


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


def next_delay(
    ends_at: Optional[datetime], now: datetime, polling: PollingCfg
) -> int:
    """Milliseconds to wait before polling a lot again."""
    if ends_at is None:
        return polling.default_interval_ms
    remaining = ends_at - now
    # ended lots (negative remaining) stay on the fast interval
    if remaining <= timedelta(minutes=polling.fast_window_minutes):
        return polling.fast_interval_ms
    return polling.default_interval_ms


class PollScheduler:
    """Self-rescheduling poll loops on top of APScheduler.

    Every listing owns at most one one-shot ``date`` job. The job is armed
    again only after the previous poll finished, so polls of the same
    listing can never overlap however long a scrape takes.
    """

    def __init__(
        self, settings: Settings, scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._states: dict[str, PollState] = {}

    @staticmethod
    def job_id(listing_id: str) -> str:
        return f"lot-{listing_id}"

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            log.info("APScheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def reconfigure(self, settings: Settings) -> None:
        self.settings = settings

    def delay_for(self, ends_at: Optional[datetime], now: datetime) -> int:
        return next_delay(ends_at, now, self.settings.polling)

    def state(self, listing_id: str) -> Optional[PollState]:
        return self._states.get(listing_id)

    def arm(
        self,
        listing_id: str,
        delay_ms: int,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        """Schedule exactly one future run of ``func`` for this listing."""
        self._states[listing_id] = PollState.IDLE
        self.scheduler.add_job(
            func,
            "date",
            run_date=utcnow() + timedelta(milliseconds=delay_ms),
            args=list(args),
            id=self.job_id(listing_id),
            replace_existing=True,
            misfire_grace_time=30,
        )
        log.debug("armed %s in %d ms", listing_id, delay_ms)

    def every(
        self, job_id: str, hours: float, func: Callable[..., Any], *args: Any
    ) -> None:
        """Housekeeping jobs (backups); not tied to a listing."""
        self.scheduler.add_job(
            func,
            "interval",
            hours=hours,
            args=list(args),
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def mark_polling(self, listing_id: str) -> None:
        self._states[listing_id] = PollState.POLLING

    def cancel(self, listing_id: str) -> None:
        self._states.pop(listing_id, None)
        try:
            self.scheduler.remove_job(self.job_id(listing_id))
        except JobLookupError:
            # fired already; the running poll sees the listing is gone
            pass
