"""Clock and timer primitives shared by the foreground and the delivery agent.

Components never call ``datetime.now()`` or arm APScheduler jobs directly;
they receive a Clock and a Timers instance so tests can drive virtual time.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tzlocal import get_localzone

logger = logging.getLogger(__name__)


class Clock:
    """Device-local wall clock (naive local datetimes)."""

    def now(self) -> datetime:
        return datetime.now()

    def today(self) -> str:
        return self.now().strftime("%Y-%m-%d")


class TimerHandle:
    """Cancellation token for an armed timer."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._cancel()


class Timers:
    def call_later(self, delay_seconds: float, fn: Callable[[], None], name: str = "") -> TimerHandle:
        raise NotImplementedError

    def call_every(self, interval_seconds: float, fn: Callable[[], None], name: str = "") -> TimerHandle:
        raise NotImplementedError

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        pass


class SchedulerTimers(Timers):
    """Timers backed by an APScheduler BackgroundScheduler."""

    def __init__(self, clock: Optional[Clock] = None, scheduler: Optional[BackgroundScheduler] = None):
        self._clock = clock or Clock()
        self._scheduler = scheduler or BackgroundScheduler(timezone=get_localzone())

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("APScheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("APScheduler stopped")

    def _remover(self, job_id: str) -> Callable[[], None]:
        def remove() -> None:
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass  # already fired

        return remove

    def call_later(self, delay_seconds: float, fn: Callable[[], None], name: str = "") -> TimerHandle:
        job_id = f"{name or 'timer'}:{uuid.uuid4().hex}"
        run_date = self._clock.now() + timedelta(seconds=max(0.0, delay_seconds))
        self._scheduler.add_job(
            fn,
            trigger=DateTrigger(run_date=run_date, timezone=get_localzone()),
            id=job_id,
            misfire_grace_time=None,
        )
        return TimerHandle(self._remover(job_id))

    def call_every(self, interval_seconds: float, fn: Callable[[], None], name: str = "") -> TimerHandle:
        job_id = f"{name or 'interval'}:{uuid.uuid4().hex}"
        self._scheduler.add_job(
            fn,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_id,
            max_instances=1,
            coalesce=True,
        )
        return TimerHandle(self._remover(job_id))
