from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from dosekeeper.errors import StoreError
from dosekeeper.models.dose_record import STATUS_FORGOTTEN, STATUS_PENDING
from dosekeeper.services.dose_window import WindowPolicy, evaluate
from dosekeeper.services.store import DoseStore
from dosekeeper.timers import Clock

logger = logging.getLogger(__name__)


class ExpiredDoseSweeper:
    """Marks today's pending doses as forgotten once their window closes."""

    def __init__(
        self,
        store: DoseStore,
        clock: Clock,
        policy: WindowPolicy,
        on_updated: Optional[Callable[[], None]] = None,
    ):
        self._store = store
        self._clock = clock
        self._policy = policy
        self._on_updated = on_updated
        self._lock = threading.Lock()
        self._last_minute: Optional[str] = None

    def sweep(self, user_id: int, force: bool = False) -> int:
        if not self._lock.acquire(blocking=False):
            return 0
        try:
            now = self._clock.now()
            minute = now.strftime("%Y-%m-%d %H:%M")
            if minute == self._last_minute and not force:
                return 0

            try:
                records = self._store.list_dose_records(user_id, now.strftime("%Y-%m-%d"), status=STATUS_PENDING)
            except StoreError as e:
                logger.error("Sweep for user=%s failed: %s", user_id, e)
                return 0
            self._last_minute = minute

            resolved = 0
            for record in records:
                try:
                    window = evaluate(now, record.time_of_day, record.status, self._policy)
                except ValueError:
                    logger.warning("Dose record %s has an invalid time %r", record.id, record.time_of_day)
                    continue
                if window.status != STATUS_FORGOTTEN:
                    continue
                try:
                    if self._store.resolve_pending(record.id, STATUS_FORGOTTEN):
                        resolved += 1
                        logger.info("Dose reminder=%s date=%s marked forgotten", record.reminder_id, record.date)
                except StoreError as e:
                    logger.error("Failed to mark dose record %s forgotten: %s", record.id, e)
        finally:
            self._lock.release()

        if resolved and self._on_updated:
            try:
                self._on_updated()
            except Exception:
                logger.exception("Sweep callback failed")
        return resolved
