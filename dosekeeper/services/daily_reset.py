from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from dosekeeper.errors import StoreError
from dosekeeper.models.dose_record import STATUS_PENDING, TERMINAL_STATUSES
from dosekeeper.services.dose_window import WindowPolicy, evaluate, scheduled_datetime
from dosekeeper.services.local_storage import LAST_RESET_KEY, LocalStorage
from dosekeeper.services.notifications import NotificationScheduler, build_payload
from dosekeeper.services.store import DoseStore
from dosekeeper.timers import Clock

logger = logging.getLogger(__name__)


class DailyResetCoordinator:
    """Prepares a user's day: one pending record per active reminder and a
    fresh set of armed notifications.

    Safe to call from every trigger (load, foreground regain, the recurring
    timer). Overlapping calls are dropped and a completed day is skipped
    using the last-reset marker in local storage.
    """

    def __init__(
        self,
        store: DoseStore,
        scheduler: NotificationScheduler,
        storage: LocalStorage,
        clock: Clock,
        policy: WindowPolicy,
        on_complete: Optional[Callable[[], None]] = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._storage = storage
        self._clock = clock
        self._policy = policy
        self._on_complete = on_complete
        self._lock = threading.Lock()

    def last_reset(self) -> Optional[str]:
        return self._storage.get(LAST_RESET_KEY)

    def run_if_needed(self, user_id: int) -> bool:
        """Run today's reset unless it already ran. Returns True if it ran."""
        if not self._lock.acquire(blocking=False):
            logger.debug("Daily reset already in progress for user=%s", user_id)
            return False
        try:
            today = self._clock.today()
            if self.last_reset() == today:
                return False
            return self._run(user_id, today)
        finally:
            self._lock.release()

    def _run(self, user_id: int, today: str) -> bool:
        logger.info("Running daily reset for user=%s date=%s", user_id, today)
        try:
            reminders = self._store.list_active_reminders(user_id)
        except StoreError as e:
            logger.error("Daily reset for user=%s aborted: %s", user_id, e)
            return False

        created = 0
        for reminder in reminders:
            try:
                if self._store.upsert_dose_record(reminder.id, today, STATUS_PENDING, ignore_duplicates=True):
                    created += 1
            except StoreError as e:
                logger.error("Failed to create pending dose for reminder=%s: %s", reminder.id, e)

        statuses: Dict[int, str] = {}
        try:
            for record in self._store.list_dose_records(user_id, today):
                statuses[record.reminder_id] = record.status
        except StoreError as e:
            # Arm from the clock alone; the agent re-checks the record on "taken"
            logger.warning("Could not load today's doses for user=%s: %s", user_id, e)

        self._scheduler.clear_all()
        now = self._clock.now()
        armed = 0
        for reminder in reminders:
            status = statuses.get(reminder.id)
            if status in TERMINAL_STATUSES:
                continue
            try:
                window = evaluate(now, reminder.time_of_day, status, self._policy)
            except ValueError:
                logger.warning("Reminder %s has an invalid time %r", reminder.id, reminder.time_of_day)
                continue
            if window.status in TERMINAL_STATUSES:
                continue  # window already closed today
            self._scheduler.schedule(
                reminder.id,
                build_payload(reminder, self._storage),
                scheduled_datetime(now, reminder.time_of_day),
            )
            armed += 1

        self._storage.set(LAST_RESET_KEY, today)
        logger.info(
            "Daily reset done for user=%s: %d reminders, %d new records, %d armed",
            user_id,
            len(reminders),
            created,
            armed,
        )
        if self._on_complete:
            try:
                self._on_complete()
            except Exception:
                logger.exception("Daily reset callback failed")
        return True
