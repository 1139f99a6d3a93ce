from __future__ import annotations

import logging
from datetime import datetime

from dosekeeper.errors import ActionNotAllowed, UnknownReminderError
from dosekeeper.services.dose_window import WindowPolicy, check_action
from dosekeeper.services.store import DoseStore, ReminderInfo

logger = logging.getLogger(__name__)


def record_user_action(
    store: DoseStore,
    reminder_id: int,
    action: str,
    now: datetime,
    policy: WindowPolicy,
) -> ReminderInfo:
    """Persist an explicit taken/forgotten decision for today's dose.

    Reads the day's record first and validates the attempt against the
    action window; a rejected attempt raises ActionNotAllowed before any
    write. Returns the reminder that was resolved.
    """
    reminder = store.get_reminder(reminder_id)
    if reminder is None:
        raise UnknownReminderError(f"Reminder {reminder_id} does not exist")

    today = now.strftime("%Y-%m-%d")
    record = store.get_dose_record(reminder_id, today)
    check = check_action(now, reminder.time_of_day, action, record.status if record else None, policy)
    if not check.allowed:
        raise ActionNotAllowed(check.reason or "Action not allowed.")

    store.upsert_dose_record(reminder_id, today, action, actual_time=now.strftime("%H:%M:%S"))
    logger.info("Dose reminder=%s date=%s marked %s", reminder_id, today, action)
    return reminder
