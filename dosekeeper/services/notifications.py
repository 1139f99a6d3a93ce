from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ValidationError

from dosekeeper.delivery.channel import MessageChannel
from dosekeeper.delivery.messages import (
    EVENT_DELIVERED,
    EVENT_SCHEDULED,
    CancelMatching,
    CancelNotification,
    NotificationPayload,
    ScheduledEntry,
    ScheduleNotification,
    TrackAnalytics,
    reminder_tag,
    snooze_tag,
)
from dosekeeper.errors import UnknownReminderError
from dosekeeper.services import preferences
from dosekeeper.services.local_storage import SCHEDULED_NOTIFICATIONS_KEY, LocalStorage
from dosekeeper.services.store import ReminderInfo
from dosekeeper.timers import Clock

logger = logging.getLogger(__name__)


def build_payload(reminder: ReminderInfo, storage: LocalStorage) -> NotificationPayload:
    # Telegram alerts carry both sound and vibration, so stay loud if either is wanted
    loud = preferences.is_sound_enabled(storage) or preferences.is_haptic_enabled(storage)
    return NotificationPayload(
        user_id=reminder.user_id,
        chat_id=reminder.chat_id,
        medication_id=reminder.medication_id,
        medication_name=reminder.medication_name,
        dosage=reminder.dosage,
        time_of_day=reminder.time_of_day,
        silent=not loud,
    )


class NotificationScheduler:
    """Foreground view of one user's armed reminders.

    Entries are persisted to local storage and mirrored to the delivery
    agent, which owns the actual timers.
    """

    def __init__(self, channel: MessageChannel, storage: LocalStorage, clock: Clock, user_id: Optional[int] = None):
        self._channel = channel
        self._storage = storage
        self._clock = clock
        self._user_id = user_id
        self._entries: Dict[str, ScheduledEntry] = {}
        self._lock = threading.RLock()

    def _save(self) -> None:
        self._storage.set(
            SCHEDULED_NOTIFICATIONS_KEY,
            {tag: entry.model_dump(exclude={"tag"}) for tag, entry in self._entries.items()},
        )

    def load(self) -> int:
        """Restore persisted entries, drop expired ones and re-mirror the rest."""
        raw = self._storage.get(SCHEDULED_NOTIFICATIONS_KEY) or {}
        restored: Dict[str, ScheduledEntry] = {}
        for tag, data in raw.items():
            try:
                restored[tag] = ScheduledEntry(tag=tag, **data)
            except (TypeError, ValidationError) as e:
                logger.warning("Dropping unreadable scheduled entry %s: %s", tag, e)
        with self._lock:
            self._entries = restored
            self.clean_expired()
            now = self._clock.now().timestamp()
            for entry in self._entries.values():
                self._mirror(entry, delay_ms=int(max(0.0, entry.fire_at - now) * 1000))
        logger.info("Loaded %d scheduled notifications from storage", len(self._entries))
        return len(self._entries)

    def _mirror(self, entry: ScheduledEntry, delay_ms: int) -> None:
        self._channel.post_to_agent(
            ScheduleNotification(tag=entry.tag, reminder_id=entry.reminder_id, payload=entry.payload, delay_ms=delay_ms)
        )

    def schedule(
        self,
        reminder_id: int,
        payload: NotificationPayload,
        fire_time: datetime,
        tag: Optional[str] = None,
    ) -> bool:
        """Arm a reminder. Already armed tags are left as they are."""
        tag = tag or reminder_tag(reminder_id)
        now = self._clock.now()
        # Past same-day times fire right away instead of moving to tomorrow
        fire_at = max(fire_time, now)
        delay_ms = int((fire_at - now).total_seconds() * 1000)
        entry = ScheduledEntry(tag=tag, reminder_id=reminder_id, fire_at=fire_at.timestamp(), payload=payload)

        with self._lock:
            if tag in self._entries:
                logger.debug("Notification %s already scheduled", tag)
                return True
            self._entries[tag] = entry
            self._save()

        self._mirror(entry, delay_ms)
        self._channel.post_to_agent(
            TrackAnalytics(
                event_kind=EVENT_SCHEDULED,
                user_id=payload.user_id,
                reminder_id=reminder_id,
                medication_id=payload.medication_id,
                metadata={"tag": tag, "time_of_day": payload.time_of_day, "timestamp": now.isoformat()},
            )
        )
        logger.info("Scheduled notification %s at %s (%d ms)", tag, fire_at.strftime("%H:%M:%S"), delay_ms)
        return True

    def cancel(self, tag: str) -> bool:
        with self._lock:
            existed = self._entries.pop(str(tag), None) is not None
            if existed:
                self._save()
        # The agent may still show it even when nothing is armed locally
        self._channel.post_to_agent(CancelNotification(tag=str(tag)))
        logger.info("Cancelled notification %s", tag)
        return existed

    def cancel_all_for_medication(self, medication_id: int) -> int:
        with self._lock:
            tags = [tag for tag, entry in self._entries.items() if entry.payload.medication_id == medication_id]
        for tag in tags:
            self.cancel(tag)
        if self._user_id is not None:
            # Snoozes armed by the agent never pass through _entries
            self._channel.post_to_agent(CancelMatching(user_id=self._user_id, medication_id=medication_id))
        return len(tags)

    def snooze(self, reminder_id: int, minutes: int, payload: Optional[NotificationPayload] = None) -> bool:
        """Arm a derived "<id>-snooze" entry minutes from now.

        The dose record is not touched.
        """
        tag = snooze_tag(reminder_id)
        with self._lock:
            if payload is None:
                base = self._entries.get(reminder_tag(reminder_id)) or self._entries.get(tag)
                if base is None:
                    raise UnknownReminderError(f"No scheduled notification for reminder {reminder_id}")
                payload = base.payload
            if self._entries.pop(tag, None) is not None:
                self._save()
        fire_time = self._clock.now() + timedelta(minutes=minutes)
        return self.schedule(reminder_id, payload, fire_time, tag=tag)

    def list_scheduled(self) -> List[ScheduledEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: (e.fire_at, e.tag))

    def is_scheduled(self, tag: str) -> bool:
        with self._lock:
            return tag in self._entries

    def clear_all(self) -> None:
        with self._lock:
            tags = list(self._entries)
        for tag in tags:
            self.cancel(tag)

    def cancel_everything(self) -> None:
        """Logout: clear local entries and anything the agent still holds for the user."""
        self.clear_all()
        if self._user_id is not None:
            self._channel.post_to_agent(CancelMatching(user_id=self._user_id))

    def clean_expired(self) -> int:
        now = self._clock.now().timestamp()
        with self._lock:
            expired = [tag for tag, entry in self._entries.items() if entry.fire_at < now]
            for tag in expired:
                del self._entries[tag]
            if expired:
                self._save()
                logger.info("Removed %d expired notifications", len(expired))
        return len(expired)

    def handle_agent_message(self, message: BaseModel) -> None:
        """Forget entries once the agent reports them delivered."""
        if not isinstance(message, TrackAnalytics) or message.event_kind != EVENT_DELIVERED:
            return
        tag = message.metadata.get("tag")
        with self._lock:
            if tag in self._entries:
                del self._entries[tag]
                self._save()
