from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dosekeeper.errors import StoreError
from dosekeeper.models.dose_record import DoseRecord, STATUS_PENDING
from dosekeeper.models.medication import Medication, Reminder
from dosekeeper.models.notification_event import NotificationEvent
from dosekeeper.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderInfo:
    id: int
    medication_id: int
    medication_name: str
    dosage: str
    time_of_day: str
    recurrence: str
    active: bool
    user_id: int
    chat_id: Optional[int]


@dataclass(frozen=True)
class DoseRecordInfo:
    id: int
    reminder_id: int
    date: str
    status: str
    actual_time: Optional[str]
    time_of_day: str


@dataclass
class AnalyticsEvent:
    event_kind: str
    user_id: int
    reminder_id: Optional[int] = None
    medication_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


class DoseStore(Protocol):
    def list_active_reminders(self, user_id: int) -> List[ReminderInfo]: ...

    def get_reminder(self, reminder_id: int) -> Optional[ReminderInfo]: ...

    def upsert_dose_record(
        self,
        reminder_id: int,
        date: str,
        status: str,
        actual_time: Optional[str] = None,
        ignore_duplicates: bool = False,
    ) -> bool: ...

    def get_dose_record(self, reminder_id: int, date: str) -> Optional[DoseRecordInfo]: ...

    def list_dose_records(self, user_id: int, date: str, status: Optional[str] = None) -> List[DoseRecordInfo]: ...

    def resolve_pending(self, record_id: int, status: str) -> bool: ...

    def insert_analytics_event(self, event: AnalyticsEvent) -> None: ...


def _reminder_info(reminder: Reminder, medication: Medication, user: User) -> ReminderInfo:
    return ReminderInfo(
        id=reminder.id,
        medication_id=medication.id,
        medication_name=medication.name,
        dosage=medication.dosage or "",
        time_of_day=reminder.time_of_day,
        recurrence=reminder.recurrence or "daily",
        active=bool(reminder.active),
        user_id=user.id,
        chat_id=user.tg_id,
    )


def _record_info(record: DoseRecord, time_of_day: str) -> DoseRecordInfo:
    return DoseRecordInfo(
        id=record.id,
        reminder_id=record.reminder_id,
        date=record.date,
        status=record.status,
        actual_time=record.actual_time,
        time_of_day=time_of_day,
    )


class SqlDoseStore:
    """DoseStore backed by the application database.

    Every call opens its own session so the store can be shared between the
    foreground and the delivery agent threads.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_active_reminders(self, user_id: int) -> List[ReminderInfo]:
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(Reminder, Medication, User)
                    .join(Medication, Reminder.medication_id == Medication.id)
                    .join(User, Medication.user_id == User.id)
                    .filter(User.id == user_id, Reminder.active.is_(True))
                    .order_by(Reminder.time_of_day, Reminder.id)
                    .all()
                )
                return [_reminder_info(r, m, u) for r, m, u in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list reminders for user={user_id}: {e}") from e

    def get_reminder(self, reminder_id: int) -> Optional[ReminderInfo]:
        try:
            with self._session_factory() as session:
                row = (
                    session.query(Reminder, Medication, User)
                    .join(Medication, Reminder.medication_id == Medication.id)
                    .join(User, Medication.user_id == User.id)
                    .filter(Reminder.id == reminder_id)
                    .first()
                )
                return _reminder_info(*row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load reminder={reminder_id}: {e}") from e

    def upsert_dose_record(
        self,
        reminder_id: int,
        date: str,
        status: str,
        actual_time: Optional[str] = None,
        ignore_duplicates: bool = False,
    ) -> bool:
        """Insert or update the (reminder_id, date) record.

        With ignore_duplicates an existing row is left untouched and False is
        returned. Otherwise the last writer wins.
        """
        try:
            with self._session_factory() as session:
                try:
                    session.add(DoseRecord(reminder_id=reminder_id, date=date, status=status, actual_time=actual_time))
                    session.commit()
                    return True
                except IntegrityError:
                    session.rollback()
                    if ignore_duplicates:
                        logger.debug("Dose record reminder=%s date=%s already exists", reminder_id, date)
                        return False
                session.execute(
                    update(DoseRecord)
                    .where(DoseRecord.reminder_id == reminder_id, DoseRecord.date == date)
                    .values(status=status, actual_time=actual_time)
                )
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to upsert dose record reminder={reminder_id} date={date}: {e}") from e

    def get_dose_record(self, reminder_id: int, date: str) -> Optional[DoseRecordInfo]:
        try:
            with self._session_factory() as session:
                row = (
                    session.query(DoseRecord, Reminder.time_of_day)
                    .join(Reminder, DoseRecord.reminder_id == Reminder.id)
                    .filter(DoseRecord.reminder_id == reminder_id, DoseRecord.date == date)
                    .first()
                )
                return _record_info(*row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load dose record reminder={reminder_id} date={date}: {e}") from e

    def list_dose_records(self, user_id: int, date: str, status: Optional[str] = None) -> List[DoseRecordInfo]:
        try:
            with self._session_factory() as session:
                query = (
                    session.query(DoseRecord, Reminder.time_of_day)
                    .join(Reminder, DoseRecord.reminder_id == Reminder.id)
                    .join(Medication, Reminder.medication_id == Medication.id)
                    .filter(Medication.user_id == user_id, DoseRecord.date == date)
                )
                if status is not None:
                    query = query.filter(DoseRecord.status == status)
                return [_record_info(rec, tod) for rec, tod in query.order_by(Reminder.time_of_day).all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list dose records for user={user_id} date={date}: {e}") from e

    def resolve_pending(self, record_id: int, status: str) -> bool:
        """Set status only while the stored status is still pending."""
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(DoseRecord)
                    .where(DoseRecord.id == record_id, DoseRecord.status == STATUS_PENDING)
                    .values(status=status)
                )
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to resolve dose record={record_id}: {e}") from e

    def insert_analytics_event(self, event: AnalyticsEvent) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    NotificationEvent(
                        user_id=event.user_id,
                        event_kind=event.event_kind,
                        reminder_id=event.reminder_id,
                        medication_id=event.medication_id,
                        event_metadata=event.metadata or None,
                        timestamp=event.timestamp,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to record {event.event_kind} event: {e}") from e

    def list_user_ids_with_reminders(self) -> List[int]:
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(Medication.user_id)
                    .join(Reminder, Reminder.medication_id == Medication.id)
                    .filter(Reminder.active.is_(True))
                    .distinct()
                    .order_by(Medication.user_id)
                    .all()
                )
                return [user_id for (user_id,) in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list users with reminders: {e}") from e
