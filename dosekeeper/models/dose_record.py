from __future__ import annotations

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, func

from dosekeeper.database import Base

STATUS_PENDING = "pending"
STATUS_TAKEN = "taken"
STATUS_FORGOTTEN = "forgotten"

TERMINAL_STATUSES = frozenset({STATUS_TAKEN, STATUS_FORGOTTEN})


class DoseRecord(Base):
    """One day's occurrence of a reminder and how it was resolved."""

    __tablename__ = "dose_records"
    __table_args__ = (UniqueConstraint("reminder_id", "date", name="uq_dose_records_reminder_date"),)

    id = Column(Integer, primary_key=True, index=True)
    reminder_id = Column(Integer, ForeignKey("reminders.id"), index=True, nullable=False)
    date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD, device-local
    status = Column(String(10), nullable=False, default=STATUS_PENDING)
    actual_time = Column(String(8), nullable=True)  # HH:MM:SS of the explicit action
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
