from sqlalchemy import Column, Integer, String, DateTime, JSON

from dosekeeper.database import Base


class NotificationEvent(Base):
    __tablename__ = "notification_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    event_kind = Column(String(20), nullable=False)  # scheduled, delivered, clicked, action_taken, action_forgotten, action_snoozed, dismissed
    reminder_id = Column(Integer, nullable=True)
    medication_id = Column(Integer, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False)
