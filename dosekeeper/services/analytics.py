from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from dosekeeper.delivery.channel import MessageChannel
from dosekeeper.delivery.messages import TrackAnalytics
from dosekeeper.errors import StoreError
from dosekeeper.services.store import AnalyticsEvent, DoseStore

logger = logging.getLogger(__name__)


def _event_time(metadata: dict) -> datetime:
    raw = metadata.get("timestamp")
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.debug("Unparseable event timestamp %r", raw)
    return datetime.now()


class AnalyticsRecorder:
    """Persists every analytics event broadcast by the delivery agent."""

    def __init__(self, store: DoseStore):
        self._store = store
        self._disconnect: Optional[Callable[[], None]] = None

    def attach(self, channel: MessageChannel) -> None:
        if self._disconnect is None:
            self._disconnect = channel.connect(self.handle)

    def detach(self) -> None:
        if self._disconnect is not None:
            self._disconnect()
            self._disconnect = None

    def handle(self, message: BaseModel) -> None:
        if not isinstance(message, TrackAnalytics):
            return
        if message.user_id is None:
            logger.warning("Skipping %s event without a user", message.event_kind)
            return
        event = AnalyticsEvent(
            event_kind=message.event_kind,
            user_id=message.user_id,
            reminder_id=message.reminder_id,
            medication_id=message.medication_id,
            metadata=dict(message.metadata),
            timestamp=_event_time(message.metadata),
        )
        try:
            self._store.insert_analytics_event(event)
        except StoreError as e:
            logger.error("Failed to record %s event: %s", message.event_kind, e)
