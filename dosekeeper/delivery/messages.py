"""Messages exchanged between the foreground and the delivery agent.

Every variant carries a ``type`` tag so untyped JSON can be validated with
``parse_message`` at the boundary.
"""
from __future__ import annotations

from concurrent.futures import Future
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

EVENT_SCHEDULED = "scheduled"
EVENT_DELIVERED = "delivered"
EVENT_CLICKED = "clicked"
EVENT_ACTION_TAKEN = "action_taken"
EVENT_ACTION_SNOOZED = "action_snoozed"
EVENT_ACTION_FORGOTTEN = "action_forgotten"
EVENT_DISMISSED = "dismissed"

EventKind = Literal[
    "scheduled", "delivered", "clicked", "action_taken", "action_forgotten", "action_snoozed", "dismissed"
]

ACTION_MARK_TAKEN = "mark_taken"
ACTION_MARK_FORGOTTEN = "mark_forgotten"
ACTION_SNOOZE = "snooze"
ACTION_OPEN = "open"
ACTION_DISMISS = "dismiss"

InteractionAction = Literal["mark_taken", "mark_forgotten", "snooze", "open", "dismiss"]


class NotificationPayload(BaseModel):
    """What the agent needs to present a reminder without a database session."""

    user_id: int
    chat_id: Optional[int] = None
    medication_id: int
    medication_name: str
    dosage: str = ""
    time_of_day: str
    silent: bool = False


class ScheduleNotification(BaseModel):
    type: Literal["SCHEDULE_NOTIFICATION"] = "SCHEDULE_NOTIFICATION"
    tag: str
    reminder_id: int
    payload: NotificationPayload
    delay_ms: int = Field(ge=0)


class CancelNotification(BaseModel):
    type: Literal["CANCEL_NOTIFICATION"] = "CANCEL_NOTIFICATION"
    tag: str


class CancelMatching(BaseModel):
    """Disarm and withdraw everything the agent holds for a user.

    Narrowed to one medication when medication_id is set. Covers tags the
    foreground never armed itself, such as snoozes.
    """

    type: Literal["CANCEL_MATCHING"] = "CANCEL_MATCHING"
    user_id: int
    medication_id: Optional[int] = None


class TrackAnalytics(BaseModel):
    type: Literal["TRACK_ANALYTICS"] = "TRACK_ANALYTICS"
    event_kind: EventKind
    user_id: Optional[int] = None
    reminder_id: Optional[int] = None
    medication_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GetScheduled(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["GET_SCHEDULED"] = "GET_SCHEDULED"
    reply: Optional[Future] = Field(default=None, exclude=True)


class NotificationInteraction(BaseModel):
    """Host event: the user pressed a button on a presented reminder."""

    type: Literal["NOTIFICATION_INTERACTION"] = "NOTIFICATION_INTERACTION"
    tag: str
    action: InteractionAction


class ScheduledEntry(BaseModel):
    """One armed reminder as reported by GET_SCHEDULED."""

    tag: str
    reminder_id: int
    fire_at: float  # epoch seconds
    payload: NotificationPayload


AgentMessage = Annotated[
    Union[
        ScheduleNotification,
        CancelNotification,
        CancelMatching,
        TrackAnalytics,
        GetScheduled,
        NotificationInteraction,
    ],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(AgentMessage)


def parse_message(data: Dict[str, Any]) -> BaseModel:
    """Validate an untyped dict into its message variant.

    Raises pydantic.ValidationError for unknown or malformed messages.
    """
    return _message_adapter.validate_python(data)


def snooze_tag(reminder_id: int) -> str:
    return f"{reminder_id}-snooze"


def reminder_tag(reminder_id: int) -> str:
    return str(reminder_id)


def scheduled_entries(entries: List[ScheduledEntry]) -> List[Dict[str, Any]]:
    return [entry.model_dump() for entry in entries]
