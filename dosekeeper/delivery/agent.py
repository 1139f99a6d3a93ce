"""Background delivery agent.

Runs on its own thread with its own timers and store handle, so reminders
keep firing while no foreground context is alive. Everything that mutates
agent state runs on the agent thread: timer callbacks and host events only
enqueue messages on the inbox.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from dosekeeper.delivery.channel import MessageChannel
from dosekeeper.delivery.messages import (
    ACTION_DISMISS,
    ACTION_MARK_FORGOTTEN,
    ACTION_MARK_TAKEN,
    ACTION_OPEN,
    ACTION_SNOOZE,
    EVENT_ACTION_FORGOTTEN,
    EVENT_ACTION_SNOOZED,
    EVENT_ACTION_TAKEN,
    EVENT_CLICKED,
    EVENT_DELIVERED,
    EVENT_DISMISSED,
    CancelMatching,
    CancelNotification,
    GetScheduled,
    NotificationInteraction,
    NotificationPayload,
    ScheduledEntry,
    ScheduleNotification,
    TrackAnalytics,
    snooze_tag,
)
from dosekeeper.delivery.presenter import Presenter
from dosekeeper.errors import ActionNotAllowed, StoreError, UnknownReminderError
from dosekeeper.services.dose_actions import record_user_action
from dosekeeper.services.dose_window import ACTION_FORGOTTEN, ACTION_TAKEN, WindowPolicy, delay_minutes, delay_warning
from dosekeeper.services.store import DoseStore
from dosekeeper.timers import Clock, TimerHandle, Timers

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    ARMED = "armed"
    DELIVERED = "delivered"
    TAKEN = "taken"
    FORGOTTEN = "forgotten"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"


@dataclass
class FiredInstance:
    tag: str
    reminder_id: int
    payload: NotificationPayload
    fire_at: datetime
    state: DeliveryState = DeliveryState.ARMED
    generation: int = 0
    timer: Optional[TimerHandle] = None
    handle: Optional[int] = None  # presented message id


def taken_confirmation(medication_name: str, delay: int) -> str:
    warning = delay_warning(delay)
    if warning is None:
        return f"✅ Dose confirmed! {medication_name} taken on time. Keep it up! ✨"
    return f"✅ Dose confirmed! {medication_name} marked as taken. {warning}"


@dataclass(frozen=True)
class _FireDue:
    tag: str
    generation: int


class DeliveryAgent:
    def __init__(
        self,
        channel: MessageChannel,
        store: DoseStore,
        presenter: Presenter,
        timers: Timers,
        clock: Clock,
        policy: WindowPolicy,
        snooze_minutes: int = 5,
    ):
        self._channel = channel
        self._store = store
        self._presenter = presenter
        self._timers = timers
        self._clock = clock
        self._policy = policy
        self._snooze_minutes = snooze_minutes

        self._armed: Dict[str, FiredInstance] = {}
        self._delivered: Dict[str, FiredInstance] = {}
        self._generation = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._timers.start()
        self._thread = threading.Thread(target=self._run, name="delivery-agent", daemon=True)
        self._thread.start()
        logger.info("Delivery agent started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self._timers.shutdown()
        logger.info("Delivery agent stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._channel.agent_inbox.get(timeout=0.5)
            except queue.Empty:
                continue
            self.dispatch(message)

    def drain(self) -> int:
        """Process every queued message on the calling thread."""
        handled = 0
        while True:
            try:
                message = self._channel.agent_inbox.get_nowait()
            except queue.Empty:
                return handled
            self.dispatch(message)
            handled += 1

    def interact(self, tag: str, action: str) -> None:
        """Entry point for host button presses."""
        self._channel.post_to_agent(NotificationInteraction(tag=tag, action=action))

    # -- dispatch ----------------------------------------------------------

    def dispatch(self, message: object) -> None:
        try:
            if isinstance(message, _FireDue):
                self._on_fire(message)
            elif isinstance(message, ScheduleNotification):
                self._on_schedule(message)
            elif isinstance(message, CancelNotification):
                self._on_cancel(message)
            elif isinstance(message, CancelMatching):
                self._on_cancel_matching(message)
            elif isinstance(message, GetScheduled):
                self._on_get_scheduled(message)
            elif isinstance(message, TrackAnalytics):
                self._channel.broadcast(message)
            elif isinstance(message, NotificationInteraction):
                self._on_interaction(message)
            else:
                logger.warning("Dropping unknown agent message: %r", message)
        except Exception:
            logger.exception("Delivery agent failed to handle %r", message)

    def _arm(self, tag: str, reminder_id: int, payload: NotificationPayload, delay_seconds: float) -> FiredInstance:
        previous = self._armed.pop(tag, None)
        if previous and previous.timer:
            previous.timer.cancel()

        self._generation += 1
        generation = self._generation
        instance = FiredInstance(
            tag=tag,
            reminder_id=reminder_id,
            payload=payload,
            fire_at=self._clock.now() + timedelta(seconds=delay_seconds),
            generation=generation,
        )
        inbox = self._channel.agent_inbox
        instance.timer = self._timers.call_later(
            delay_seconds,
            lambda: inbox.put(_FireDue(tag, generation)),
            name=f"notify:{tag}",
        )
        self._armed[tag] = instance
        logger.info("Armed %s for %s", tag, instance.fire_at.strftime("%Y-%m-%d %H:%M:%S"))
        return instance

    def _on_schedule(self, message: ScheduleNotification) -> None:
        self._arm(message.tag, message.reminder_id, message.payload, message.delay_ms / 1000.0)

    def _discard(self, tag: str) -> None:
        armed = self._armed.pop(tag, None)
        if armed and armed.timer:
            armed.timer.cancel()
        visible = self._delivered.pop(tag, None)
        if visible:
            self._close(visible)
        logger.info("Cancelled %s (armed=%s, visible=%s)", tag, armed is not None, visible is not None)

    def _on_cancel(self, message: CancelNotification) -> None:
        self._discard(message.tag)
        # A reminder's snooze goes with it
        if message.tag.isdigit():
            snoozed = snooze_tag(int(message.tag))
            if snoozed in self._armed or snoozed in self._delivered:
                self._discard(snoozed)

    def _on_cancel_matching(self, message: CancelMatching) -> None:
        def matches(instance: FiredInstance) -> bool:
            payload = instance.payload
            if payload.user_id != message.user_id:
                return False
            return message.medication_id is None or payload.medication_id == message.medication_id

        tags = {i.tag for i in self._armed.values() if matches(i)}
        tags.update(i.tag for i in self._delivered.values() if matches(i))
        for tag in sorted(tags):
            self._discard(tag)
        logger.info(
            "Cancelled %d notifications for user=%s medication=%s", len(tags), message.user_id, message.medication_id
        )

    def _on_get_scheduled(self, message: GetScheduled) -> None:
        entries: List[ScheduledEntry] = [
            ScheduledEntry(tag=i.tag, reminder_id=i.reminder_id, fire_at=i.fire_at.timestamp(), payload=i.payload)
            for i in sorted(self._armed.values(), key=lambda i: i.fire_at)
        ]
        if message.reply is not None and not message.reply.done():
            message.reply.set_result(entries)

    def _on_fire(self, due: _FireDue) -> None:
        instance = self._armed.get(due.tag)
        if instance is None or instance.generation != due.generation:
            logger.debug("Ignoring stale timer for %s", due.tag)
            return
        del self._armed[due.tag]

        # Same tag replaces whatever is still on screen
        stale = self._delivered.pop(due.tag, None)
        if stale:
            self._close(stale)

        try:
            handle = self._presenter.show_reminder(instance.tag, instance.payload)
        except Exception:
            logger.exception("Failed to present %s", instance.tag)
            return
        if handle is None:
            logger.warning("Reminder %s was not presented", instance.tag)
            return

        instance.handle = handle
        instance.state = DeliveryState.DELIVERED
        self._delivered[instance.tag] = instance
        self._emit(EVENT_DELIVERED, instance)
        logger.info("Delivered %s", instance.tag)

    # -- interaction ---------------------------------------------------------

    def _on_interaction(self, message: NotificationInteraction) -> None:
        instance = self._delivered.pop(message.tag, None)
        if instance is None or instance.state != DeliveryState.DELIVERED:
            logger.warning("No delivered reminder for %s, dropping %s", message.tag, message.action)
            return

        self._close(instance)
        if message.action == ACTION_DISMISS:
            instance.state = DeliveryState.DISMISSED
            self._emit(EVENT_DISMISSED, instance)
            return

        self._emit(EVENT_CLICKED, instance, action=message.action)
        if message.action == ACTION_MARK_TAKEN:
            self._record_decision(instance, ACTION_TAKEN)
        elif message.action == ACTION_MARK_FORGOTTEN:
            self._record_decision(instance, ACTION_FORGOTTEN)
        elif message.action == ACTION_SNOOZE:
            self._snooze(instance)
        elif message.action == ACTION_OPEN:
            if instance.payload.chat_id is not None:
                self._presenter.open_app(instance.payload.chat_id)

    def _record_decision(self, instance: FiredInstance, action: str) -> None:
        """Write a taken/forgotten decision, validated against the action window."""
        chat_id = instance.payload.chat_id
        now = self._clock.now()
        try:
            record_user_action(self._store, instance.reminder_id, action, now, self._policy)
        except UnknownReminderError as e:
            logger.warning("Dropping %s for %s: %s", action, instance.tag, e)
            return
        except ActionNotAllowed as e:
            logger.info("Marking %s as %s rejected: %s", instance.tag, action, e.reason)
            self._notice(chat_id, f"⚠️ {e.reason}")
            return
        except StoreError as e:
            logger.error("Failed to mark %s as %s: %s", instance.tag, action, e)
            self._notice(chat_id, "❌ Could not record the dose. Open the app to mark it.")
            return

        name = instance.payload.medication_name
        if action == ACTION_TAKEN:
            instance.state = DeliveryState.TAKEN
            self._emit(EVENT_ACTION_TAKEN, instance, action=ACTION_MARK_TAKEN)
            self._notice(chat_id, taken_confirmation(name, delay_minutes(now, instance.payload.time_of_day)))
        else:
            instance.state = DeliveryState.FORGOTTEN
            self._emit(EVENT_ACTION_FORGOTTEN, instance, action=ACTION_MARK_FORGOTTEN)
            self._notice(chat_id, f"📝 {name} marked as forgotten. Try not to miss the next one!")

    def _snooze(self, instance: FiredInstance) -> None:
        instance.state = DeliveryState.SNOOZED
        self._arm(snooze_tag(instance.reminder_id), instance.reminder_id, instance.payload, self._snooze_minutes * 60)
        self._emit(EVENT_ACTION_SNOOZED, instance, action=ACTION_SNOOZE, minutes=self._snooze_minutes)
        self._notice(instance.payload.chat_id, f"⏰ Snoozed. I'll remind you again in {self._snooze_minutes} minutes.")

    # -- helpers ---------------------------------------------------------------

    def _close(self, instance: FiredInstance) -> None:
        if instance.handle is None or instance.payload.chat_id is None:
            return
        try:
            self._presenter.withdraw(instance.payload.chat_id, instance.handle)
        except Exception:
            logger.exception("Failed to withdraw %s", instance.tag)

    def _notice(self, chat_id: Optional[int], text: str) -> None:
        if chat_id is None:
            return
        try:
            self._presenter.show_notice(chat_id, text)
        except Exception:
            logger.exception("Failed to show notice to chat=%s", chat_id)

    def _emit(self, event_kind: str, instance: FiredInstance, **metadata) -> None:
        metadata.update(tag=instance.tag, timestamp=self._clock.now().isoformat())
        self._channel.broadcast(
            TrackAnalytics(
                event_kind=event_kind,
                user_id=instance.payload.user_id,
                reminder_id=instance.reminder_id,
                medication_id=instance.payload.medication_id,
                metadata=metadata,
            )
        )

    def armed_tags(self) -> List[str]:
        return sorted(self._armed)

    def delivered_tags(self) -> List[str]:
        return sorted(self._delivered)
