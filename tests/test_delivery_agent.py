"""Tests for the background delivery agent.

The agent is driven synchronously: messages are queued on the channel,
virtual timers are advanced and ``drain`` processes the inbox on the test
thread.
"""

from __future__ import annotations

from concurrent.futures import Future

import pytest

from conftest import seed_reminder
from dosekeeper.delivery.agent import DeliveryAgent, taken_confirmation
from dosekeeper.delivery.messages import (
    CancelMatching,
    CancelNotification,
    GetScheduled,
    NotificationPayload,
    ScheduleNotification,
    TrackAnalytics,
)
from dosekeeper.errors import StoreError
from dosekeeper.services.dose_window import WindowPolicy

POLICY = WindowPolicy(lead_minutes=0, tolerance_minutes=60)
TODAY = "2026-03-10"
CHAT = 555


@pytest.fixture
def agent(channel, store, presenter, timers, clock) -> DeliveryAgent:
    return DeliveryAgent(channel, store, presenter, timers, clock, POLICY, snooze_minutes=5)


def _payload(medication_id: int = 1) -> NotificationPayload:
    return NotificationPayload(
        user_id=1, chat_id=CHAT, medication_id=medication_id, medication_name="Aspirin", dosage="100mg", time_of_day="08:00"
    )


def _arm(channel, agent, reminder_id: int, delay_ms: int = 0, tag=None, payload=None) -> None:
    channel.post_to_agent(
        ScheduleNotification(
            tag=tag or str(reminder_id), reminder_id=reminder_id, payload=payload or _payload(), delay_ms=delay_ms
        )
    )
    agent.drain()


def _fire(timers, agent, seconds: float = 0) -> None:
    timers.advance(seconds)
    agent.drain()


def _kinds(events):
    return [e.event_kind for e in events if isinstance(e, TrackAnalytics)]


def test_reminder_is_presented_when_its_timer_fires(agent, channel, timers, presenter, events) -> None:
    _arm(channel, agent, 7, delay_ms=60_000)

    _fire(timers, agent, 59)
    assert presenter.shown == []

    _fire(timers, agent, 1)
    assert [tag for tag, _, _ in presenter.shown] == ["7"]
    assert _kinds(events) == ["delivered"]
    assert events[0].metadata["tag"] == "7"
    assert agent.delivered_tags() == ["7"]
    assert agent.armed_tags() == []


def test_cancel_before_fire_disarms(agent, channel, timers, presenter) -> None:
    _arm(channel, agent, 7, delay_ms=60_000)

    channel.post_to_agent(CancelNotification(tag="7"))
    agent.drain()
    _fire(timers, agent, 120)

    assert presenter.shown == []
    assert timers.pending == 0


def test_rescheduling_a_tag_replaces_the_timer(agent, channel, timers, presenter) -> None:
    _arm(channel, agent, 7, delay_ms=60_000)
    _arm(channel, agent, 7, delay_ms=120_000)

    _fire(timers, agent, 60)
    assert presenter.shown == []

    _fire(timers, agent, 60)
    assert len(presenter.shown) == 1


def test_cancel_withdraws_visible_message(agent, channel, timers, presenter) -> None:
    _arm(channel, agent, 7)
    _fire(timers, agent)
    handle = presenter.shown[0][2]

    channel.post_to_agent(CancelNotification(tag="7"))
    agent.drain()

    assert presenter.withdrawn == [(CHAT, handle)]
    assert agent.delivered_tags() == []


def test_refire_of_same_tag_replaces_previous_message(agent, channel, timers, presenter) -> None:
    _arm(channel, agent, 7)
    _fire(timers, agent)
    first = presenter.shown[0][2]

    _arm(channel, agent, 7)
    _fire(timers, agent)

    assert presenter.withdrawn == [(CHAT, first)]
    assert len(presenter.shown) == 2


def test_mark_taken_records_dose_inside_window(
    agent, channel, timers, presenter, store, clock, events, sqlite_session_factory
) -> None:
    """Pressing "Taken" writes the record and confirms without opening the app."""
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)
    store.upsert_dose_record(reminder_id, TODAY, "pending")
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)
    clock.advance(minutes=10)

    agent.interact(str(reminder_id), "mark_taken")
    agent.drain()

    record = store.get_dose_record(reminder_id, TODAY)
    assert record.status == "taken"
    assert record.actual_time == "08:10:00"
    assert _kinds(events) == ["delivered", "clicked", "action_taken"]
    assert len(presenter.withdrawn) == 1
    assert "Dose confirmed" in presenter.notices[-1][1]


def test_mark_taken_creates_missing_record(agent, channel, timers, store, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)

    agent.interact(str(reminder_id), "mark_taken")
    agent.drain()

    assert store.get_dose_record(reminder_id, TODAY).status == "taken"


def test_mark_taken_before_window_is_rejected(agent, channel, timers, presenter, store, events, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "12:00", tg_id=CHAT)
    store.upsert_dose_record(reminder_id, TODAY, "pending")
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)

    agent.interact(str(reminder_id), "mark_taken")
    agent.drain()

    assert store.get_dose_record(reminder_id, TODAY).status == "pending"
    assert "Not due yet" in presenter.notices[-1][1]
    assert "action_taken" not in _kinds(events)


def test_mark_taken_never_overwrites_a_forgotten_dose(agent, channel, timers, presenter, store, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)
    store.upsert_dose_record(reminder_id, TODAY, "forgotten")
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)

    agent.interact(str(reminder_id), "mark_taken")
    agent.drain()

    assert store.get_dose_record(reminder_id, TODAY).status == "forgotten"
    assert "already marked as forgotten" in presenter.notices[-1][1]


def test_mark_taken_store_failure_shows_error(channel, store, presenter, timers, clock, events, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)

    class BrokenWrites:
        def __getattr__(self, name):
            return getattr(store, name)

        def upsert_dose_record(self, *args, **kwargs):
            raise StoreError("offline")

    agent = DeliveryAgent(channel, BrokenWrites(), presenter, timers, clock, POLICY)
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)

    agent.interact(str(reminder_id), "mark_taken")
    agent.drain()

    assert "Could not record" in presenter.notices[-1][1]
    assert _kinds(events) == ["delivered", "clicked"]


def test_mark_taken_for_deleted_reminder_is_dropped(agent, channel, timers, presenter, events) -> None:
    _arm(channel, agent, 404)
    _fire(timers, agent)

    agent.interact("404", "mark_taken")
    agent.drain()

    assert _kinds(events) == ["delivered", "clicked"]
    assert presenter.notices == []


def test_snooze_rearms_five_minutes_later(agent, channel, timers, presenter, store, events, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)
    store.upsert_dose_record(reminder_id, TODAY, "pending")
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)

    agent.interact(str(reminder_id), "snooze")
    agent.drain()

    assert agent.armed_tags() == [f"{reminder_id}-snooze"]
    snoozed = [e for e in events if e.event_kind == "action_snoozed"]
    assert snoozed[0].metadata["minutes"] == 5
    assert store.get_dose_record(reminder_id, TODAY).status == "pending"

    _fire(timers, agent, 299)
    assert len(presenter.shown) == 1
    _fire(timers, agent, 1)
    assert [tag for tag, _, _ in presenter.shown] == [str(reminder_id), f"{reminder_id}-snooze"]


def test_dismiss_emits_only_dismissed(agent, channel, timers, presenter, events) -> None:
    _arm(channel, agent, 7)
    _fire(timers, agent)

    agent.interact("7", "dismiss")
    agent.drain()

    assert _kinds(events) == ["delivered", "dismissed"]
    assert len(presenter.withdrawn) == 1


def test_open_sends_dashboard_link(agent, channel, timers, presenter, events) -> None:
    _arm(channel, agent, 7)
    _fire(timers, agent)

    agent.interact("7", "open")
    agent.drain()

    assert presenter.opened == [CHAT]
    assert _kinds(events) == ["delivered", "clicked"]


def test_interactions_outside_delivered_state_are_dropped(agent, channel, timers, presenter, events) -> None:
    """Buttons on unknown, armed-only or already handled reminders do nothing."""
    agent.interact("99", "mark_taken")
    _arm(channel, agent, 7, delay_ms=60_000)
    agent.interact("7", "dismiss")
    agent.drain()
    assert events == []

    _fire(timers, agent, 60)
    agent.interact("7", "dismiss")
    agent.interact("7", "dismiss")
    agent.drain()

    assert _kinds(events) == ["delivered", "dismissed"]


def test_failed_presentation_emits_nothing(agent, channel, timers, presenter, events) -> None:
    presenter.fail = True
    _arm(channel, agent, 7)

    _fire(timers, agent)

    assert events == []
    assert agent.delivered_tags() == []


def test_get_scheduled_replies_with_armed_entries(agent, channel, clock) -> None:
    _arm(channel, agent, 8, delay_ms=120_000)
    _arm(channel, agent, 7, delay_ms=60_000)
    reply: Future = Future()

    channel.post_to_agent(GetScheduled(reply=reply))
    agent.drain()

    entries = reply.result(timeout=1)
    assert [e.tag for e in entries] == ["7", "8"]
    assert entries[0].fire_at == clock.now().timestamp() + 60


def test_track_analytics_is_rebroadcast(agent, channel, events) -> None:
    message = TrackAnalytics(event_kind="scheduled", user_id=1, reminder_id=7, metadata={"tag": "7"})

    channel.post_to_agent(message)
    agent.drain()

    assert events == [message]


def test_agent_thread_answers_requests(agent, channel) -> None:
    agent.start()
    try:
        assert channel.request_scheduled(timeout=5) == []
    finally:
        agent.stop()


def _snoozed(channel, agent, timers, reminder_id: int = 7, payload=None) -> None:
    _arm(channel, agent, reminder_id, payload=payload)
    _fire(timers, agent)
    agent.interact(str(reminder_id), "snooze")
    agent.drain()


def test_cancelling_a_reminder_also_cancels_its_snooze(agent, channel, timers, presenter) -> None:
    _snoozed(channel, agent, timers)

    channel.post_to_agent(CancelNotification(tag="7"))
    agent.drain()
    _fire(timers, agent, 600)

    assert agent.armed_tags() == []
    assert len(presenter.shown) == 1


def test_cancel_matching_clears_one_users_medication(agent, channel, timers, presenter) -> None:
    _snoozed(channel, agent, timers, 7, payload=_payload(medication_id=1))
    _arm(channel, agent, 8, delay_ms=3_600_000, payload=_payload(medication_id=2))
    other_user = _payload(medication_id=1).model_copy(update={"user_id": 2})
    _arm(channel, agent, 9, delay_ms=3_600_000, payload=other_user)

    channel.post_to_agent(CancelMatching(user_id=1, medication_id=1))
    agent.drain()
    assert agent.armed_tags() == ["8", "9"]

    channel.post_to_agent(CancelMatching(user_id=1))
    agent.drain()
    assert agent.armed_tags() == ["9"]


def test_cancel_matching_withdraws_visible_reminders(agent, channel, timers, presenter) -> None:
    _arm(channel, agent, 7)
    _fire(timers, agent)

    channel.post_to_agent(CancelMatching(user_id=1))
    agent.drain()

    assert agent.delivered_tags() == []
    assert presenter.withdrawn == [(CHAT, presenter.shown[0][2])]


def test_mark_forgotten_inside_window(agent, channel, timers, presenter, store, clock, events, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)
    store.upsert_dose_record(reminder_id, TODAY, "pending")
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)
    clock.advance(minutes=20)

    agent.interact(str(reminder_id), "mark_forgotten")
    agent.drain()

    record = store.get_dose_record(reminder_id, TODAY)
    assert (record.status, record.actual_time) == ("forgotten", "08:20:00")
    assert _kinds(events) == ["delivered", "clicked", "action_forgotten"]
    assert "marked as forgotten" in presenter.notices[-1][1]


def test_mark_forgotten_after_window_is_rejected(agent, channel, timers, presenter, store, clock, events, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "08:00", tg_id=CHAT)
    store.upsert_dose_record(reminder_id, TODAY, "pending")
    _arm(channel, agent, reminder_id)
    _fire(timers, agent)
    clock.advance(minutes=61)

    agent.interact(str(reminder_id), "mark_forgotten")
    agent.drain()

    assert store.get_dose_record(reminder_id, TODAY).status == "pending"
    assert "expired" in presenter.notices[-1][1]
    assert "action_forgotten" not in _kinds(events)


def test_mark_taken_late_adds_a_delay_warning(agent, channel, timers, presenter, store, clock, sqlite_session_factory) -> None:
    _, _, reminder_id = seed_reminder(sqlite_session_factory, "07:15", tg_id=CHAT)
    _arm(channel, agent, reminder_id, payload=_payload().model_copy(update={"time_of_day": "07:15"}))
    _fire(timers, agent)

    agent.interact(str(reminder_id), "mark_taken")
    agent.drain()

    assert presenter.notices[-1][1] == "✅ Dose confirmed! Aspirin marked as taken. All good! Try to take the next one on time."


@pytest.mark.parametrize(
    "delay, expected",
    [
        (0, "taken on time"),
        (30, "taken on time"),
        (31, "All good! Try to take the next one on time."),
        (61, "Taken late. Adjust your reminders if needed."),
        (121, "Taken with a significant delay. Try to keep to the schedule!"),
    ],
)
def test_taken_confirmation_thresholds(delay, expected) -> None:
    text = taken_confirmation("Aspirin", delay)

    assert text.startswith("✅ Dose confirmed! Aspirin")
    assert expected in text
