from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta
from typing import Optional

from dosekeeper.models.dose_record import STATUS_FORGOTTEN, STATUS_PENDING, STATUS_TAKEN

STATUS_ACTIVE = "active"

ACTION_TAKEN = STATUS_TAKEN
ACTION_FORGOTTEN = STATUS_FORGOTTEN


@dataclass(frozen=True)
class WindowPolicy:
    """Action window relative to the scheduled time, in minutes."""

    lead_minutes: int = 0
    tolerance_minutes: int = 60

    def __post_init__(self) -> None:
        if self.tolerance_minutes < self.lead_minutes:
            raise ValueError("tolerance must not end before the window opens")


@dataclass(frozen=True)
class DoseWindow:
    status: str
    can_mark_taken: bool
    can_mark_forgotten: bool
    minutes_until_window_opens: int
    minutes_until_window_closes: int
    window_start: datetime
    window_end: datetime


@dataclass(frozen=True)
class ActionCheck:
    allowed: bool
    reason: Optional[str] = None


def parse_time_of_day(s: str) -> dtime:
    """Parse "HH:MM" or "HH:MM:SS"."""
    parts = (s or "").strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {s!r}")
    try:
        hh, mm = int(parts[0]), int(parts[1])
        ss = int(parts[2]) if len(parts) == 3 else 0
        return dtime(hh, mm, ss)
    except ValueError:
        raise ValueError(f"Invalid time of day: {s!r}") from None


def scheduled_datetime(now: datetime, time_of_day: str) -> datetime:
    """Today's occurrence of time_of_day, on now's calendar day."""
    return datetime.combine(now.date(), parse_time_of_day(time_of_day), tzinfo=now.tzinfo)


def _minutes_between(start: datetime, end: datetime) -> int:
    return round((end - start).total_seconds() / 60.0)


def evaluate(
    now: datetime,
    time_of_day: str,
    saved_status: Optional[str] = None,
    policy: WindowPolicy = WindowPolicy(),
) -> DoseWindow:
    """Derive the dose state for now.

    An explicit taken/forgotten decision is returned as is. Otherwise the
    state follows the action window on now's calendar day: pending before it
    opens, active while open (both ends inclusive), forgotten once closed.
    """
    scheduled = scheduled_datetime(now, time_of_day)
    window_start = scheduled + timedelta(minutes=policy.lead_minutes)
    window_end = scheduled + timedelta(minutes=policy.tolerance_minutes)

    def result(status: str, actionable: bool) -> DoseWindow:
        return DoseWindow(
            status=status,
            can_mark_taken=actionable,
            can_mark_forgotten=actionable,
            minutes_until_window_opens=_minutes_between(now, window_start),
            minutes_until_window_closes=_minutes_between(now, window_end),
            window_start=window_start,
            window_end=window_end,
        )

    if saved_status in (STATUS_TAKEN, STATUS_FORGOTTEN):
        return result(saved_status, False)

    if now < window_start:
        return result(STATUS_PENDING, False)
    if now <= window_end:
        return result(STATUS_ACTIVE, True)
    return result(STATUS_FORGOTTEN, False)


def check_action(
    now: datetime,
    time_of_day: str,
    action: str,
    saved_status: Optional[str] = None,
    policy: WindowPolicy = WindowPolicy(),
) -> ActionCheck:
    """Validate an explicit taken/forgotten attempt before any store call."""
    if saved_status == STATUS_TAKEN:
        return ActionCheck(False, "This dose was already marked as taken.")
    if saved_status == STATUS_FORGOTTEN:
        return ActionCheck(False, "This dose was already marked as forgotten.")
    if action not in (ACTION_TAKEN, ACTION_FORGOTTEN):
        return ActionCheck(False, "Unknown action.")

    window = evaluate(now, time_of_day, saved_status, policy)
    allowed = window.can_mark_taken if action == ACTION_TAKEN else window.can_mark_forgotten
    if allowed:
        return ActionCheck(True)
    if window.status == STATUS_PENDING:
        opens_at = window.window_start.strftime("%H:%M")
        return ActionCheck(False, f"Not due yet. Wait until {opens_at}.")
    return ActionCheck(False, "The action window for this dose has expired.")


def format_minutes(minutes: int) -> str:
    if minutes <= 0:
        return "expired"
    if minutes < 60:
        return f"{minutes}min"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}min" if mins else f"{hours}h"


def delay_minutes(now: datetime, time_of_day: str) -> int:
    """Whole minutes between the scheduled time and now, ignoring seconds."""
    scheduled = parse_time_of_day(time_of_day)
    return (now.hour * 60 + now.minute) - (scheduled.hour * 60 + scheduled.minute)


def delay_warning(minutes: int) -> Optional[str]:
    """Nudge shown after a late (or early) dose. None when it was on time."""
    minutes = abs(minutes)
    if minutes > 120:
        return "Taken with a significant delay. Try to keep to the schedule!"
    if minutes > 60:
        return "Taken late. Adjust your reminders if needed."
    if minutes > 30:
        return "All good! Try to take the next one on time."
    return None
