"""Pytest configuration and shared fakes for the DoseKeeper test suite."""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import Generator, List, Optional, Tuple

import pytest


def _ensure_test_env() -> None:
    """Seed environment variables before dosekeeper.config is imported."""
    os.environ.setdefault("DB_URL", "sqlite://")
    os.environ.setdefault("BOT_TOKEN", "test-token")


_ensure_test_env()

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from dosekeeper import models  # noqa: E402,F401
from dosekeeper.database import Base  # noqa: E402
from dosekeeper.delivery.channel import MessageChannel  # noqa: E402
from dosekeeper.delivery.messages import NotificationPayload  # noqa: E402
from dosekeeper.delivery.presenter import Presenter  # noqa: E402
from dosekeeper.models.medication import Medication, Reminder  # noqa: E402
from dosekeeper.models.user import User  # noqa: E402
from dosekeeper.services.local_storage import LocalStorage  # noqa: E402
from dosekeeper.services.store import SqlDoseStore  # noqa: E402
from dosekeeper.timers import Clock, TimerHandle, Timers  # noqa: E402


class VirtualClock(Clock):
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta: float) -> None:
        self._now = self._now + timedelta(**delta)


class VirtualTimers(Timers):
    """Timers driven by VirtualClock; ``advance`` fires whatever falls due."""

    def __init__(self, clock: VirtualClock) -> None:
        self.clock = clock
        self._timers: List[dict] = []
        self._seq = 0

    def _add(self, delay_seconds: float, fn, interval: Optional[float]) -> TimerHandle:
        self._seq += 1
        entry = {
            "due": self.clock.now() + timedelta(seconds=max(0.0, delay_seconds)),
            "seq": self._seq,
            "interval": interval,
            "fn": fn,
        }
        self._timers.append(entry)

        def remove() -> None:
            self._timers = [t for t in self._timers if t is not entry]

        return TimerHandle(remove)

    def call_later(self, delay_seconds, fn, name=""):
        return self._add(delay_seconds, fn, None)

    def call_every(self, interval_seconds, fn, name=""):
        return self._add(interval_seconds, fn, interval_seconds)

    def advance(self, seconds: float) -> None:
        target = self.clock.now() + timedelta(seconds=seconds)
        while True:
            due = [t for t in self._timers if t["due"] <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t["due"], t["seq"]))
            if timer["due"] > self.clock.now():
                self.clock.set(timer["due"])
            if timer["interval"] is None:
                self._timers = [t for t in self._timers if t is not timer]
            else:
                timer["due"] = timer["due"] + timedelta(seconds=timer["interval"])
            timer["fn"]()
        self.clock.set(target)

    @property
    def pending(self) -> int:
        return len(self._timers)


class RecordingPresenter(Presenter):
    """Presenter that remembers what it was asked to show."""

    def __init__(self) -> None:
        self.shown: List[Tuple[str, NotificationPayload, int]] = []
        self.withdrawn: List[Tuple[int, int]] = []
        self.notices: List[Tuple[int, str]] = []
        self.opened: List[int] = []
        self.fail = False
        self._next_handle = 1000

    def show_reminder(self, tag, payload):
        if self.fail:
            return None
        self._next_handle += 1
        self.shown.append((tag, payload, self._next_handle))
        return self._next_handle

    def withdraw(self, chat_id, handle):
        self.withdrawn.append((chat_id, handle))

    def show_notice(self, chat_id, text):
        self.notices.append((chat_id, text))

    def open_app(self, chat_id):
        self.opened.append(chat_id)


def seed_reminder(
    factory: sessionmaker,
    time_of_day: str = "09:00",
    tg_id: int = 555,
    medication: str = "Aspirin",
    dosage: str = "100mg",
    active: bool = True,
) -> Tuple[int, int, int]:
    """Create (or reuse) a user and add one medication with one reminder."""
    with factory() as session:
        user = session.query(User).filter(User.tg_id == tg_id).first()
        if user is None:
            user = User(tg_id=tg_id, name="Test")
            session.add(user)
            session.flush()
        med = Medication(user_id=user.id, name=medication, dosage=dosage)
        session.add(med)
        session.flush()
        reminder = Reminder(medication_id=med.id, time_of_day=time_of_day, active=active)
        session.add(reminder)
        session.commit()
        return user.id, med.id, reminder.id


@pytest.fixture
def sqlite_session_factory() -> Generator[sessionmaker, None, None]:
    """Provide a shared in-memory sqlite session factory and ensure cleanup."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def store(sqlite_session_factory) -> SqlDoseStore:
    return SqlDoseStore(sqlite_session_factory)


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(datetime(2026, 3, 10, 8, 0, 0))


@pytest.fixture
def timers(clock) -> VirtualTimers:
    return VirtualTimers(clock)


@pytest.fixture
def channel() -> MessageChannel:
    return MessageChannel()


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage.for_user(tmp_path, 1)


@pytest.fixture
def events(channel) -> List:
    """Every message broadcast by the delivery agent."""
    received: List = []
    channel.connect(received.append)
    return received
