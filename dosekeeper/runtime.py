"""Process-wide wiring of the dose engine.

One Runtime per bot process: it owns the store, the channel, the delivery
agent with its own timers, the analytics recorder and the registry of
per-user engines.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dosekeeper import config
from dosekeeper.database import SessionLocal
from dosekeeper.delivery.agent import DeliveryAgent
from dosekeeper.delivery.channel import MessageChannel
from dosekeeper.delivery.presenter import Presenter, TelegramPresenter
from dosekeeper.engine import DoseEngine, EngineRegistry
from dosekeeper.errors import StoreError
from dosekeeper.services.analytics import AnalyticsRecorder
from dosekeeper.services.dose_window import WindowPolicy
from dosekeeper.services.store import SqlDoseStore
from dosekeeper.services.users import find_user_id
from dosekeeper.timers import Clock, SchedulerTimers, Timers

logger = logging.getLogger(__name__)


def default_policy() -> WindowPolicy:
    return WindowPolicy(lead_minutes=config.DOSE_LEAD_MINUTES, tolerance_minutes=config.DOSE_TOLERANCE_MINUTES)


class Runtime:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        presenter: Optional[Presenter] = None,
        clock: Optional[Clock] = None,
        agent_timers: Optional[Timers] = None,
        foreground_timers: Optional[Timers] = None,
        policy: Optional[WindowPolicy] = None,
        storage_dir: Optional[str] = None,
    ):
        self.clock = clock or Clock()
        self.policy = policy or default_policy()
        self.session_factory = session_factory
        self.store = SqlDoseStore(session_factory)
        self.channel = MessageChannel()

        # Separate schedulers: the agent keeps firing while foreground work is stopped
        self._agent_timers = agent_timers or SchedulerTimers(self.clock)
        self._foreground_timers = foreground_timers or SchedulerTimers(self.clock)

        self.agent = DeliveryAgent(
            self.channel,
            SqlDoseStore(session_factory),
            presenter
            or TelegramPresenter(config.TOKEN or "", snooze_minutes=config.SNOOZE_MINUTES, dashboard_url=config.DASHBOARD_URL),
            self._agent_timers,
            self.clock,
            self.policy,
            snooze_minutes=config.SNOOZE_MINUTES,
        )
        self.recorder = AnalyticsRecorder(self.store)
        self.registry = EngineRegistry(
            self.store,
            self.channel,
            self.clock,
            self._foreground_timers,
            self.policy,
            storage_dir or config.LOCAL_STORAGE_DIR,
            reset_interval=config.RESET_CHECK_INTERVAL_SECONDS,
            sweep_interval=config.SWEEP_INTERVAL_SECONDS,
        )
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.recorder.attach(self.channel)
        self.agent.start()
        self._foreground_timers.start()
        self.running = True
        try:
            user_ids = self.store.list_user_ids_with_reminders()
        except StoreError as e:
            logger.error("Could not load users on start: %s", e)
            user_ids = []
        for user_id in user_ids:
            self.registry.open(user_id)
        logger.info("Runtime started with %d user engines", len(user_ids))

    def stop(self) -> None:
        if not self.running:
            return
        self.registry.stop_all()
        self._foreground_timers.shutdown()
        self.agent.stop()
        self.recorder.detach()
        self.running = False
        logger.info("Runtime stopped")

    def open_user(self, user_id: int) -> DoseEngine:
        return self.registry.open(user_id)

    def logout(self, user_id: int) -> bool:
        return self.registry.close(user_id)

    def on_foreground(self, tg_id: int) -> None:
        """Regain trigger for any update coming from a Telegram user."""
        try:
            user_id = find_user_id(tg_id, self.session_factory)
        except SQLAlchemyError as e:
            logger.error("Failed to look up tg_id=%s: %s", tg_id, e)
            return
        if user_id is None:
            return
        engine = self.registry.get(user_id)
        if engine is not None:
            engine.on_foreground()
