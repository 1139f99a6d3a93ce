"""Per-user foreground session.

A DoseEngine bundles the collaborators that act for one user while the bot
process is up: local storage, the notification scheduler, the daily reset
coordinator and the expired dose sweeper. The delivery agent is shared and
is reached only through the channel.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from dosekeeper.delivery.channel import MessageChannel
from dosekeeper.services.daily_reset import DailyResetCoordinator
from dosekeeper.services.dose_window import WindowPolicy
from dosekeeper.services.local_storage import LAST_RESET_KEY, LocalStorage
from dosekeeper.services.notifications import NotificationScheduler
from dosekeeper.services.store import DoseStore
from dosekeeper.services.sweeper import ExpiredDoseSweeper
from dosekeeper.timers import Clock, TimerHandle, Timers

logger = logging.getLogger(__name__)


class DoseEngine:
    def __init__(
        self,
        user_id: int,
        store: DoseStore,
        channel: MessageChannel,
        storage: LocalStorage,
        clock: Clock,
        timers: Timers,
        policy: WindowPolicy,
        reset_interval: float = 60,
        sweep_interval: float = 30,
        on_change: Optional[Callable[[int], None]] = None,
    ):
        self.user_id = user_id
        self.storage = storage
        self._channel = channel
        self._timers = timers
        self._reset_interval = reset_interval
        self._sweep_interval = sweep_interval
        self._on_change = on_change

        self.scheduler = NotificationScheduler(channel, storage, clock, user_id=user_id)
        self.coordinator = DailyResetCoordinator(store, self.scheduler, storage, clock, policy, on_complete=self._changed)
        self.sweeper = ExpiredDoseSweeper(store, clock, policy, on_updated=self._changed)

        self._handles: List[TimerHandle] = []
        self._disconnect: Optional[Callable[[], None]] = None

    @property
    def started(self) -> bool:
        return self._disconnect is not None

    def _changed(self) -> None:
        if self._on_change:
            self._on_change(self.user_id)

    def start(self) -> None:
        if self.started:
            return
        self._disconnect = self._channel.connect(self.scheduler.handle_agent_message)
        self.scheduler.load()
        self._run_triggers()
        self._handles = [
            self._timers.call_every(self._reset_interval, self._reset_tick, name=f"reset:{self.user_id}"),
            self._timers.call_every(self._sweep_interval, self._sweep_tick, name=f"sweep:{self.user_id}"),
        ]
        logger.info("Dose engine started for user=%s", self.user_id)

    def on_foreground(self) -> None:
        """The user is back: catch up on a missed day rollover or expiry."""
        self._run_triggers()

    def _run_triggers(self) -> None:
        self.coordinator.run_if_needed(self.user_id)
        self.sweeper.sweep(self.user_id)

    def _reset_tick(self) -> None:
        try:
            self.coordinator.run_if_needed(self.user_id)
        except Exception:
            logger.exception("Daily reset tick failed for user=%s", self.user_id)

    def _sweep_tick(self) -> None:
        try:
            self.sweeper.sweep(self.user_id)
        except Exception:
            logger.exception("Sweep tick failed for user=%s", self.user_id)

    def stop(self) -> None:
        """Stop triggers and detach. Armed reminders keep firing in the agent."""
        for handle in self._handles:
            handle.cancel()
        self._handles = []
        if self._disconnect:
            self._disconnect()
            self._disconnect = None

    def shutdown(self) -> None:
        """Logout: stop, cancel every armed reminder and forget the reset marker."""
        self.stop()
        self.scheduler.cancel_everything()
        self.storage.remove(LAST_RESET_KEY)
        logger.info("Dose engine shut down for user=%s", self.user_id)


class EngineRegistry:
    """Creates and tears down one DoseEngine per user."""

    def __init__(
        self,
        store: DoseStore,
        channel: MessageChannel,
        clock: Clock,
        timers: Timers,
        policy: WindowPolicy,
        storage_dir: str | Path,
        reset_interval: float = 60,
        sweep_interval: float = 30,
        on_change: Optional[Callable[[int], None]] = None,
    ):
        self._store = store
        self._channel = channel
        self._clock = clock
        self._timers = timers
        self._policy = policy
        self._storage_dir = storage_dir
        self._reset_interval = reset_interval
        self._sweep_interval = sweep_interval
        self._on_change = on_change
        self._engines: Dict[int, DoseEngine] = {}
        self._lock = threading.Lock()

    def get(self, user_id: int) -> Optional[DoseEngine]:
        with self._lock:
            return self._engines.get(user_id)

    def open(self, user_id: int) -> DoseEngine:
        with self._lock:
            engine = self._engines.get(user_id)
            if engine is None:
                engine = DoseEngine(
                    user_id,
                    self._store,
                    self._channel,
                    LocalStorage.for_user(self._storage_dir, user_id),
                    self._clock,
                    self._timers,
                    self._policy,
                    reset_interval=self._reset_interval,
                    sweep_interval=self._sweep_interval,
                    on_change=self._on_change,
                )
                self._engines[user_id] = engine
        engine.start()
        return engine

    def close(self, user_id: int) -> bool:
        with self._lock:
            engine = self._engines.pop(user_id, None)
        if engine is None:
            return False
        engine.shutdown()
        return True

    def stop_all(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            engine.stop()

    def user_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._engines)
