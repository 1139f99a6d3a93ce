from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Callable, List, Optional

from pydantic import BaseModel

from dosekeeper.delivery.messages import GetScheduled, ScheduledEntry

logger = logging.getLogger(__name__)

Listener = Callable[[BaseModel], None]


class MessageChannel:
    """Asynchronous link between foreground contexts and the delivery agent.

    Messages to the agent are queued on its inbox; messages from the agent
    are broadcast to every connected foreground listener. Delivery is
    fire-and-forget and a failing listener never affects the others.
    """

    def __init__(self) -> None:
        self.agent_inbox: "queue.Queue[BaseModel]" = queue.Queue()
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def post_to_agent(self, message: BaseModel) -> None:
        self.agent_inbox.put(message)

    def connect(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def disconnect() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return disconnect

    def broadcast(self, message: BaseModel) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(message)
            except Exception:
                logger.exception("Channel listener failed on %s", getattr(message, "type", message))

    def request_scheduled(self, timeout: Optional[float] = 5.0) -> List[ScheduledEntry]:
        """Ask the agent for its armed set and wait for the reply."""
        reply: Future = Future()
        self.post_to_agent(GetScheduled(reply=reply))
        return reply.result(timeout=timeout)
