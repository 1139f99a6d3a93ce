import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from dosekeeper.runtime import Runtime

logger = logging.getLogger(__name__)


class ForegroundMiddleware(BaseMiddleware):
    """Runs the foreground-regain triggers for every update of a known user."""

    def __init__(self, runtime: Runtime):
        self.runtime = runtime

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user = data.get("event_from_user")
        if user is not None:
            try:
                await asyncio.to_thread(self.runtime.on_foreground, user.id)
            except Exception:
                logger.exception("Foreground trigger failed for tg_id=%s", user.id)
        return await handler(event, data)
