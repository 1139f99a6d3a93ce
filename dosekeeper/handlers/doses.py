import logging
from typing import Optional, Tuple

from aiogram import F, types

from dosekeeper.delivery.messages import (
    ACTION_DISMISS,
    ACTION_MARK_FORGOTTEN,
    ACTION_MARK_TAKEN,
    ACTION_OPEN,
    ACTION_SNOOZE,
)
from dosekeeper.runtime import Runtime
from .start import router

logger = logging.getLogger(__name__)

_ACTIONS = {ACTION_MARK_TAKEN, ACTION_MARK_FORGOTTEN, ACTION_SNOOZE, ACTION_OPEN, ACTION_DISMISS}


def parse_dose_callback(data: str) -> Optional[Tuple[str, str]]:
    """Split "dose:<action>:<tag>" into (action, tag)."""
    parts = (data or "").split(":", 2)
    if len(parts) != 3 or parts[0] != "dose" or parts[1] not in _ACTIONS or not parts[2]:
        return None
    return parts[1], parts[2]


@router.callback_query(F.data.startswith("dose:"))
async def on_dose_button(call: types.CallbackQuery, runtime: Runtime):
    parsed = parse_dose_callback(call.data)
    if parsed is None:
        logger.warning("Malformed dose callback %r", call.data)
        await call.answer()
        return
    action, tag = parsed
    # The agent withdraws the message and answers with a notice of its own
    runtime.agent.interact(tag, action)
    await call.answer()
