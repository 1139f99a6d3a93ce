import asyncio
import logging
import math
from datetime import datetime
from typing import List, Optional

from aiogram import Router, types
from aiogram.filters import Command

from dosekeeper.delivery.messages import ScheduledEntry
from dosekeeper.runtime import Runtime
from dosekeeper.services.dose_window import format_minutes
from dosekeeper.services.users import get_or_create_user, find_user_id

router = Router()
logger = logging.getLogger(__name__)


def next_dose_line(entries: List[ScheduledEntry], now: datetime) -> Optional[str]:
    """One line about the soonest armed reminder, or None when nothing is armed."""
    if not entries:
        return None
    entry = min(entries, key=lambda e: e.fire_at)
    minutes = math.ceil((entry.fire_at - now.timestamp()) / 60)
    when = "due now" if minutes <= 0 else f"in {format_minutes(minutes)}"
    return f"Next: <b>{entry.payload.medication_name}</b> {when}"


@router.message(Command("start"))
async def cmd_start(message: types.Message, runtime: Runtime):
    user_id = get_or_create_user(message.from_user.id, message.from_user.full_name, runtime.session_factory)
    # Opening runs today's reset, which talks to the database
    engine = await asyncio.to_thread(runtime.open_user, user_id)
    entries = engine.scheduler.list_scheduled()
    text = (
        "👋 Hi! I'll remind you when it's time to take your medication.\n"
        f"Reminders armed for today: <b>{len(entries)}</b>\n"
    )
    next_line = next_dose_line(entries, runtime.clock.now())
    if next_line:
        text += f"{next_line}\n"
    text += "\n/settings - sound and vibration\n/stop - turn reminders off"
    await message.answer(text)


@router.message(Command("stop"))
async def cmd_stop(message: types.Message, runtime: Runtime):
    user_id = find_user_id(message.from_user.id, runtime.session_factory)
    if user_id is None or not runtime.logout(user_id):
        await message.answer("Reminders are not running. Send /start to turn them on.")
        return
    logger.info("User tg_id=%s stopped reminders", message.from_user.id)
    await message.answer("🔕 Reminders are off. Send /start to turn them back on.")
