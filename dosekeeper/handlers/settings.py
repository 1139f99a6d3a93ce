from aiogram import F, types
from aiogram.filters import Command
from aiogram.utils.keyboard import InlineKeyboardBuilder

from dosekeeper import config
from dosekeeper.runtime import Runtime
from dosekeeper.services import preferences
from dosekeeper.services.local_storage import LocalStorage
from dosekeeper.services.users import find_user_id
from .start import router


def _storage_for(runtime: Runtime, user_id: int) -> LocalStorage:
    engine = runtime.registry.get(user_id)
    if engine is not None:
        return engine.storage
    return LocalStorage.for_user(config.LOCAL_STORAGE_DIR, user_id)


def build_feedback_kb(storage: LocalStorage) -> InlineKeyboardBuilder:
    sound = preferences.is_sound_enabled(storage)
    haptic = preferences.is_haptic_enabled(storage)
    kb = InlineKeyboardBuilder()
    kb.button(text=f"{'🔔' if sound else '🔕'} Sound: {'on' if sound else 'off'}", callback_data="prefs:sound")
    kb.button(text=f"{'📳' if haptic else '📴'} Vibration: {'on' if haptic else 'off'}", callback_data="prefs:haptic")
    kb.adjust(1)
    return kb


SETTINGS_TEXT = "⚙️ Reminder feedback\nReminders arrive silently only when both are off."


@router.message(Command("settings"))
async def cmd_settings(message: types.Message, runtime: Runtime):
    user_id = find_user_id(message.from_user.id, runtime.session_factory)
    if user_id is None:
        await message.answer("Send /start first.")
        return
    storage = _storage_for(runtime, user_id)
    await message.answer(SETTINGS_TEXT, reply_markup=build_feedback_kb(storage).as_markup())


@router.callback_query(F.data.in_({"prefs:sound", "prefs:haptic"}))
async def toggle_feedback(call: types.CallbackQuery, runtime: Runtime):
    user_id = find_user_id(call.from_user.id, runtime.session_factory)
    if user_id is None:
        await call.answer("Send /start first.")
        return
    storage = _storage_for(runtime, user_id)
    if call.data == "prefs:sound":
        preferences.set_sound_enabled(storage, not preferences.is_sound_enabled(storage))
    else:
        preferences.set_haptic_enabled(storage, not preferences.is_haptic_enabled(storage))
    await call.message.edit_reply_markup(reply_markup=build_feedback_kb(storage).as_markup())
    await call.answer("Applies from the next reminder")
