from __future__ import annotations

import json
import logging
from typing import Optional

import requests
from aiogram.utils.keyboard import InlineKeyboardBuilder

from dosekeeper.delivery.messages import (
    ACTION_DISMISS,
    ACTION_MARK_FORGOTTEN,
    ACTION_MARK_TAKEN,
    ACTION_OPEN,
    ACTION_SNOOZE,
    NotificationPayload,
)

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class Presenter:
    """Shows reminders on the host. Returns a handle for later withdrawal."""

    def show_reminder(self, tag: str, payload: NotificationPayload) -> Optional[int]:
        raise NotImplementedError

    def withdraw(self, chat_id: int, handle: int) -> None:
        raise NotImplementedError

    def show_notice(self, chat_id: int, text: str) -> None:
        raise NotImplementedError

    def open_app(self, chat_id: int) -> None:
        raise NotImplementedError


def callback_data(action: str, tag: str) -> str:
    return f"dose:{action}:{tag}"


def build_reminder_kb(tag: str, snooze_minutes: int) -> InlineKeyboardBuilder:
    kb = InlineKeyboardBuilder()
    kb.button(text="✅ Taken", callback_data=callback_data(ACTION_MARK_TAKEN, tag))
    kb.button(text="🙈 Forgot", callback_data=callback_data(ACTION_MARK_FORGOTTEN, tag))
    kb.button(text=f"⏰ {snooze_minutes} min", callback_data=callback_data(ACTION_SNOOZE, tag))
    kb.button(text="📋 Open", callback_data=callback_data(ACTION_OPEN, tag))
    kb.button(text="✖", callback_data=callback_data(ACTION_DISMISS, tag))
    kb.adjust(2, 2, 1)
    return kb


def _clean_markup(kb: InlineKeyboardBuilder) -> str:
    # Telegram rejects buttons that carry explicit nulls
    keyboard_data = kb.as_markup().model_dump()
    clean_keyboard = []
    for row in keyboard_data.get("inline_keyboard", []):
        clean_keyboard.append([{k: v for k, v in button.items() if v is not None} for button in row])
    return json.dumps({"inline_keyboard": clean_keyboard})


def reminder_text(payload: NotificationPayload) -> str:
    body = f"Time to take {payload.dosage}" if payload.dosage else "Time to take your dose"
    return f"⏰ <b>{payload.medication_name}</b>\n{body} ({payload.time_of_day[:5]})"


class TelegramPresenter(Presenter):
    """Presents reminders as Telegram messages through the Bot API.

    Runs on the delivery agent thread, so it talks to the HTTP API directly
    instead of going through the bot's event loop.
    """

    def __init__(self, token: str, snooze_minutes: int = 5, dashboard_url: str = "", timeout: float = 10):
        self._token = token
        self._snooze_minutes = snooze_minutes
        self._dashboard_url = dashboard_url
        self._timeout = timeout

    def _call(self, method: str, data: dict) -> Optional[dict]:
        url = f"{TELEGRAM_API}/bot{self._token}/{method}"
        try:
            response = requests.post(url, data=data, timeout=self._timeout)
        except requests.RequestException as e:
            logger.error("Telegram %s failed: %s", method, e)
            return None
        if response.status_code != 200:
            logger.error("Telegram %s rejected: %s", method, response.text)
            return None
        return response.json().get("result")

    def show_reminder(self, tag: str, payload: NotificationPayload) -> Optional[int]:
        if payload.chat_id is None:
            logger.warning("No chat for reminder tag=%s user=%s", tag, payload.user_id)
            return None
        result = self._call(
            "sendMessage",
            {
                "chat_id": payload.chat_id,
                "text": reminder_text(payload),
                "parse_mode": "HTML",
                "disable_notification": json.dumps(payload.silent),
                "reply_markup": _clean_markup(build_reminder_kb(tag, self._snooze_minutes)),
            },
        )
        if result is None:
            return None
        logger.info("Sent reminder tag=%s to chat=%s", tag, payload.chat_id)
        return result.get("message_id")

    def withdraw(self, chat_id: int, handle: int) -> None:
        self._call("deleteMessage", {"chat_id": chat_id, "message_id": handle})

    def show_notice(self, chat_id: int, text: str) -> None:
        self._call("sendMessage", {"chat_id": chat_id, "text": text, "disable_notification": "true"})

    def open_app(self, chat_id: int) -> None:
        if not self._dashboard_url:
            self.show_notice(chat_id, "Open the app to see today's doses.")
            return
        kb = InlineKeyboardBuilder()
        kb.button(text="📋 Today's doses", url=self._dashboard_url)
        self._call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": "Your doses for today:",
                "disable_notification": "true",
                "reply_markup": _clean_markup(kb),
            },
        )
