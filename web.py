import asyncio
import concurrent.futures
import logging
import threading
import time

from flask import Flask, jsonify, request
from pydantic import ValidationError
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from dosekeeper.config import TOKEN, LOG_LEVEL
from dosekeeper.database import Base, engine
from dosekeeper import models  # noqa: F401
from dosekeeper.delivery.messages import GetScheduled, parse_message, scheduled_entries
from dosekeeper.runtime import Runtime
from main import build_dispatcher

logger = logging.getLogger(__name__)

# Flask wrapper so the bot can run on a web dyno
app = Flask(__name__)

runtime = None
bot_thread = None
bot_running = False


def run_bot():
    """Run the bot in a separate thread."""
    global runtime, bot_running

    if not TOKEN:
        logger.error("BOT_TOKEN is not set")
        return

    logger.info("Starting bot with token: %s...", TOKEN[:10])
    Base.metadata.create_all(bind=engine)

    bot = Bot(
        token=TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    runtime = Runtime()
    dp = build_dispatcher(runtime)
    runtime.start()
    bot_running = True

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        # Signal handlers can only be installed from the main thread
        loop.run_until_complete(dp.start_polling(bot, handle_signals=False))
    except Exception as e:
        logger.error("Bot stopped with an error: %s", e)
    finally:
        bot_running = False
        runtime.stop()
        loop.run_until_complete(bot.session.close())


def _token_preview():
    return f"{TOKEN[:10]}..." if TOKEN else "not_set"


@app.route("/health")
def health():
    """Bot health check"""
    if runtime and bot_running:
        return jsonify({
            "status": "running",
            "agent": "active",
            "users": len(runtime.registry.user_ids()),
            "token": _token_preview(),
        })
    return jsonify({
        "status": "error",
        "message": "Bot not initialized",
        "token": _token_preview(),
        "bot_running": bot_running,
    })


@app.route("/scheduled")
def scheduled():
    """Reminders currently armed in the delivery agent"""
    if not (runtime and bot_running):
        return jsonify({"status": "error", "message": "Bot not initialized"}), 503
    try:
        entries = runtime.channel.request_scheduled(timeout=5.0)
    except concurrent.futures.TimeoutError:
        return jsonify({"status": "error", "message": "Delivery agent did not answer"}), 504
    return jsonify({"status": "ok", "scheduled": scheduled_entries(entries)})


@app.route("/agent/messages", methods=["POST"])
def post_agent_message():
    """Hand one JSON message (e.g. CANCEL_NOTIFICATION) to the delivery agent"""
    if not (runtime and bot_running):
        return jsonify({"status": "error", "message": "Bot not initialized"}), 503
    try:
        message = parse_message(request.get_json(force=True, silent=True) or {})
    except ValidationError as e:
        return jsonify({"status": "error", "message": str(e)}), 400
    if isinstance(message, GetScheduled):
        return jsonify({"status": "error", "message": "Use /scheduled"}), 400
    runtime.channel.post_to_agent(message)
    return jsonify({"status": "queued", "type": message.type}), 202


@app.route("/start_bot", methods=["POST"])
def start_bot():
    """Start the bot if it is not running"""
    global bot_thread

    if bot_thread and bot_thread.is_alive() and bot_running:
        return jsonify({"status": "already_running"})
    if not TOKEN:
        return jsonify({"status": "error", "message": "BOT_TOKEN is not set"})

    bot_thread = threading.Thread(target=run_bot, daemon=False)
    bot_thread.start()
    # Give the bot a moment to come up
    time.sleep(2)
    return jsonify({"status": "started", "token": _token_preview(), "bot_running": bot_running})


@app.route("/debug")
def debug():
    return jsonify({
        "token_set": bool(TOKEN),
        "token_preview": _token_preview(),
        "runtime_exists": runtime is not None,
        "bot_running": bot_running,
        "thread_alive": bot_thread.is_alive() if bot_thread else False,
    })


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if TOKEN:
        logger.info("Starting bot automatically...")
        bot_thread = threading.Thread(target=run_bot, daemon=False)
        bot_thread.start()
        time.sleep(3)
    else:
        logger.warning("BOT_TOKEN is not set, the bot will not start")

    app.run(host="0.0.0.0", port=5000, debug=False)
