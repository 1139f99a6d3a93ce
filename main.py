import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from dosekeeper.config import TOKEN, LOG_LEVEL
from dosekeeper.database import Base, engine
from dosekeeper import models  # noqa: F401  registers the tables
from dosekeeper.handlers import start  # shared router used by every handler module
from dosekeeper.handlers.middleware import ForegroundMiddleware
from dosekeeper.runtime import Runtime


def build_dispatcher(runtime: Runtime) -> Dispatcher:
    dp = Dispatcher()
    dp["runtime"] = runtime
    dp.message.outer_middleware(ForegroundMiddleware(runtime))
    dp.callback_query.outer_middleware(ForegroundMiddleware(runtime))
    dp.include_router(start.router)
    return dp


async def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    # Create tables if they do not exist yet
    Base.metadata.create_all(bind=engine)

    bot = Bot(
        token=TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    runtime = Runtime()
    dp = build_dispatcher(runtime)

    runtime.start()
    logging.info("Bot started")
    try:
        await dp.start_polling(bot)
    finally:
        runtime.stop()
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
