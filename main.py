import asyncio
import logging
import sys
import os
import time
from logging.handlers import RotatingFileHandler

import uvicorn
from aiogram import Bot

from config import config

# Configure logging with rotating file handler
log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
log_level = getattr(logging, config.LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=log_level,
    format=log_format,
    handlers=[
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            'farm_market.log',
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
    ]
)

logger = logging.getLogger(__name__)


def setup_asyncio_exception_logging() -> None:
    """
    Ловит исключения из "фоновых" задач asyncio (Task exception was never retrieved),
    которые не проходят через обработчики HTTP API.
    """
    loop = asyncio.get_running_loop()

    def _handler(loop: asyncio.AbstractEventLoop, context: dict):
        msg = context.get("message", "asyncio exception")
        exc = context.get("exception")
        logger.error("ASYNCIO %s", msg, exc_info=exc)

    loop.set_exception_handler(_handler)


async def wait_for_db() -> None:
    """
    Ждём БД при старте (чтобы сервис не падал из‑за того, что PostgreSQL ещё поднимается).

    Управляется env:
    - DB_WAIT_SECONDS (по умолчанию 60)
    - DB_RETRY_MAX_DELAY (по умолчанию 10)
    """
    max_wait = int(os.getenv("DB_WAIT_SECONDS", "60"))
    max_delay = float(os.getenv("DB_RETRY_MAX_DELAY", "10"))

    from database.core import engine
    from sqlalchemy.exc import SQLAlchemyError
    from sqlalchemy import text

    deadline = time.monotonic() + max_wait
    attempt = 0

    while True:
        attempt += 1
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return
        except Exception as e:
            # retry только для ошибок подключения/движка, а не для логических ошибок в коде
            retryable = isinstance(e, (SQLAlchemyError, ConnectionRefusedError, OSError)) or (
                e.__class__.__module__.startswith("asyncpg.")
            )
            if not retryable:
                raise
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error("Database is not reachable: %r", e, exc_info=True)
                logger.error(
                    "Connection settings: DB_DIALECT=%s DB_HOST=%s DB_PORT=%s DB_NAME=%s DB_USER=%s",
                    config.DB_DIALECT, config.DB_HOST, config.DB_PORT, config.DB_NAME, config.DB_USER,
                )
                logger.error("Check that PostgreSQL is running and the schema exists (python init_db.py)")
                raise

            delay = min(max_delay, 1.0 * (2 ** min(attempt - 1, 6)))
            delay = min(delay, max(1.0, remaining))
            logger.warning(
                "DB not ready (attempt=%s). Retry in %.1fs (remaining=%.1fs). err=%s",
                attempt,
                delay,
                remaining,
                repr(e),
            )
            await asyncio.sleep(delay)


async def connect_redis():
    """Redis для кеша участников; None если недоступен."""
    try:
        import redis.asyncio as redis
        redis_client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            decode_responses=False
        )
        await redis_client.ping()
        logger.info("Redis connected")
        return redis_client
    except Exception as e:
        logger.warning("Redis not available, using memory cache: %s", e)
        return None


async def main():
    logger.info("Starting farm market core...")
    setup_asyncio_exception_logging()
    logger.info("DB_DIALECT=%s DATABASE_URL=%s", config.DB_DIALECT, config.DATABASE_URL)

    # Ждём БД с ретраями (чтобы не падать на старте)
    await wait_for_db()

    # В режиме SQLite всегда поднимаем таблицы автоматически (чтобы проект был "рабочим из коробки")
    if config.IS_SQLITE:
        from database.core import Base, engine
        import database.models  # noqa: F401  регистрация моделей в Base.metadata
        reset_db = os.getenv("RESET_DB", "").lower() in ("1", "true", "yes")
        if reset_db:
            logger.warning("SQLite mode: RESET_DB enabled -> drop_all + create_all")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
        logger.info("SQLite mode: ensuring tables exist (create_all)...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("SQLite mode: tables are ready")

    redis_client = await connect_redis()

    # Инициализируем кеш участников
    from services.cache import init_cache
    cache = await init_cache(redis_client)

    from api import Services, create_app
    from database.core import session_maker
    from services.actors import ActorDirectory
    from services.notifications import LogNotifier, TelegramNotifier
    from services.scheduler import start_sweep, stop_sweep

    bot = None
    if config.BOT_TOKEN:
        bot = Bot(token=config.BOT_TOKEN)
        notifier = TelegramNotifier(bot, ActorDirectory(cache), session_maker)
        logger.info("Notifications: Telegram")
    else:
        notifier = LogNotifier()
        logger.warning("BOT_TOKEN пустой: уведомления пишутся только в лог")

    services = Services(session_maker, notifier=notifier, cache=cache)
    app = create_app(services)
    start_sweep(session_maker, services.fulfillment, services.ledger)

    server = uvicorn.Server(
        uvicorn.Config(app, host=config.API_HOST, port=config.API_PORT, log_level=config.LOG_LEVEL.lower())
    )
    try:
        logger.info("API listening on %s:%s", config.API_HOST, config.API_PORT)
        await server.serve()
    except Exception as e:
        logger.error("Error running API server: %s", e, exc_info=True)
        raise
    finally:
        stop_sweep()
        if bot is not None:
            await bot.session.close()
        if redis_client is not None:
            # redis>=5 рекомендует aclose()
            await redis_client.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service stopped by user")
    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
        sys.exit(1)
