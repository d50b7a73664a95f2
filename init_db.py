"""
Создание схемы без Alembic (dev/стенд).
Запуск: python init_db.py [--drop]
"""
import asyncio
import logging
import sys

from database.core import engine, Base
import database.models  # noqa: F401  регистрация моделей в Base.metadata

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_db(drop: bool = False):
    async with engine.begin() as conn:
        if drop:
            logger.warning("Dropping tables: %s", ", ".join(sorted(Base.metadata.tables)))
            await conn.run_sync(Base.metadata.drop_all)
        # В проде схему ведут миграции (alembic/versions)
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_db(drop="--drop" in sys.argv[1:]))
