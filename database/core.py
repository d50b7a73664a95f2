from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from config import config


class Base(DeclarativeBase):
    pass


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Создать движок. Для SQLite не используем настройки пула PostgreSQL."""
    engine_kwargs = {
        "echo": echo,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        engine_kwargs.update(
            {
                "poolclass": NullPool,
                # timeout: сколько ждать снятия блокировки записи другим соединением
                "connect_args": {"check_same_thread": False, "timeout": 30},
            }
        )
    else:
        engine_kwargs.update(
            {
                "pool_size": config.DB_POOL_SIZE,
                "max_overflow": config.DB_MAX_OVERFLOW,
                "pool_recycle": 3600,
            }
        )
    return create_async_engine(url, **engine_kwargs)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


# echo включаем только в debug режиме
engine = build_engine(config.DATABASE_URL, echo=config.DEBUG)

session_maker = build_session_maker(engine)
