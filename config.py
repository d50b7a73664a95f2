"""
Конфигурация приложения с валидацией через Pydantic.
"""
from typing import Optional
from pathlib import Path
from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Config(BaseSettings):
    """Конфигурация приложения с валидацией."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DB_DIALECT: str = Field(default="sqlite", description="Тип БД: postgres или sqlite")
    DB_POOL_SIZE: int = Field(default=10, description="Размер пула соединений PostgreSQL")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Доп. соединений поверх pool_size")
    DB_USER: str = Field(default="postgres", description="Пользователь БД")
    DB_PASS: str = Field(default="postgres", description="Пароль БД")
    DB_HOST: str = Field(default="localhost", description="Хост БД")
    DB_PORT: str = Field(default="5432", description="Порт БД")
    DB_NAME: str = Field(default="farm_market", description="Имя БД")
    SQLITE_PATH: str = Field(default="farm_market.sqlite3", description="Путь к SQLite файлу")
    # Railway и др. платформы передают один DATABASE_URL — если задан, используем его
    DATABASE_URL_OVERRIDE: Optional[str] = Field(default=None, description="URL БД", validation_alias="DATABASE_URL")

    @field_validator("DB_DIALECT")
    @classmethod
    def validate_db_dialect(cls, v: str) -> str:
        """Валидация типа БД."""
        v = v.lower()
        if v not in ("postgres", "postgresql", "sqlite", "sqlite3"):
            raise ValueError(f"Неподдерживаемый тип БД: {v}")
        return v

    @computed_field
    @property
    def DATABASE_URL(self) -> str:
        """URL подключения к БД. Если задан DATABASE_URL — используем его."""
        raw = self.DATABASE_URL_OVERRIDE
        if raw:
            raw = raw.strip()
            # postgresql://... → для asyncpg нужен postgresql+asyncpg://
            if raw.startswith("postgresql://") and "+asyncpg" not in raw:
                return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
            return raw
        if self.DB_DIALECT in ("sqlite", "sqlite3"):
            base_dir = Path(__file__).resolve().parent
            db_path = Path(self.SQLITE_PATH)
            if not db_path.is_absolute():
                db_path = base_dir / db_path
            return f"sqlite+aiosqlite:///{db_path.resolve().as_posix()}"
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @computed_field
    @property
    def IS_SQLITE(self) -> bool:
        """Работаем ли на SQLite (dev/test)."""
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE.strip().startswith("sqlite")
        return self.DB_DIALECT in ("sqlite", "sqlite3")

    # Telegram (только для доставки уведомлений; пустой токен = уведомления пишутся в лог)
    BOT_TOKEN: str = Field(default="", description="Токен Telegram бота для уведомлений")

    # HTTP API
    API_HOST: str = Field(default="0.0.0.0", description="Хост HTTP API")
    API_PORT: int = Field(default=8000, description="Порт HTTP API")

    # Redis
    REDIS_HOST: str = Field(default="localhost", description="Хост Redis")
    REDIS_PORT: int = Field(default=6379, description="Порт Redis")
    REDIS_DB: int = Field(default=0, description="Номер БД Redis")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Пароль Redis")
    REDIS_CACHE_TTL: int = Field(default=300, description="TTL кеша участников в секундах")

    # Pricing
    DELIVERY_RATE_PER_KM: float = Field(default=10.0, description="Ставка доставки за км")
    DELIVERY_ADJUST_STEP: float = Field(default=10.0, description="Шаг изменения суммы доставки")
    DELIVERY_MAX_MULTIPLIER: float = Field(default=2.0, description="Потолок суммы доставки относительно минимума")
    DEFAULT_DISTANCE_KM: float = Field(default=10.0, description="Расстояние по умолчанию, если нет координат")

    @field_validator("DELIVERY_RATE_PER_KM", "DELIVERY_ADJUST_STEP", "DEFAULT_DISTANCE_KM")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Ставки и расстояния должны быть положительными."""
        if v <= 0:
            raise ValueError(f"Значение должно быть положительным: {v}")
        return v

    @field_validator("DELIVERY_MAX_MULTIPLIER")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Потолок должен быть выше минимума."""
        if v <= 1:
            raise ValueError(f"DELIVERY_MAX_MULTIPLIER должен быть > 1: {v}")
        return v

    # Transactions
    TX_RETRY_ATTEMPTS: int = Field(default=3, description="Количество попыток транзакции при конфликте")
    TX_RETRY_BASE_DELAY: float = Field(default=0.05, description="Базовая задержка между попытками (сек)")

    # Scheduler
    SWEEP_INTERVAL_SECONDS: float = Field(default=15.0, description="Период фоновой проверки таймеров")
    AUTO_ACCEPT_HIGHEST_ON_CLOSE: bool = Field(
        default=False,
        description="Автоматически принимать максимальную ставку после окончания торгов"
    )

    # Courier ETA (для расчёта доли доставок вовремя)
    COURIER_AVG_SPEED_KMH: float = Field(default=20.0, description="Средняя скорость курьера, км/ч")
    COURIER_PICKUP_BUFFER_MINUTES: int = Field(default=30, description="Запас времени на забор заказа, мин")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Уровень логирования")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Валидация уровня логирования."""
        v = v.upper()
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v not in valid_levels:
            raise ValueError(f"Неподдерживаемый уровень логирования: {v}. Допустимые: {valid_levels}")
        return v


# Создаем экземпляр конфигурации с валидацией
try:
    config = Config()
except Exception as e:
    import sys
    print(f"❌ Ошибка загрузки конфигурации: {e}", file=sys.stderr)
    sys.exit(1)
