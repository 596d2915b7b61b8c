# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Источник истины: config/config.json.
Секреты и адреса хостов переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.common.errors import ConfigurationError


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации (CONFIG_PATH переопределяет)."""
    override = os.getenv("CONFIG_PATH")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """
    Загружает config.json и возвращает словарь.
    Отсутствующий файл означает конфигурацию по умолчанию.
    """
    config_path = path or get_config_path()
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    # Ключи _comment_* служат документацией внутри файла
    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class EnvSecretsModel(BaseModel):
    """
    Секция с секретами. Поле из ENV_SECRETS, не переданное явно
    или пустое, берётся из одноимённой переменной окружения.
    """
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="before")
    @classmethod
    def fill_from_env(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        filled = dict(data)
        for name in cls.ENV_SECRETS:
            env_value = os.getenv(name)
            if not filled.get(name) and env_value:
                filled[name] = env_value
        return filled


class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "car_rental"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class ApiSettings(BaseModel):
    """Настройки HTTP/WebSocket сервера."""
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    API_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["*"])


class AuthSettings(EnvSecretsModel):
    """Настройки JWT."""
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ("JWT_SECRET",)
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    DEVICE_TOKEN_TTL_DAYS: int = 7


class DatabaseSettings(EnvSecretsModel):
    """Настройки PostgreSQL."""
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ("DB_PASSWORD",)
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "car_rental"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(EnvSecretsModel):
    """Настройки Redis."""
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ("REDIS_PASSWORD",)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "rental"
    REDIS_MAX_CONNECTIONS: int = 50

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(EnvSecretsModel):
    """Настройки RabbitMQ."""
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ("RABBITMQ_PASSWORD",)
    RABBITMQ_ENABLED: bool = False
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "rental.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class PaynowSettings(EnvSecretsModel):
    """Настройки платёжного шлюза Paynow."""
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ("PAYNOW_ID", "PAYNOW_KEY")
    PAYNOW_ID: str = ""
    PAYNOW_KEY: str = ""
    PAYNOW_BASE_URL: str = "https://www.paynow.co.zw/interface"
    PAYNOW_RESULT_URL: str = "http://localhost:8080/api/v1/payments/webhook/paynow"
    PAYNOW_RETURN_URL: str = "http://localhost:3000/payments/return"
    PAYNOW_AUTH_EMAIL: str = ""
    REQUEST_TIMEOUT: float = 10.0
    INITIATE_TIMEOUT: float = 30.0


class BookingSettings(BaseModel):
    """Правила бронирований."""
    PAYMENT_WINDOW_MINUTES: int = 30
    DRIVER_REQUEST_TTL_MINUTES: int = 1440
    BOOKING_CODE_MAX_ATTEMPTS: int = 5
    STORAGE_BACKEND: str = "postgres"


class RealtimeSettings(BaseModel):
    """Настройки real-time сессий."""
    BROADCAST_BUS: str = "local"
    BROADCAST_CHANNEL: str = "rental:broadcast"
    SESSION_QUEUE_SIZE: int = 256
    PING_INTERVAL: int = 25


class WorkerSettings(BaseModel):
    """Интервалы фоновых воркеров (секунды)."""
    EXPIRY_SWEEP_INTERVAL: float = 60.0
    PAYMENT_RECONCILE_INTERVAL: float = 120.0
    RECONCILE_BATCH_SIZE: int = 50


class SmtpSettings(EnvSecretsModel):
    """Учётные данные SMTP (доставка писем выполняется внешним сервисом)."""
    ENV_SECRETS: ClassVar[tuple[str, ...]] = ("SMTP_PASSWORD",)
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "no-reply@rental.local"


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    paynow: PaynowSettings = Field(default_factory=PaynowSettings)
    booking: BookingSettings = Field(default_factory=BookingSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        data = load_config_json(path)

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "car_rental"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "all")),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=os.getenv("LOG_LEVEL", data.get("LOG_LEVEL", "DEBUG")),
                LOG_TO_FILE=_env_bool("LOG_TO_FILE", data.get("LOG_TO_FILE", False)),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=os.getenv("LOG_FORMAT", data.get("LOG_FORMAT", "colored")),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
            ),
            api=ApiSettings(
                API_HOST=os.getenv("API_HOST", data.get("API_HOST", "0.0.0.0")),
                API_PORT=int(os.getenv("API_PORT", data.get("API_PORT", 8080))),
                API_PREFIX=data.get("API_PREFIX", "/api/v1"),
                CORS_ORIGINS=data.get("CORS_ORIGINS", ["*"]),
            ),
            auth=AuthSettings(
                JWT_SECRET=os.getenv("JWT_SECRET", data.get("JWT_SECRET", "")),
                JWT_ALGORITHM=data.get("JWT_ALGORITHM", "HS256"),
                DEVICE_TOKEN_TTL_DAYS=data.get("DEVICE_TOKEN_TTL_DAYS", 7),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "car_rental")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", "rental"),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_ENABLED=_env_bool("RABBITMQ_ENABLED", data.get("RABBITMQ_ENABLED", False)),
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=data.get("RABBITMQ_EXCHANGE", "rental.events"),
                RABBITMQ_PREFETCH_COUNT=data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            paynow=PaynowSettings(
                PAYNOW_ID=os.getenv("PAYNOW_ID", data.get("PAYNOW_ID", "")),
                PAYNOW_KEY=os.getenv("PAYNOW_KEY", data.get("PAYNOW_KEY", "")),
                PAYNOW_BASE_URL=data.get("PAYNOW_BASE_URL", "https://www.paynow.co.zw/interface"),
                PAYNOW_RESULT_URL=os.getenv(
                    "PAYNOW_RESULT_URL",
                    data.get("PAYNOW_RESULT_URL", "http://localhost:8080/api/v1/payments/webhook/paynow"),
                ),
                PAYNOW_RETURN_URL=os.getenv(
                    "PAYNOW_RETURN_URL",
                    data.get("PAYNOW_RETURN_URL", "http://localhost:3000/payments/return"),
                ),
                PAYNOW_AUTH_EMAIL=data.get("PAYNOW_AUTH_EMAIL", ""),
                REQUEST_TIMEOUT=data.get("PAYNOW_REQUEST_TIMEOUT", 10.0),
                INITIATE_TIMEOUT=data.get("PAYNOW_INITIATE_TIMEOUT", 30.0),
            ),
            booking=BookingSettings(
                PAYMENT_WINDOW_MINUTES=data.get("PAYMENT_WINDOW_MINUTES", 30),
                DRIVER_REQUEST_TTL_MINUTES=data.get("DRIVER_REQUEST_TTL_MINUTES", 1440),
                BOOKING_CODE_MAX_ATTEMPTS=data.get("BOOKING_CODE_MAX_ATTEMPTS", 5),
                STORAGE_BACKEND=os.getenv("STORAGE_BACKEND", data.get("STORAGE_BACKEND", "postgres")),
            ),
            realtime=RealtimeSettings(
                BROADCAST_BUS=os.getenv("BROADCAST_BUS", data.get("BROADCAST_BUS", "local")),
                BROADCAST_CHANNEL=data.get("BROADCAST_CHANNEL", "rental:broadcast"),
                SESSION_QUEUE_SIZE=data.get("SESSION_QUEUE_SIZE", 256),
                PING_INTERVAL=data.get("WS_PING_INTERVAL", 25),
            ),
            worker=WorkerSettings(
                EXPIRY_SWEEP_INTERVAL=data.get("EXPIRY_SWEEP_INTERVAL", 60.0),
                PAYMENT_RECONCILE_INTERVAL=data.get("PAYMENT_RECONCILE_INTERVAL", 120.0),
                RECONCILE_BATCH_SIZE=data.get("RECONCILE_BATCH_SIZE", 50),
            ),
            smtp=SmtpSettings(
                SMTP_HOST=os.getenv("SMTP_HOST", data.get("SMTP_HOST", "localhost")),
                SMTP_PORT=int(os.getenv("SMTP_PORT", data.get("SMTP_PORT", 587))),
                SMTP_USER=os.getenv("SMTP_USER", data.get("SMTP_USER", "")),
                SMTP_PASSWORD=os.getenv("SMTP_PASSWORD", data.get("SMTP_PASSWORD", "")),
                SMTP_FROM=data.get("SMTP_FROM", "no-reply@rental.local"),
            ),
        )

    def validate_required(self) -> None:
        """
        Проверяет обязательные секреты.

        Raises:
            ConfigurationError: не задан JWT_SECRET или учётные данные Paynow
        """
        missing = []
        if not self.auth.JWT_SECRET:
            missing.append("JWT_SECRET")
        if not self.paynow.PAYNOW_ID:
            missing.append("PAYNOW_ID")
        if not self.paynow.PAYNOW_KEY:
            missing.append("PAYNOW_KEY")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
