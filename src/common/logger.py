# src/common/logger.py
"""
Логирование: JSON для продакшна, цветной текст для разработки.

Каждая запись несёт request_id текущего HTTP запроса или WS сессии
(request_id_var) и место вызова log_* функции. При LOG_TO_FILE все
логгеры пишут в общий файл и дублируют ошибки в error.log.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import Any

from src.common.constants import TypeMsg


DEFAULT_LOGGER_NAME = "car_rental"

_GLOBAL_FILE_HANDLER: logging.Handler | None = None
_GLOBAL_ERROR_HANDLER: logging.Handler | None = None
_LOGGING_INITIALIZED: bool = False

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_LEVELS: dict[TypeMsg, int] = {
    TypeMsg.DEBUG: logging.DEBUG,
    TypeMsg.INFO: logging.INFO,
    TypeMsg.WARNING: logging.WARNING,
    TypeMsg.ERROR: logging.ERROR,
    TypeMsg.CRITICAL: logging.CRITICAL,
}

# Библиотеки, чей INFO забивает лог
_NOISY_LOGGERS = ("asyncpg", "redis", "aio_pika", "aiormq", "httpx", "uvicorn.access")


def _caller(extra_data: dict[str, Any]) -> str:
    func = extra_data.get("caller_function")
    if not func:
        return ""
    return f"{extra_data.get('caller_module')}.{func}() {extra_data.get('caller_file')}:{extra_data.get('caller_line')}"


class JsonFormatter(logging.Formatter):
    """Одна JSON строка на запись."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if getattr(record, "request_id", None):
            data["request_id"] = record.request_id
        if hasattr(record, "extra_data"):
            data["extra"] = record.extra_data
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """
    "2030-01-01 10:00:00 [INFO] <req-id> [module.func() file.py:42] сообщение"
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    def _dim(self, text: str) -> str:
        return f" {self.GRAY}{text}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            f" {self.COLORS.get(record.levelname, self.GRAY)}[{record.levelname}]{self.RESET}",
        ]
        request_id = getattr(record, "request_id", None)
        if request_id:
            parts.append(self._dim(f"<{request_id}>"))
        caller = _caller(getattr(record, "extra_data", None) or {})
        if caller:
            parts.append(self._dim(f"[{caller}]"))
        parts.append(f" {record.getMessage()}")

        text = "".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class DateBasedRotatingFileHandler(RotatingFileHandler):
    """
    Пишет в <log_dir>/<logger_name>.log. Когда файл дорастает до max_bytes,
    он переименовывается в <logger_name>_<дата-время>.log и открывается заново.
    """

    def __init__(self, log_dir: str, max_bytes: int, logger_name: str = "app", encoding: str = "utf-8"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.logger_name = logger_name
        super().__init__(
            filename=str(self.log_dir / f"{logger_name}.log"),
            maxBytes=max_bytes,
            backupCount=0,
            encoding=encoding,
        )

    def _archive_path(self) -> Path:
        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        return self.log_dir / f"{self.logger_name}_{stamp}.log"

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        if os.path.exists(self.baseFilename):
            try:
                self.rotate(self.baseFilename, str(self._archive_path()))
            except OSError:
                # Файл держит другой процесс, продолжаем писать в него
                pass
        self.stream = self._open()


_loggers: dict[str, logging.Logger] = {}

# Поле конфигурации -> (атрибут LoggingSettings, тип, значение по умолчанию)
_SETTINGS_SPEC: dict[str, tuple[str, type, Any]] = {
    "level": ("LOG_LEVEL", str, "DEBUG"),
    "format": ("LOG_FORMAT", str, "colored"),
    "to_file": ("LOG_TO_FILE", bool, False),
    "file_path": ("LOG_FILE_PATH", str, "logs/app.log"),
    "max_bytes": ("LOG_MAX_BYTES", int, 10 * 1024 * 1024),
}


def _read_logging_settings() -> dict[str, Any]:
    """
    Секция logging из конфигурации. Пока конфигурация не загружена
    (или подменена моком), используются значения по умолчанию.
    """
    try:
        from src.config import settings
        section = settings.logging
    except Exception:
        section = None

    cfg: dict[str, Any] = {}
    for key, (attr, kind, default) in _SETTINGS_SPEC.items():
        value = getattr(section, attr, default)
        cfg[key] = value if isinstance(value, kind) else default
    return cfg


def _shared_file_handlers(cfg: dict[str, Any], formatter: logging.Formatter) -> list[logging.Handler]:
    """Файловые хендлеры создаются один раз и подключаются ко всем логгерам."""
    global _GLOBAL_FILE_HANDLER, _GLOBAL_ERROR_HANDLER
    log_path = Path(cfg["file_path"])

    if _GLOBAL_FILE_HANDLER is None:
        # SERVICE_NAME разводит по файлам процессы api и worker
        service = os.getenv("SERVICE_NAME")
        name = f"{log_path.stem}_{service}" if service else log_path.stem
        _GLOBAL_FILE_HANDLER = DateBasedRotatingFileHandler(str(log_path.parent), cfg["max_bytes"], name)
        _GLOBAL_FILE_HANDLER.setFormatter(formatter)
        _GLOBAL_FILE_HANDLER.addFilter(RequestIdFilter())

    if _GLOBAL_ERROR_HANDLER is None:
        _GLOBAL_ERROR_HANDLER = DateBasedRotatingFileHandler(str(log_path.parent), cfg["max_bytes"], "error")
        _GLOBAL_ERROR_HANDLER.setLevel(logging.ERROR)
        _GLOBAL_ERROR_HANDLER.setFormatter(formatter)
        _GLOBAL_ERROR_HANDLER.addFilter(RequestIdFilter())

    return [_GLOBAL_FILE_HANDLER, _GLOBAL_ERROR_HANDLER]


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Логгер с хендлерами по конфигурации, кэшируется по имени."""
    cached = _loggers.get(name)
    if cached is not None:
        return cached

    cfg = _read_logging_settings()
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, cfg["level"].upper(), logging.DEBUG))
    logger.propagate = False

    if not logger.handlers:
        formatter: logging.Formatter = JsonFormatter() if cfg["format"] == "json" else ColoredFormatter()
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console.addFilter(RequestIdFilter())
        logger.addHandler(console)
        if cfg["to_file"]:
            for handler in _shared_file_handlers(cfg, formatter):
                logger.addHandler(handler)

    _loggers[name] = logger
    return logger


def setup_logging() -> None:
    """Настраивает корневой логгер приложения. Повторный вызов ничего не делает."""
    global _LOGGING_INITIALIZED
    if _LOGGING_INITIALIZED:
        return
    _LOGGING_INITIALIZED = True

    get_logger(DEFAULT_LOGGER_NAME)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _get_caller_info() -> dict[str, Any]:
    """Первый кадр стека за пределами этого модуля."""
    frame: FrameType | None = sys._getframe(1)
    try:
        while frame is not None and frame.f_code.co_filename == __file__:
            frame = frame.f_back
        if frame is None:
            return {}
        return {
            "caller_function": frame.f_code.co_name,
            "caller_module": frame.f_globals.get("__name__", "unknown"),
            "caller_file": Path(frame.f_code.co_filename).name,
            "caller_line": frame.f_lineno,
        }
    finally:
        del frame


def _emit(
    level: int,
    message: str,
    logger_name: str,
    extra: dict[str, Any] | None,
    exc_info: bool = False,
) -> None:
    get_logger(logger_name).log(
        level,
        message,
        extra={"extra_data": {**_get_caller_info(), **(extra or {})}},
        exc_info=exc_info,
    )


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Уровень записи задаётся type_msg."""
    _emit(_LEVELS.get(type_msg, logging.INFO), message, logger_name, extra)


async def log_debug(message: str, logger_name: str = DEFAULT_LOGGER_NAME, extra: dict[str, Any] | None = None) -> None:
    _emit(logging.DEBUG, message, logger_name, extra)


async def log_warning(message: str, logger_name: str = DEFAULT_LOGGER_NAME, extra: dict[str, Any] | None = None) -> None:
    _emit(logging.WARNING, message, logger_name, extra)


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """exc_info=True добавляет трейсбек обрабатываемого исключения."""
    _emit(logging.ERROR, message, logger_name, extra, exc_info=exc_info)
