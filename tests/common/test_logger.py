# tests/common/test_logger.py
"""
Тесты для модуля логирования.
"""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

import src.common.logger as logger_module
from src.common.constants import TypeMsg
from src.common.logger import (
    ColoredFormatter,
    DateBasedRotatingFileHandler,
    JsonFormatter,
    RequestIdFilter,
    get_logger,
    log_error,
    log_info,
    log_warning,
    request_id_var,
    setup_logging,
)


def make_record(level: int = logging.INFO, msg: str = "Бронь создана", **attrs: Any) -> logging.LogRecord:
    record = logging.LogRecord("car_rental", level, "reservations.py", 17, msg, (), None)
    record.module = "reservations"
    record.funcName = "create"
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def fresh_loggers() -> Any:
    """Пустой кэш логгеров и сброшенные файловые хендлеры."""
    saved = dict(logger_module._loggers)
    logger_module._loggers.clear()
    logger_module._GLOBAL_FILE_HANDLER = None
    logger_module._GLOBAL_ERROR_HANDLER = None
    logger_module._LOGGING_INITIALIZED = False
    yield
    logger_module._loggers.clear()
    logger_module._loggers.update(saved)
    logger_module._GLOBAL_FILE_HANDLER = None
    logger_module._GLOBAL_ERROR_HANDLER = None
    logger_module._LOGGING_INITIALIZED = False


class TestJsonFormatter:
    """JSON формат записей."""

    def test_fields(self) -> None:
        data = json.loads(JsonFormatter().format(make_record(extra_data={"booking_id": "b-1"})))

        assert data["level"] == "INFO"
        assert data["message"] == "Бронь создана"
        assert data["function"] == "create"
        assert data["extra"] == {"booking_id": "b-1"}
        assert data["timestamp"].endswith("Z")
        assert "request_id" not in data

    def test_request_id_included(self) -> None:
        data = json.loads(JsonFormatter().format(make_record(request_id="req-1")))

        assert data["request_id"] == "req-1"

    def test_decimal_serialized(self) -> None:
        """Нестандартные значения сериализуются через str."""
        data = json.loads(JsonFormatter().format(make_record(extra_data={"amount": Decimal("80.00")})))

        assert data["extra"]["amount"] == "80.00"

    def test_exception(self) -> None:
        try:
            raise RuntimeError("gateway down")
        except RuntimeError:
            record = make_record(logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: gateway down" in data["exception"]


class TestColoredFormatter:
    """Цветной формат для консоли."""

    def test_caller_and_request_id(self) -> None:
        record = make_record(
            logging.WARNING,
            request_id="sess-9",
            extra_data={
                "caller_function": "respond",
                "caller_module": "src.core.bookings.driver_bookings",
                "caller_file": "driver_bookings.py",
                "caller_line": 250,
            },
        )

        text = ColoredFormatter().format(record)

        assert "\033[33m[WARNING]" in text
        assert "<sess-9>" in text
        assert "src.core.bookings.driver_bookings.respond() driver_bookings.py:250" in text
        assert text.endswith("Бронь создана")

    def test_without_extra(self) -> None:
        text = ColoredFormatter().format(make_record(logging.DEBUG))

        assert "[DEBUG]" in text
        assert "<" not in text


class TestRequestIdFilter:
    """Подстановка request_id из контекста."""

    def test_context_value_copied(self) -> None:
        token = request_id_var.set("req-77")
        try:
            record = make_record()
            assert RequestIdFilter().filter(record) is True
        finally:
            request_id_var.reset(token)

        assert record.request_id == "req-77"

    def test_default_none(self) -> None:
        record = make_record()
        RequestIdFilter().filter(record)

        assert record.request_id is None


class TestRotatingHandler:
    """Ротация файла по размеру."""

    def test_rollover_archives_by_date(self, tmp_path: Path) -> None:
        handler = DateBasedRotatingFileHandler(str(tmp_path / "logs"), max_bytes=64, logger_name="car_rental")
        handler.setFormatter(logging.Formatter("%(message)s"))
        try:
            for _ in range(5):
                handler.emit(make_record(msg="x" * 40))
        finally:
            handler.close()

        files = sorted(p.name for p in (tmp_path / "logs").iterdir())
        assert "car_rental.log" in files
        assert any(name.startswith("car_rental_") for name in files)

    def test_no_rollover_when_unlimited(self, tmp_path: Path) -> None:
        handler = DateBasedRotatingFileHandler(str(tmp_path), max_bytes=0, logger_name="app")
        try:
            assert not handler.shouldRollover(make_record())
        finally:
            handler.close()


class TestGetLogger:
    """Создание и кэширование логгеров."""

    def test_cached(self, fresh_loggers: None) -> None:
        assert get_logger("car_rental.test_cache") is get_logger("car_rental.test_cache")

    def test_console_handler_has_filter(self, fresh_loggers: None) -> None:
        logger = get_logger("car_rental.test_console")

        assert logger.propagate is False
        assert any(isinstance(f, RequestIdFilter) for h in logger.handlers for f in h.filters)

    def test_file_handlers_from_settings(self, fresh_loggers: None, tmp_path: Path) -> None:
        """При LOG_TO_FILE добавляются основной файл и error.log."""
        cfg = {
            "level": "INFO",
            "format": "json",
            "to_file": True,
            "file_path": str(tmp_path / "app.log"),
            "max_bytes": 1024,
        }
        with patch.object(logger_module, "_read_logging_settings", return_value=cfg):
            logger = get_logger("car_rental.test_files")

        file_handlers = [h for h in logger.handlers if isinstance(h, DateBasedRotatingFileHandler)]
        try:
            assert logger.level == logging.INFO
            assert {Path(h.baseFilename).name for h in file_handlers} == {"app.log", "error.log"}
            assert isinstance(file_handlers[0].formatter, JsonFormatter)
        finally:
            for handler in file_handlers:
                logger.removeHandler(handler)
                handler.close()

    def test_mocked_settings_fall_back(self) -> None:
        """Значения не того типа заменяются значениями по умолчанию."""
        fake = MagicMock()
        fake.logging.LOG_LEVEL = 10
        with patch("src.config.settings", fake):
            cfg = logger_module._read_logging_settings()

        assert cfg["level"] == "DEBUG"
        assert cfg["to_file"] is False


class TestSetupLogging:
    """Инициализация логирования."""

    def test_quiets_third_party(self, fresh_loggers: None) -> None:
        setup_logging()

        for name in ("asyncpg", "aio_pika", "httpx", "uvicorn.access"):
            assert logging.getLogger(name).level == logging.WARNING

    def test_idempotent(self, fresh_loggers: None) -> None:
        setup_logging()
        first = logger_module._loggers["car_rental"]
        setup_logging()

        assert logger_module._loggers["car_rental"] is first


class TestLogFunctions:
    """Асинхронные функции логирования."""

    @pytest.mark.asyncio
    async def test_level_from_type_msg(self) -> None:
        logger = MagicMock()
        with patch("src.common.logger.get_logger", return_value=logger):
            await log_info("сверка", type_msg=TypeMsg.WARNING)
            await log_info("старт", type_msg=TypeMsg.DEBUG)
            await log_info("готово")

        levels = [c.args[0] for c in logger.log.call_args_list]
        assert levels == [logging.WARNING, logging.DEBUG, logging.INFO]

    @pytest.mark.asyncio
    async def test_caller_is_outside_logger_module(self) -> None:
        """log_warning проходит через внутренние функции, но вызывающим остаётся тест."""
        logger = MagicMock()
        with patch("src.common.logger.get_logger", return_value=logger):
            await log_warning("webhook", extra={"payment_id": "p-1"})

        extra = logger.log.call_args.kwargs["extra"]["extra_data"]
        assert extra["caller_function"] == "test_caller_is_outside_logger_module"
        assert extra["caller_file"] == "test_logger.py"
        assert extra["payment_id"] == "p-1"

    @pytest.mark.asyncio
    async def test_log_error_exc_info(self) -> None:
        logger = MagicMock()
        with patch("src.common.logger.get_logger", return_value=logger) as get:
            await log_error("сбой", logger_name="car_rental.worker", exc_info=True)

        get.assert_called_once_with("car_rental.worker")
        assert logger.log.call_args.args[0] == logging.ERROR
        assert logger.log.call_args.kwargs["exc_info"] is True
