"""
Модуль для настройки структурированного логирования
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional

# Стандартные атрибуты LogRecord, которые не относятся к extra
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    Форматтер для логирования в JSON формате
    """
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Поля, переданные через extra={...}, оказываются атрибутами записи
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(log_level: Optional[str] = None) -> logging.Logger:
    """
    Настройка логирования для приложения

    Args:
        log_level: Уровень логирования (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                  По умолчанию берется из настроек (LOG_LEVEL) или INFO

    Returns:
        Настроенный logger
    """
    from tradeframe.config import get_settings
    settings = get_settings()

    level = (log_level or settings.log_level).upper()

    logger = logging.getLogger("tradeframe")
    logger.setLevel(getattr(logging, level, logging.INFO))

    # Убираем дублирование логов
    logger.propagate = False

    # Повторный вызов не должен добавлять второй handler
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level, logging.INFO))

    # В production - JSON, в development - читаемый формат
    if settings.environment == "production":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# Создаем глобальный logger
logger = setup_logging()
