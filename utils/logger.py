"""
Trading Robot Engine Logging System
Централизованная система логирования с поддержкой файлов и консоли
"""

import re
import sys
import json
import logging
import logging.handlers
import traceback
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict
from functools import lru_cache


# ============================================================================
# КОНСТАНТЫ И КОНФИГУРАЦИЯ
# ============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Эмодзи для разных уровней логирования
LOG_EMOJIS = {
    'DEBUG': '🔍',
    'INFO': 'ℹ️',
    'WARNING': '⚠️',
    'ERROR': '❌',
    'CRITICAL': '🔥'
}

# Цвета для консольного вывода
LOG_COLORS = {
    'DEBUG': '\033[36m',     # Cyan
    'INFO': '\033[32m',      # Green
    'WARNING': '\033[33m',   # Yellow
    'ERROR': '\033[31m',     # Red
    'CRITICAL': '\033[35m',  # Magenta
    'RESET': '\033[0m'       # Reset
}

# Стандартные атрибуты LogRecord, не попадающие в extra
_RECORD_ATTRIBUTES = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'message', 'asctime',
}


# ============================================================================
# КАСТОМНЫЕ ФОРМАТТЕРЫ
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """
    Форматтер с цветным выводом для консоли
    """

    def format(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        color = LOG_COLORS.get(level_name, LOG_COLORS['RESET'])
        emoji = LOG_EMOJIS.get(level_name, '')
        reset = LOG_COLORS['RESET']

        # Копия record чтобы не изменять оригинал для других handlers
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = f"{color}{emoji} {level_name}{reset}"

        return super().format(record_copy)


class JSONFormatter(logging.Formatter):
    """
    JSON форматтер для структурированного логирования
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        # Дополнительные поля из extra (robot_id, account_id и т.д.)
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


# ============================================================================
# ФИЛЬТРЫ
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """
    Фильтр для скрытия чувствительных данных
    """

    SENSITIVE_PATTERNS = ['api_key', 'apikey', 'password', 'token', 'secret']

    MASK_PATTERNS = [
        (r'(api_?key["\']?\s*[:=]\s*["\']?)([^"\'&>\s]+)', r'\1***MASKED***'),
        (r'(password["\']?\s*[:=]\s*["\']?)([^"\'&>\s]+)', r'\1***MASKED***'),
        (r'(token["\']?\s*[:=]\s*["\']?)([^"\'&>\s]+)', r'\1***MASKED***'),
        (r'(secret["\']?\s*[:=]\s*["\']?)([^"\'&>\s]+)', r'\1***MASKED***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        lowered = message.lower()

        if any(pattern in lowered for pattern in self.SENSITIVE_PATTERNS):
            record.msg = self._mask_sensitive_data(message)
            record.args = None

        return True

    def _mask_sensitive_data(self, message: str) -> str:
        """Маскировка чувствительных данных"""
        for pattern, replacement in self.MASK_PATTERNS:
            message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)
        return message


# ============================================================================
# ОСНОВНОЙ КЛАСС ЛОГИРОВАНИЯ
# ============================================================================

class EngineLogger:
    """
    Главный класс для управления логированием движка роботов
    """

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: Dict[str, logging.Handler] = {}
        self._initialized = False

    def setup(
        self,
        log_level: str = "INFO",
        log_format: Optional[str] = None,
        log_date_format: Optional[str] = None,
        log_to_file: bool = False,
        log_file_path: str = "logs/trading_robots.log",
        log_file_max_size: int = 10 * 1024 * 1024,  # 10MB
        log_file_backup_count: int = 5,
        colored_console: bool = True,
        json_format: bool = False,
        force: bool = False,
    ) -> None:
        """
        Настройка системы логирования

        Args:
            log_level: Уровень логирования
            log_format: Формат логов
            log_date_format: Формат даты
            log_to_file: Логировать в файл
            log_file_path: Путь к файлу логов
            log_file_max_size: Максимальный размер файла
            log_file_backup_count: Количество архивных файлов
            colored_console: Цветной вывод в консоль
            json_format: JSON формат для файлов
            force: Переинициализировать, даже если уже настроено
        """
        if self._initialized and not force:
            return

        if force:
            self._close_handlers()

        log_format = log_format or DEFAULT_FORMAT
        log_date_format = log_date_format or DEFAULT_DATE_FORMAT

        if colored_console:
            console_formatter = ColoredFormatter(log_format, log_date_format)
        else:
            console_formatter = logging.Formatter(log_format, log_date_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        console_handler.addFilter(SensitiveDataFilter())
        self._handlers['console'] = console_handler

        if log_to_file:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=log_file_max_size,
                backupCount=log_file_backup_count,
                encoding='utf-8'
            )
            if json_format:
                file_handler.setFormatter(JSONFormatter())
            else:
                file_handler.setFormatter(logging.Formatter(log_format, log_date_format))
            file_handler.addFilter(SensitiveDataFilter())
            self._handlers['file'] = file_handler

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper()))

        # Чужие handlers (например pytest caplog) не трогаем
        for handler in self._handlers.values():
            if handler not in root_logger.handlers:
                root_logger.addHandler(handler)

        self._initialized = True

        logger = self.get_logger("system.logger")
        logger.info(f"🚀 Engine logger initialized (level: {log_level}, file: {log_to_file})")

    def get_logger(self, name: str) -> logging.Logger:
        """
        Получение логгера по имени с кешированием
        """
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]

    def log_trading_event(
        self,
        event_type: str,
        robot_id: str,
        message: str = "",
        account_id: Optional[str] = None,
        **extra_data
    ) -> None:
        """
        Специальное логирование событий роботов
        """
        logger = self.get_logger("trading.robots")
        logger.info(message, extra={
            'event_type': event_type,
            'robot_id': robot_id,
            'account_id': account_id,
            'log_type': 'trading_event',
            **extra_data
        })

    def _close_handlers(self) -> None:
        root_logger = logging.getLogger()
        for handler in self._handlers.values():
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_logger_instance() -> EngineLogger:
    """
    Получение единственного экземпляра логгера
    """
    return EngineLogger()


# Глобальный экземпляр
engine_logger = get_logger_instance()


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def setup_logger(name: str, log_level: str = "INFO", **kwargs) -> logging.Logger:
    """
    Быстрая настройка логгера
    """
    if not engine_logger._initialized:
        engine_logger.setup(log_level=log_level, **kwargs)

    return engine_logger.get_logger(name)


def log_trading_event(
    event_type: str,
    robot_id: str,
    message: str,
    account_id: Optional[str] = None,
    **extra
) -> None:
    """
    Быстрое логирование события робота
    """
    engine_logger.log_trading_event(
        event_type=event_type,
        robot_id=robot_id,
        message=message,
        account_id=account_id,
        **extra
    )


def configure_external_loggers(level: str = "WARNING"):
    """
    Настройка уровня логирования для внешних библиотек
    """
    external_loggers = [
        'aiohttp.access',
        'aiohttp.client',
        'sqlalchemy.engine',
        'aiosqlite',
        'uvicorn.access',
    ]

    for logger_name in external_loggers:
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
