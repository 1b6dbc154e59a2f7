"""
Trading Robot Engine Helper Functions
Набор универсальных вспомогательных функций
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, date, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from functools import wraps
from typing import Any, Callable, Optional, TypeVar, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from utils.logger import setup_logger


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

F = TypeVar('F', bound=Callable[..., Any])


# ============================================================================
# CONSTANTS
# ============================================================================

# Точность денежных колонок в БД
MONEY_PLACES = 8
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)

DEFAULT_TIMEZONE = "UTC"

logger = setup_logger(__name__)


# ============================================================================
# EXCEPTION HANDLING
# ============================================================================

class RobotEngineError(Exception):
    """Базовое исключение движка роботов"""
    pass


class ValidationError(RobotEngineError):
    """Ошибка валидации данных"""
    pass


class ConfigurationError(RobotEngineError):
    """Ошибка конфигурации"""
    pass


# ============================================================================
# DATETIME AND TIME UTILITIES
# ============================================================================

def get_current_utc_datetime() -> datetime:
    """Текущее время в UTC (timezone-aware)"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetime считаем UTC, aware приводим к UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    """
    Получение ZoneInfo по имени

    Неизвестная или пустая зона заменяется на default с предупреждением.
    """
    if not name:
        return ZoneInfo(default)

    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"⚠️ Unknown timezone {name!r}, falling back to {default}")
        return ZoneInfo(default)


def is_valid_timezone(name: str) -> bool:
    """Проверка имени часового пояса"""
    try:
        ZoneInfo(name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


@dataclass(frozen=True)
class TimeOfDay:
    """Время суток HH:MM"""
    hour: int
    minute: int

    def __post_init__(self):
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValidationError(f"Time of day out of range: {self.hour:02d}:{self.minute:02d}")

    @classmethod
    def parse(cls, value: Union[str, 'TimeOfDay']) -> 'TimeOfDay':
        """Разбор строки HH:MM"""
        if isinstance(value, TimeOfDay):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Time of day must be a string, got {type(value).__name__}")

        parts = value.strip().split(':')
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            raise ValidationError(f"Time of day must be HH:MM, got {value!r}")

        return cls(hour=int(parts[0]), minute=int(parts[1]))

    def on_date(self, day: date, tz: ZoneInfo) -> datetime:
        """Локальное время в зоне tz на указанную дату"""
        return datetime(day.year, day.month, day.day, self.hour, self.minute, tzinfo=tz)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


# ============================================================================
# NUMBER UTILITIES
# ============================================================================

def safe_float(value: Any, default: float = 0.0) -> float:
    """Безопасное преобразование в float"""
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (ValueError, TypeError):
        return default


def safe_decimal(value: Any, default: Decimal = Decimal('0')) -> Decimal:
    """Безопасное преобразование в Decimal"""
    try:
        if value is None or value == "":
            return default
        if isinstance(value, float):
            return Decimal(repr(value))
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return default


def to_money(value: Any) -> Decimal:
    """Decimal, округленный до точности денежных колонок"""
    return safe_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


# ============================================================================
# ASYNC UTILITIES
# ============================================================================

async def retry_async(
    func: Callable,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
) -> Any:
    """Повторные попытки для асинхронных функций"""
    name = getattr(func, '__name__', 'callable')

    for attempt in range(max_retries + 1):
        try:
            result = func()
            if inspect.isawaitable(result):
                result = await result
            return result
        except exceptions as e:
            if attempt == max_retries:
                logger.error(f"❌ Max retries ({max_retries}) exceeded for {name}")
                raise

            wait_time = delay * (backoff ** attempt)
            logger.warning(f"⚠️ Attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
            await asyncio.sleep(wait_time)


def create_task_with_logging(coro, name: str = None) -> asyncio.Task:
    """Создание задачи с автоматическим логированием исключений"""
    task = asyncio.create_task(coro, name=name)

    def handle_exception(task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            task_name = task.get_name() or "unnamed_task"
            logger.error(f"❌ Task '{task_name}' failed: {exc}")

    task.add_done_callback(handle_exception)
    return task


# ============================================================================
# PERFORMANCE AND PROFILING
# ============================================================================

class Timer:
    """Контекстный менеджер для измерения времени выполнения"""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()
        logger.debug(f"⏱️ {self.name} took {self.elapsed:.4f}s")

    @property
    def elapsed(self) -> float:
        """Время выполнения в секундах"""
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return 0.0


def measure_execution_time(func: F) -> F:
    """Декоратор для измерения времени выполнения"""
    @wraps(func)
    def sync_wrapper(*args, **kwargs):
        with Timer(f"{func.__name__}"):
            return func(*args, **kwargs)

    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        with Timer(f"{func.__name__}"):
            return await func(*args, **kwargs)

    return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper
