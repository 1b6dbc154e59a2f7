"""
Trading Robot Engine Configuration Settings
Полная конфигурация движка генерации и планирования сделок роботов
"""

import logging
from typing import Optional, Dict, Any
from functools import lru_cache
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.helpers import TimeOfDay, ValidationError, is_valid_timezone


class Environment(str, Enum):
    """Типы окружений"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Уровни логирования"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Главный класс конфигурации с валидацией
    """

    # ============================================================================
    # ОСНОВНЫЕ НАСТРОЙКИ ПРИЛОЖЕНИЯ
    # ============================================================================

    APP_NAME: str = Field(default="Trading Robot Engine", description="Название приложения")
    VERSION: str = Field(default="1.0.0", description="Версия приложения")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Окружение")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    # Server настройки
    HOST: str = Field(default="0.0.0.0", description="IP адрес сервера")
    PORT: int = Field(default=8000, description="Порт сервера")

    # Часовой пояс платформы, если в system_settings ничего не задано
    TIMEZONE: str = Field(default="UTC", description="Часовой пояс платформы по умолчанию")


    # ============================================================================
    # БАЗА ДАННЫХ НАСТРОЙКИ
    # ============================================================================

    DATABASE_URL: str = Field(default="sqlite:///trading_robots.db", description="URL базы данных")
    DATABASE_ECHO: bool = Field(default=False, description="Логировать SQL запросы")


    # ============================================================================
    # РЫНОЧНЫЕ ДАННЫЕ (TWELVE DATA)
    # ============================================================================

    TWELVEDATA_API_KEY: Optional[str] = Field(default=None, description="Twelve Data API ключ")
    TWELVEDATA_REST_URL: str = Field(default="https://api.twelvedata.com", description="Twelve Data REST URL")
    MARKET_DATA_INTERVAL: str = Field(default="1min", description="Интервал исторических свечей")
    MARKET_DATA_TIMEOUT: int = Field(default=15, description="Timeout запроса свечей (секунды)")
    MARKET_DATA_MAX_RETRIES: int = Field(default=2, description="Retry попытки для свечей")
    MARKET_DATA_CACHE_ENABLED: bool = Field(default=True, description="Кешировать свечи в БД")


    # ============================================================================
    # ЭКОНОМИКА РОБОТОВ
    # ============================================================================

    # Диапазоны отдельных сделок
    ROBOT_LOSS_MIN: float = Field(default=1.0, description="Минимальный убыток сделки")
    ROBOT_LOSS_MAX: float = Field(default=10.0, description="Максимальный убыток сделки")
    ROBOT_WIN_MIN: float = Field(default=2.0, description="Минимальная прибыль сделки")
    ROBOT_WIN_MAX: float = Field(default=15.0, description="Максимальная прибыль сделки")
    ROBOT_MIN_WIN_AMOUNT: float = Field(default=0.01, description="Нижняя граница последней прибыльной сделки")

    # Материализация сделок
    ROBOT_MIN_LOT: float = Field(default=0.01, description="Минимальный объем сделки")
    ROBOT_FEE_RATE: float = Field(default=0.0, description="Комиссия для сделок роботов")
    ROBOT_ENTRY_FRACTION: float = Field(default=0.7, description="Доля свечей для выбора входа")
    ROBOT_EXIT_MIN_OFFSET: int = Field(default=5, description="Минимальный сдвиг свечи выхода")
    ROBOT_EXIT_MAX_OFFSET: int = Field(default=40, description="Максимальный сдвиг свечи выхода")
    ROBOT_SIMULATED_MOVE_MIN: float = Field(default=0.005, description="Минимальное движение цены при симуляции")
    ROBOT_SIMULATED_MOVE_MAX: float = Field(default=0.025, description="Максимальное движение цены при симуляции")
    ROBOT_SIMULATED_EXIT_OFFSET: int = Field(default=10, description="Сдвиг свечи выхода при симуляции")

    # Значения по умолчанию для незаполненных полей робота
    ROBOT_DEFAULT_MIN_TRADES: int = Field(default=5, description="Минимум сделок в день")
    ROBOT_DEFAULT_MAX_TRADES: int = Field(default=10, description="Максимум сделок в день")
    ROBOT_DEFAULT_PROFIT_MIN: float = Field(default=20.0, description="Минимальная дневная прибыль")
    ROBOT_DEFAULT_PROFIT_MAX: float = Field(default=25.0, description="Максимальная дневная прибыль")
    ROBOT_DEFAULT_WIN_RATE: float = Field(default=70.0, description="Винрейт по умолчанию (%)")
    ROBOT_DEFAULT_WINDOW_START: str = Field(default="01:00", description="Начало торгового окна")
    ROBOT_DEFAULT_WINDOW_END: str = Field(default="04:00", description="Конец торгового окна")


    # ============================================================================
    # ПЛАНИРОВЩИК
    # ============================================================================

    SCHEDULER_ENABLED: bool = Field(default=True, description="Запускать планировщик при старте")
    DEFAULT_EXECUTION_TIME: str = Field(default="05:00", description="Время запуска робота по умолчанию")


    # ============================================================================
    # ЛОГИРОВАНИЕ
    # ============================================================================

    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Уровень логирования")
    LOG_FORMAT: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Формат логов"
    )
    LOG_DATE_FORMAT: str = Field(default="%Y-%m-%d %H:%M:%S", description="Формат даты в логах")

    # File logging
    LOG_TO_FILE: bool = Field(default=False, description="Логировать в файл")
    LOG_FILE_PATH: str = Field(default="logs/trading_robots.log", description="Путь к файлу логов")
    LOG_FILE_MAX_SIZE: int = Field(default=10485760, description="Макс размер файла логов (10MB)")
    LOG_FILE_BACKUP_COUNT: int = Field(default=5, description="Количество архивных файлов логов")
    LOG_JSON: bool = Field(default=False, description="JSON формат для файла логов")


    # ============================================================================
    # VALIDATORS
    # ============================================================================

    @field_validator('ENVIRONMENT', mode='before')
    @classmethod
    def validate_environment(cls, v):
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @field_validator('TIMEZONE')
    @classmethod
    def validate_timezone(cls, v):
        if not is_valid_timezone(v):
            raise ValueError(f'Unknown timezone: {v}')
        return v

    @field_validator('DEFAULT_EXECUTION_TIME', 'ROBOT_DEFAULT_WINDOW_START', 'ROBOT_DEFAULT_WINDOW_END')
    @classmethod
    def validate_time_of_day(cls, v):
        try:
            return str(TimeOfDay.parse(v))
        except ValidationError as e:
            raise ValueError(str(e))

    @field_validator('ROBOT_MIN_LOT', 'ROBOT_MIN_WIN_AMOUNT', 'ROBOT_LOSS_MIN', 'ROBOT_WIN_MIN')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @field_validator('ROBOT_FEE_RATE')
    @classmethod
    def validate_fee_rate(cls, v):
        if v < 0 or v >= 0.1:
            raise ValueError('Fee rate must be between 0 and 0.1')
        return v

    @field_validator('ROBOT_ENTRY_FRACTION')
    @classmethod
    def validate_entry_fraction(cls, v):
        if v <= 0 or v > 1:
            raise ValueError('Entry fraction must be in (0, 1]')
        return v

    @model_validator(mode='after')
    def validate_bands(self):
        if self.ROBOT_LOSS_MIN > self.ROBOT_LOSS_MAX:
            raise ValueError('ROBOT_LOSS_MIN must not exceed ROBOT_LOSS_MAX')
        if self.ROBOT_WIN_MIN > self.ROBOT_WIN_MAX:
            raise ValueError('ROBOT_WIN_MIN must not exceed ROBOT_WIN_MAX')
        if self.ROBOT_EXIT_MIN_OFFSET < 1 or self.ROBOT_EXIT_MIN_OFFSET > self.ROBOT_EXIT_MAX_OFFSET:
            raise ValueError('Exit offsets must satisfy 1 <= min <= max')
        if not (0 < self.ROBOT_SIMULATED_MOVE_MIN <= self.ROBOT_SIMULATED_MOVE_MAX):
            raise ValueError('Simulated move band must satisfy 0 < min <= max')
        return self


    # ============================================================================
    # COMPUTED PROPERTIES
    # ============================================================================

    @property
    def is_production(self) -> bool:
        """Проверка продакшн окружения"""
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Проверка dev окружения"""
        return self.ENVIRONMENT == Environment.DEVELOPMENT

    @property
    def database_async_url(self) -> str:
        """Async URL для базы данных"""
        if self.DATABASE_URL.startswith('sqlite:///'):
            return self.DATABASE_URL.replace('sqlite:///', 'sqlite+aiosqlite:///', 1)
        if self.DATABASE_URL.startswith('postgresql://'):
            return self.DATABASE_URL.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return self.DATABASE_URL


    # ============================================================================
    # METHODS
    # ============================================================================

    def get_robot_economics(self) -> Dict[str, Any]:
        """Параметры распределения прибыли и материализации сделок"""
        return {
            'loss_min': self.ROBOT_LOSS_MIN,
            'loss_max': self.ROBOT_LOSS_MAX,
            'win_min': self.ROBOT_WIN_MIN,
            'win_max': self.ROBOT_WIN_MAX,
            'min_win_amount': self.ROBOT_MIN_WIN_AMOUNT,
            'min_lot': self.ROBOT_MIN_LOT,
            'fee_rate': self.ROBOT_FEE_RATE,
        }

    def get_logging_config(self) -> Dict[str, Any]:
        """Аргументы для EngineLogger.setup"""
        return {
            'log_level': self.LOG_LEVEL.value,
            'log_format': self.LOG_FORMAT,
            'log_date_format': self.LOG_DATE_FORMAT,
            'log_to_file': self.LOG_TO_FILE,
            'log_file_path': self.LOG_FILE_PATH,
            'log_file_max_size': self.LOG_FILE_MAX_SIZE,
            'log_file_backup_count': self.LOG_FILE_BACKUP_COUNT,
            'json_format': self.LOG_JSON,
            'colored_console': not self.is_production,
        }

    def log_startup_config(self, logger: logging.Logger):
        """Безопасное логирование конфигурации при старте"""
        safe_config = {
            'APP_NAME': self.APP_NAME,
            'VERSION': self.VERSION,
            'ENVIRONMENT': self.ENVIRONMENT.value,
            'HOST': self.HOST,
            'PORT': self.PORT,
            'TIMEZONE': self.TIMEZONE,
            'MARKET_DATA': 'twelvedata' if self.TWELVEDATA_API_KEY else 'simulated',
            'SCHEDULER_ENABLED': self.SCHEDULER_ENABLED,
            'LOG_LEVEL': self.LOG_LEVEL.value,
            'DATABASE_URL': self.DATABASE_URL.split('://', 1)[0] + '://***',  # Hide credentials
        }

        logger.info("🚀 Trading Robot Engine Configuration:")
        for key, value in safe_config.items():
            logger.info(f"  {key}: {value}")


    # ============================================================================
    # PYDANTIC CONFIG
    # ============================================================================

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        validate_assignment=True,
        extra='ignore',
    )


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Создание единственного экземпляра настроек с кешированием
    """
    return Settings()
