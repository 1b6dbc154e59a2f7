"""
Trading Robot Engine Data Module
Инициализация модуля данных и экспорт основных классов
"""

from .database import Database, HealthCheckResult, AccountNotFoundError
from .models import (
    Base, TradingRobot, RobotAssignment, Account, Position, Transaction,
    AuditLog, SystemSetting, CandleRecord,
    RobotStatus, PositionSide, PositionStatus, InitiatorType,
    TransactionType, FundType, TransactionStatus, AuditAction
)
from .historical_data import HistoricalDataManager, CandleData, MarketDataError

# Версия модуля
__version__ = "1.0.0"

# Список экспортируемых классов
__all__ = [
    # Database
    "Database",
    "HealthCheckResult",
    "AccountNotFoundError",

    # Models
    "Base",
    "TradingRobot",
    "RobotAssignment",
    "Account",
    "Position",
    "Transaction",
    "AuditLog",
    "SystemSetting",
    "CandleRecord",

    # Enums
    "RobotStatus",
    "PositionSide",
    "PositionStatus",
    "InitiatorType",
    "TransactionType",
    "FundType",
    "TransactionStatus",
    "AuditAction",

    # Historical Data
    "HistoricalDataManager",
    "CandleData",
    "MarketDataError",
]
