"""
Trading Robot Engine Database Models
SQLAlchemy ORM модели для роботов, счетов и журнала операций
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Index, UniqueConstraint, CheckConstraint,
    Enum, JSON, Numeric
)
from sqlalchemy.orm import declarative_base, validates

from utils.helpers import TimeOfDay, ValidationError, ensure_utc


# ============================================================================
# BASE CONFIGURATION
# ============================================================================

Base = declarative_base()

# Денежные и ценовые колонки
Money = Numeric(18, 8)


def generate_uuid():
    """Генерация UUID для записей"""
    return str(uuid.uuid4())


def utc_now():
    """Текущее время в UTC"""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class RobotStatus(str, PyEnum):
    """Статусы роботов"""
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class PositionSide(str, PyEnum):
    """Стороны сделки"""
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, PyEnum):
    """Статусы позиций"""
    OPEN = "open"
    CLOSED = "closed"


class InitiatorType(str, PyEnum):
    """Кто открыл позицию"""
    CLIENT = "client"
    AGENT = "agent"
    ADMIN = "admin"
    ROBOT = "robot"
    SYSTEM = "system"


class TransactionType(str, PyEnum):
    """Типы транзакций"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PROFIT = "profit"
    LOSS = "loss"
    ADJUSTMENT = "adjustment"


class FundType(str, PyEnum):
    """Тип средств"""
    REAL = "real"
    DEMO = "demo"
    BONUS = "bonus"


class TransactionStatus(str, PyEnum):
    """Статусы транзакций"""
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class AuditAction(str, PyEnum):
    """Действия в журнале аудита"""
    ROBOT_EXECUTED = "robot_executed"
    ROBOT_EXECUTION_FAILED = "robot_execution_failed"


# ============================================================================
# РОБОТЫ
# ============================================================================

class TradingRobot(Base):
    """
    Конфигурация торгового робота

    Поля времени суток, винрейт и символы валидируются при записи,
    планировщик получает уже корректные значения.
    """
    __tablename__ = 'trading_robots'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False)
    status = Column(Enum(RobotStatus), default=RobotStatus.ACTIVE, nullable=False, index=True)

    # Расписание
    execution_time = Column(String(5), default="05:00", nullable=False)

    # Параметры генерации
    min_account_balance = Column(Money, default=Decimal('0'), nullable=False)
    min_trades_per_day = Column(Integer, default=5, nullable=False)
    max_trades_per_day = Column(Integer, default=10, nullable=False)
    profit_range_min = Column(Money, default=Decimal('20'), nullable=False)
    profit_range_max = Column(Money, default=Decimal('25'), nullable=False)
    win_rate = Column(Numeric(5, 2), default=Decimal('70'), nullable=False)
    trade_window_start = Column(String(5), default="01:00", nullable=False)
    trade_window_end = Column(String(5), default="04:00", nullable=False)
    symbols = Column(JSON, nullable=False)

    # Metadata
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint('win_rate >= 0 AND win_rate <= 100', name='check_robot_win_rate_range'),
        CheckConstraint('min_trades_per_day >= 1', name='check_robot_min_trades_positive'),
        CheckConstraint('max_trades_per_day >= min_trades_per_day', name='check_robot_trades_range'),
        CheckConstraint('profit_range_max >= profit_range_min', name='check_robot_profit_range'),
    )

    @validates('execution_time', 'trade_window_start', 'trade_window_end')
    def validate_time_of_day(self, key, value):
        """HH:MM, нормализуется к двум цифрам"""
        return str(TimeOfDay.parse(value))

    @validates('win_rate')
    def validate_win_rate(self, key, value):
        if value is None or not (0 <= Decimal(str(value)) <= 100):
            raise ValidationError(f"win_rate must be between 0 and 100, got {value}")
        return value

    @validates('symbols')
    def validate_symbols(self, key, symbols):
        if not isinstance(symbols, (list, tuple)) or not symbols:
            raise ValidationError("Robot must have at least one symbol")
        cleaned = [str(symbol).strip() for symbol in symbols if str(symbol).strip()]
        if not cleaned:
            raise ValidationError("Robot must have at least one symbol")
        return cleaned

    @validates('min_trades_per_day', 'max_trades_per_day')
    def validate_trade_count(self, key, value):
        if value is None or int(value) < 1:
            raise ValidationError(f"{key} must be at least 1")
        return int(value)

    @property
    def is_active(self) -> bool:
        return self.status == RobotStatus.ACTIVE

    def __repr__(self):
        return f"<TradingRobot(id={self.id}, name={self.name}, status={self.status})>"


class RobotAssignment(Base):
    """
    Привязка робота к счету
    """
    __tablename__ = 'robot_assignments'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    robot_id = Column(String(36), ForeignKey('trading_robots.id'), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey('accounts.id'), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    assigned_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('robot_id', 'account_id', name='unique_robot_account'),
    )

    def __repr__(self):
        return f"<RobotAssignment(robot={self.robot_id}, account={self.account_id}, active={self.is_active})>"


# ============================================================================
# СЧЕТА И ЖУРНАЛ
# ============================================================================

class Account(Base):
    """
    Торговый счет клиента

    balance всегда равен real_balance + demo_balance + bonus_balance.
    """
    __tablename__ = 'accounts'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    client_id = Column(String(36), nullable=True, index=True)
    account_number = Column(String(50), unique=True, nullable=False)
    currency = Column(String(10), default="USD", nullable=False)

    balance = Column(Money, default=Decimal('0'), nullable=False)
    real_balance = Column(Money, default=Decimal('0'), nullable=False)
    demo_balance = Column(Money, default=Decimal('0'), nullable=False)
    bonus_balance = Column(Money, default=Decimal('0'), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def recompute_balance(self) -> Decimal:
        """Пересчет общего баланса из составляющих"""
        self.balance = (
            Decimal(self.real_balance or 0)
            + Decimal(self.demo_balance or 0)
            + Decimal(self.bonus_balance or 0)
        )
        return self.balance

    def __repr__(self):
        return f"<Account(id={self.id}, number={self.account_number}, balance={self.balance})>"


class Position(Base):
    """
    Позиция (для роботов всегда закрытая)
    """
    __tablename__ = 'positions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), ForeignKey('accounts.id'), nullable=False, index=True)

    symbol = Column(String(30), nullable=False, index=True)
    side = Column(Enum(PositionSide), nullable=False)
    quantity = Column(Money, nullable=False)
    open_price = Column(Money, nullable=False)
    current_price = Column(Money, nullable=True)
    close_price = Column(Money, nullable=True)

    # PnL
    unrealized_pnl = Column(Money, default=Decimal('0'), nullable=False)
    realized_pnl = Column(Money, default=Decimal('0'), nullable=False)
    fees = Column(Money, default=Decimal('0'), nullable=False)

    status = Column(Enum(PositionStatus), default=PositionStatus.OPEN, nullable=False, index=True)
    initiator_type = Column(Enum(InitiatorType), default=InitiatorType.CLIENT, nullable=False)
    initiator_id = Column(String(36), nullable=True, index=True)

    # Параметры исполнения
    leverage = Column(Numeric(10, 2), default=Decimal('1'), nullable=False)
    spread = Column(Numeric(10, 5), default=Decimal('0'), nullable=False)
    contract_multiplier = Column(Numeric(10, 2), default=Decimal('1'), nullable=False)
    margin_mode = Column(String(10), default="isolated", nullable=False)
    margin_used = Column(Money, default=Decimal('0'), nullable=False)

    opened_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_position_account_status', 'account_id', 'status'),
        Index('idx_position_initiator', 'initiator_type', 'initiator_id'),
        CheckConstraint('quantity > 0', name='check_position_quantity_positive'),
        CheckConstraint('open_price > 0', name='check_position_open_price_positive'),
    )

    def __repr__(self):
        return f"<Position(id={self.id}, symbol={self.symbol}, side={self.side}, pnl={self.realized_pnl})>"


class Transaction(Base):
    """
    Движение средств по счету
    """
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), ForeignKey('accounts.id'), nullable=False, index=True)
    type = Column(Enum(TransactionType), nullable=False)
    fund_type = Column(Enum(FundType), default=FundType.REAL, nullable=False)
    amount = Column(Money, nullable=False)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount >= 0', name='check_transaction_amount_non_negative'),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, type={self.type}, amount={self.amount})>"


class AuditLog(Base):
    """
    Журнал аудита
    """
    __tablename__ = 'audit_logs'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=True)
    action = Column(Enum(AuditAction), nullable=False, index=True)
    target_type = Column(String(50), nullable=True)
    target_id = Column(String(36), nullable=True, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action={self.action}, target={self.target_id})>"


class SystemSetting(Base):
    """
    Системные настройки платформы (ключ-значение)
    """
    __tablename__ = 'system_settings'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<SystemSetting(key={self.key}, value={self.value})>"


# ============================================================================
# РЫНОЧНЫЕ ДАННЫЕ
# ============================================================================

class CandleRecord(Base):
    """
    Кеш исторических свечей
    """
    __tablename__ = 'candles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(30), nullable=False)
    interval = Column(String(10), nullable=False)
    open = Column(Money, nullable=False)
    high = Column(Money, nullable=False)
    low = Column(Money, nullable=False)
    close = Column(Money, nullable=False)
    volume = Column(Money, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'interval', 'timestamp', name='unique_candle_symbol_interval_time'),
        Index('idx_candle_lookup', 'symbol', 'interval', 'timestamp'),
        CheckConstraint('close > 0', name='check_candle_close_positive'),
    )

    @property
    def timestamp_utc(self) -> datetime:
        return ensure_utc(self.timestamp)

    def __repr__(self):
        return f"<CandleRecord(symbol={self.symbol}, interval={self.interval}, time={self.timestamp})>"


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def get_table_names() -> List[str]:
    """
    Получение списка всех таблиц
    """
    return [table.name for table in Base.metadata.tables.values()]
