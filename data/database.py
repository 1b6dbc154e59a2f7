"""
Trading Robot Engine Database Connection and Operations
Управление подключением к базе данных с async поддержкой
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

from sqlalchemy import select, text, inspect
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError

# Внутренние импорты
from data.models import (
    Base, TradingRobot, RobotAssignment, Account, Position, Transaction,
    AuditLog, SystemSetting, CandleRecord,
    RobotStatus, PositionSide, PositionStatus, InitiatorType, TransactionType,
    FundType, TransactionStatus, AuditAction, get_table_names
)
from app.config.settings import Settings, get_settings
from utils.helpers import (
    RobotEngineError, ValidationError, DEFAULT_TIMEZONE,
    ensure_utc, get_current_utc_datetime, is_valid_timezone, to_money
)
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

TIMEZONE_SETTING_KEY = "timezone"

# SQLite pragma настройки
SQLITE_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=memory",
]

# Поля робота, которые можно менять через update_robot
ROBOT_UPDATABLE_FIELDS = {
    'name', 'status', 'execution_time', 'min_account_balance',
    'min_trades_per_day', 'max_trades_per_day', 'profit_range_min',
    'profit_range_max', 'win_rate', 'trade_window_start', 'trade_window_end',
    'symbols', 'last_run_at',
}

ACCOUNT_UPDATABLE_FIELDS = {
    'client_id', 'currency', 'real_balance', 'demo_balance', 'bonus_balance', 'is_active',
}

ACCOUNT_MONEY_FIELDS = ('real_balance', 'demo_balance', 'bonus_balance')


# ============================================================================
# ИСКЛЮЧЕНИЯ И DATACLASSES
# ============================================================================

class AccountNotFoundError(RobotEngineError):
    """Счет не найден"""
    pass


@dataclass
class HealthCheckResult:
    """Результат проверки здоровья БД"""
    is_healthy: bool
    connection_ok: bool
    tables_exist: bool
    error_message: Optional[str] = None


# ============================================================================
# ОСНОВНОЙ КЛАСС БД
# ============================================================================

class Database:
    """
    Хранилище роботов, счетов и журнала операций

    Все записи по одному счету сериализуются через asyncio.Lock,
    record_robot_trades выполняется одной транзакцией.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.Database")

        self.database_url = self.settings.DATABASE_URL
        self.async_database_url = self.settings.database_async_url

        self.async_engine = None
        self.async_session_factory = None

        self._initialized = False
        self._connected = False

        # Блокировки записи по счетам, живут пока их держат или ждут
        self._account_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def is_sqlite(self) -> bool:
        return self.async_database_url.startswith('sqlite')

    async def init(self) -> None:
        """
        Инициализация базы данных
        """
        if self._initialized:
            return

        try:
            self.logger.info("🗄️ Initializing database connection...")

            if self.is_sqlite and ':memory:' not in self.database_url:
                db_path = Path(self.async_database_url.split(':///', 1)[1])
                db_path.parent.mkdir(parents=True, exist_ok=True)

            self.async_engine = create_async_engine(
                self.async_database_url,
                echo=self.settings.DATABASE_ECHO,
                pool_pre_ping=True,
            )

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            await self._create_tables()

            if self.is_sqlite:
                await self._optimize_sqlite()

            self._initialized = True
            await self._check_connection()
            self._connected = True

            self.logger.info("✅ Database initialized successfully")

        except Exception as e:
            self.logger.error(f"❌ Failed to initialize database: {e}")
            raise

    async def close(self) -> None:
        """
        Закрытие подключения к БД
        """
        self.logger.info("🔒 Closing database connections...")

        if self.async_engine:
            await self.async_engine.dispose()

        self._connected = False
        self._initialized = False
        self.logger.info("✅ Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """
        Async context manager для получения сессии БД
        """
        if not self._initialized:
            await self.init()

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                self.logger.error(f"❌ Database session error: {e}")
                raise

    def account_lock(self, account_id: str) -> asyncio.Lock:
        """Блокировка записи для счета"""
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account_id] = lock
        return lock

    # ============================================================================
    # ПРИВАТНЫЕ МЕТОДЫ ИНИЦИАЛИЗАЦИИ
    # ============================================================================

    async def _create_tables(self) -> None:
        """Создание всех таблиц"""
        try:
            async with self.async_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                table_names = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names()
                )

            self.logger.info(f"📊 Database tables: {', '.join(table_names)}")

        except Exception as e:
            self.logger.error(f"❌ Failed to create tables: {e}")
            raise

    async def _optimize_sqlite(self) -> None:
        """Оптимизация SQLite настроек"""
        try:
            async with self.async_engine.begin() as conn:
                for pragma in SQLITE_PRAGMA_SETTINGS:
                    await conn.execute(text(pragma))

            self.logger.debug("🔧 SQLite optimizations applied")

        except Exception as e:
            self.logger.warning(f"⚠️ Failed to apply SQLite optimizations: {e}")

    async def _check_connection(self) -> None:
        """Проверка подключения к БД"""
        async with self.get_session() as session:
            result = await session.execute(text("SELECT 1"))
            result.fetchone()

        self.logger.debug("✅ Database connection verified")

    # ============================================================================
    # РОБОТЫ
    # ============================================================================

    async def get_robots(self, status: Optional[RobotStatus] = None) -> List[TradingRobot]:
        """
        Получение роботов (опционально по статусу)
        """
        try:
            async with self.get_session() as session:
                query = select(TradingRobot).order_by(TradingRobot.created_at)
                if status is not None:
                    query = query.where(TradingRobot.status == RobotStatus(status))

                result = await session.execute(query)
                robots = list(result.scalars().all())

                self.logger.debug(f"📊 Retrieved {len(robots)} robots")
                return robots

        except Exception as e:
            self.logger.error(f"❌ Failed to get robots: {e}")
            raise

    async def get_robot(self, robot_id: str) -> Optional[TradingRobot]:
        """
        Получение робота по id
        """
        try:
            async with self.get_session() as session:
                return await session.get(TradingRobot, robot_id)

        except Exception as e:
            self.logger.error(f"❌ Failed to get robot {robot_id}: {e}")
            raise

    async def create_robot(self, robot_data: Dict[str, Any]) -> TradingRobot:
        """
        Создание робота

        Отсутствующие параметры генерации берутся из настроек.
        """
        s = self.settings
        data = {
            'execution_time': s.DEFAULT_EXECUTION_TIME,
            'min_trades_per_day': s.ROBOT_DEFAULT_MIN_TRADES,
            'max_trades_per_day': s.ROBOT_DEFAULT_MAX_TRADES,
            'profit_range_min': s.ROBOT_DEFAULT_PROFIT_MIN,
            'profit_range_max': s.ROBOT_DEFAULT_PROFIT_MAX,
            'win_rate': s.ROBOT_DEFAULT_WIN_RATE,
            'trade_window_start': s.ROBOT_DEFAULT_WINDOW_START,
            'trade_window_end': s.ROBOT_DEFAULT_WINDOW_END,
            'min_account_balance': 0,
            **robot_data,
        }

        try:
            robot = TradingRobot(
                **({'id': data['id']} if data.get('id') else {}),
                name=data['name'],
                status=RobotStatus(data.get('status', RobotStatus.ACTIVE)),
                execution_time=data['execution_time'],
                min_account_balance=to_money(data['min_account_balance']),
                min_trades_per_day=data['min_trades_per_day'],
                max_trades_per_day=data['max_trades_per_day'],
                profit_range_min=to_money(data['profit_range_min']),
                profit_range_max=to_money(data['profit_range_max']),
                win_rate=to_money(data['win_rate']),
                trade_window_start=data['trade_window_start'],
                trade_window_end=data['trade_window_end'],
                symbols=data.get('symbols'),
            )
            self._check_robot_ranges(robot)

            async with self.get_session() as session:
                session.add(robot)
                await session.flush()

            self.logger.info(f"💾 Robot created: {robot.name} (id: {robot.id}, runs at {robot.execution_time})")
            return robot

        except ValidationError as e:
            self.logger.error(f"❌ Invalid robot configuration: {e}")
            raise
        except IntegrityError as e:
            self.logger.error(f"❌ Robot integrity error: {e}")
            raise
        except Exception as e:
            self.logger.error(f"❌ Failed to create robot: {e}")
            raise

    async def update_robot(self, robot_id: str, updates: Dict[str, Any]) -> Optional[TradingRobot]:
        """
        Обновление полей робота
        """
        unknown = set(updates) - ROBOT_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown robot fields: {', '.join(sorted(unknown))}")

        try:
            async with self.get_session() as session:
                robot = await session.get(TradingRobot, robot_id)
                if robot is None:
                    self.logger.warning(f"⚠️ Robot {robot_id} not found for update")
                    return None

                for key, value in updates.items():
                    if key == 'status':
                        value = RobotStatus(value)
                    elif key in ('min_account_balance', 'profit_range_min', 'profit_range_max', 'win_rate'):
                        value = to_money(value)
                    elif key == 'last_run_at' and value is not None:
                        value = ensure_utc(value)
                    setattr(robot, key, value)

                self._check_robot_ranges(robot)
                await session.flush()

                self.logger.debug(f"📊 Robot {robot_id} updated: {', '.join(updates)}")
                return robot

        except ValidationError as e:
            self.logger.error(f"❌ Invalid robot update for {robot_id}: {e}")
            raise
        except Exception as e:
            self.logger.error(f"❌ Failed to update robot {robot_id}: {e}")
            raise

    @staticmethod
    def _check_robot_ranges(robot: TradingRobot) -> None:
        if robot.max_trades_per_day < robot.min_trades_per_day:
            raise ValidationError(
                f"max_trades_per_day ({robot.max_trades_per_day}) "
                f"< min_trades_per_day ({robot.min_trades_per_day})"
            )
        if Decimal(robot.profit_range_max) < Decimal(robot.profit_range_min):
            raise ValidationError(
                f"profit_range_max ({robot.profit_range_max}) "
                f"< profit_range_min ({robot.profit_range_min})"
            )
        if Decimal(robot.profit_range_min) == Decimal(robot.profit_range_max) == 0 and robot.min_trades_per_day < 2:
            raise ValidationError("A zero profit target needs at least 2 trades per day")

    # ============================================================================
    # НАЗНАЧЕНИЯ РОБОТОВ
    # ============================================================================

    async def get_robot_assignments(self, robot_id: str, active_only: bool = True) -> List[RobotAssignment]:
        """
        Получение назначений робота на счета
        """
        try:
            async with self.get_session() as session:
                query = (
                    select(RobotAssignment)
                    .where(RobotAssignment.robot_id == robot_id)
                    .order_by(RobotAssignment.assigned_at, RobotAssignment.id)
                )
                if active_only:
                    query = query.where(RobotAssignment.is_active.is_(True))

                result = await session.execute(query)
                return list(result.scalars().all())

        except Exception as e:
            self.logger.error(f"❌ Failed to get assignments for robot {robot_id}: {e}")
            raise

    async def create_robot_assignment(
        self,
        robot_id: str,
        account_id: str,
        is_active: bool = True
    ) -> RobotAssignment:
        """
        Назначение робота на счет
        """
        try:
            async with self.get_session() as session:
                assignment = RobotAssignment(robot_id=robot_id, account_id=account_id, is_active=is_active)
                session.add(assignment)
                await session.flush()

            self.logger.info(f"💾 Robot {robot_id} assigned to account {account_id}")
            return assignment

        except IntegrityError as e:
            self.logger.error(f"❌ Assignment already exists: {e}")
            raise
        except Exception as e:
            self.logger.error(f"❌ Failed to create assignment: {e}")
            raise

    # ============================================================================
    # СЧЕТА
    # ============================================================================

    async def get_account(self, account_id: str) -> Optional[Account]:
        """
        Получение счета по id
        """
        try:
            async with self.get_session() as session:
                return await session.get(Account, account_id)

        except Exception as e:
            self.logger.error(f"❌ Failed to get account {account_id}: {e}")
            raise

    async def create_account(self, account_data: Dict[str, Any]) -> Account:
        """
        Создание счета, balance вычисляется из составляющих
        """
        try:
            account = Account(
                **({'id': account_data['id']} if account_data.get('id') else {}),
                client_id=account_data.get('client_id'),
                account_number=account_data['account_number'],
                currency=account_data.get('currency', 'USD'),
                is_active=account_data.get('is_active', True),
                **{field: to_money(account_data.get(field, 0)) for field in ACCOUNT_MONEY_FIELDS}
            )
            account.recompute_balance()

            async with self.get_session() as session:
                session.add(account)
                await session.flush()

            self.logger.info(f"💾 Account created: {account.account_number} (balance: {account.balance})")
            return account

        except IntegrityError as e:
            self.logger.error(f"❌ Account integrity error: {e}")
            raise
        except Exception as e:
            self.logger.error(f"❌ Failed to create account: {e}")
            raise

    async def update_account(self, account_id: str, updates: Dict[str, Any]) -> Account:
        """
        Обновление счета

        Переданный balance игнорируется, он всегда пересчитывается.
        """
        updates = {key: value for key, value in updates.items() if key != 'balance'}
        unknown = set(updates) - ACCOUNT_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account fields: {', '.join(sorted(unknown))}")

        async with self.account_lock(account_id):
            try:
                async with self.get_session() as session:
                    account = await session.get(Account, account_id)
                    if account is None:
                        raise AccountNotFoundError(f"Account {account_id} not found")

                    for key, value in updates.items():
                        if key in ACCOUNT_MONEY_FIELDS:
                            value = to_money(value)
                        setattr(account, key, value)

                    account.recompute_balance()
                    await session.flush()

                    self.logger.debug(f"📊 Account {account_id} updated (balance: {account.balance})")
                    return account

            except Exception as e:
                self.logger.error(f"❌ Failed to update account {account_id}: {e}")
                raise

    async def delete_account(self, account_id: str) -> bool:
        """
        Удаление счета
        """
        async with self.account_lock(account_id):
            try:
                async with self.get_session() as session:
                    account = await session.get(Account, account_id)
                    if account is None:
                        return False
                    await session.delete(account)

                self.logger.info(f"🗑️ Account {account_id} deleted")
                return True

            except Exception as e:
                self.logger.error(f"❌ Failed to delete account {account_id}: {e}")
                raise

    # ============================================================================
    # ПОЗИЦИИ, ТРАНЗАКЦИИ, АУДИТ
    # ============================================================================

    async def create_position(self, position_data: Dict[str, Any]) -> Position:
        """
        Сохранение одной позиции
        """
        try:
            async with self.get_session() as session:
                position = Position(**position_data)
                session.add(position)
                await session.flush()

            self.logger.debug(f"💾 Position saved: {position.symbol} {position.side} (id: {position.id})")
            return position

        except Exception as e:
            self.logger.error(f"❌ Failed to save position: {e}")
            raise

    async def create_transaction(self, transaction_data: Dict[str, Any]) -> Transaction:
        """
        Сохранение транзакции
        """
        try:
            async with self.get_session() as session:
                transaction = Transaction(**transaction_data)
                session.add(transaction)
                await session.flush()

            self.logger.debug(f"💾 Transaction saved: {transaction.type} {transaction.amount}")
            return transaction

        except Exception as e:
            self.logger.error(f"❌ Failed to save transaction: {e}")
            raise

    async def create_audit_log(
        self,
        action: AuditAction,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditLog:
        """
        Запись в журнал аудита
        """
        try:
            async with self.get_session() as session:
                entry = AuditLog(
                    user_id=user_id,
                    action=AuditAction(action),
                    target_type=target_type,
                    target_id=target_id,
                    details=details,
                )
                session.add(entry)
                await session.flush()

            self.logger.debug(f"📝 Audit log: {entry.action} {target_type}:{target_id}")
            return entry

        except Exception as e:
            self.logger.error(f"❌ Failed to write audit log: {e}")
            raise

    async def get_positions_for_account(self, account_id: str, limit: Optional[int] = None) -> List[Position]:
        """
        Позиции счета, новые первыми
        """
        try:
            async with self.get_session() as session:
                query = (
                    select(Position)
                    .where(Position.account_id == account_id)
                    .order_by(Position.opened_at.desc())
                )
                if limit:
                    query = query.limit(limit)

                result = await session.execute(query)
                return list(result.scalars().all())

        except Exception as e:
            self.logger.error(f"❌ Failed to get positions for account {account_id}: {e}")
            raise

    async def get_transactions_for_account(self, account_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """
        Транзакции счета, новые первыми
        """
        try:
            async with self.get_session() as session:
                query = (
                    select(Transaction)
                    .where(Transaction.account_id == account_id)
                    .order_by(Transaction.created_at.desc())
                )
                if limit:
                    query = query.limit(limit)

                result = await session.execute(query)
                return list(result.scalars().all())

        except Exception as e:
            self.logger.error(f"❌ Failed to get transactions for account {account_id}: {e}")
            raise

    async def get_audit_logs(
        self,
        target_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50
    ) -> List[AuditLog]:
        """
        Последние записи журнала аудита
        """
        try:
            async with self.get_session() as session:
                query = select(AuditLog).order_by(AuditLog.created_at.desc())
                if target_id is not None:
                    query = query.where(AuditLog.target_id == target_id)
                if action is not None:
                    query = query.where(AuditLog.action == AuditAction(action))

                result = await session.execute(query.limit(limit))
                return list(result.scalars().all())

        except Exception as e:
            self.logger.error(f"❌ Failed to get audit logs: {e}")
            raise

    # ============================================================================
    # СИСТЕМНЫЕ НАСТРОЙКИ
    # ============================================================================

    async def get_system_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Значение системной настройки
        """
        try:
            async with self.get_session() as session:
                setting = await session.get(SystemSetting, key)
                if setting is None or setting.value is None:
                    return default
                return setting.value

        except Exception as e:
            self.logger.error(f"❌ Failed to get system setting {key}: {e}")
            raise

    async def set_system_setting(self, key: str, value: Optional[str]) -> None:
        """
        Создание или обновление системной настройки
        """
        try:
            async with self.get_session() as session:
                setting = await session.get(SystemSetting, key)
                if setting is None:
                    session.add(SystemSetting(key=key, value=value))
                else:
                    setting.value = value

            self.logger.info(f"⚙️ System setting {key} = {value}")

        except Exception as e:
            self.logger.error(f"❌ Failed to set system setting {key}: {e}")
            raise

    async def get_platform_timezone(self) -> str:
        """
        Часовой пояс платформы

        system_settings['timezone'] -> Settings.TIMEZONE -> UTC.
        """
        name = await self.get_system_setting(TIMEZONE_SETTING_KEY)
        name = (name or self.settings.TIMEZONE or DEFAULT_TIMEZONE).strip()

        if not is_valid_timezone(name):
            self.logger.warning(f"⚠️ Unknown platform timezone {name!r}, using {DEFAULT_TIMEZONE}")
            return DEFAULT_TIMEZONE

        return name

    # ============================================================================
    # СДЕЛКИ РОБОТОВ
    # ============================================================================

    async def record_robot_trades(
        self,
        account_id: str,
        robot_id: str,
        robot_name: str,
        trades: Iterable[Any]
    ) -> Decimal:
        """
        Сохранение сделок робота по счету одной транзакцией

        Создает закрытые позиции, зачисляет сумму P&L на real_balance,
        пересчитывает balance и пишет одну транзакцию profit/loss.

        Returns:
            Суммарный P&L, зачисленный на счет
        """
        trades = list(trades)
        if not trades:
            self.logger.debug(f"📊 No trades to record for account {account_id}")
            return Decimal('0')

        async with self.account_lock(account_id):
            try:
                async with self.get_session() as session:
                    account = await session.get(Account, account_id)
                    if account is None:
                        raise AccountNotFoundError(f"Account {account_id} not found")

                    total = Decimal('0')
                    wins = 0

                    for trade in trades:
                        pnl = to_money(trade.realized_pnl)
                        quantity = to_money(trade.quantity)
                        open_price = to_money(trade.open_price)
                        close_price = to_money(trade.close_price)

                        total += pnl
                        if pnl > 0:
                            wins += 1

                        session.add(Position(
                            account_id=account_id,
                            symbol=trade.symbol,
                            side=PositionSide(trade.side),
                            quantity=quantity,
                            open_price=open_price,
                            current_price=close_price,
                            close_price=close_price,
                            unrealized_pnl=Decimal('0'),
                            realized_pnl=pnl,
                            fees=to_money(trade.fees),
                            status=PositionStatus.CLOSED,
                            initiator_type=InitiatorType.ROBOT,
                            initiator_id=robot_id,
                            leverage=Decimal('1'),
                            spread=Decimal('0'),
                            contract_multiplier=Decimal('1'),
                            margin_mode="isolated",
                            margin_used=to_money(quantity * open_price),
                            opened_at=ensure_utc(trade.opened_at),
                            closed_at=ensure_utc(trade.closed_at),
                        ))

                    account.real_balance = to_money(Decimal(account.real_balance or 0) + total)
                    account.recompute_balance()

                    now = get_current_utc_datetime()
                    session.add(Transaction(
                        account_id=account_id,
                        type=TransactionType.PROFIT if total >= 0 else TransactionType.LOSS,
                        fund_type=FundType.REAL,
                        amount=abs(total),
                        status=TransactionStatus.COMPLETED,
                        notes=(
                            f"Robot {robot_name} generated {len(trades)} trades "
                            f"({wins} wins, {len(trades) - wins} losses)"
                        ),
                        created_at=now,
                        completed_at=now,
                    ))

                    await session.flush()

                self.logger.info(
                    f"💾 Saved {len(trades)} trades for account {account_id}, total P/L: {total:.2f}"
                )
                return total

            except AccountNotFoundError:
                self.logger.warning(f"⚠️ Account {account_id} not found, trades not recorded")
                raise
            except Exception as e:
                self.logger.error(f"❌ Failed to record trades for account {account_id}: {e}")
                raise

    # ============================================================================
    # РЫНОЧНЫЕ ДАННЫЕ
    # ============================================================================

    async def get_candles(
        self,
        symbol: str,
        interval: str,
        start: datetime,
        end: datetime
    ) -> List[CandleRecord]:
        """
        Свечи из кеша в диапазоне [start, end]
        """
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CandleRecord)
                    .where(
                        CandleRecord.symbol == symbol,
                        CandleRecord.interval == interval,
                        CandleRecord.timestamp >= ensure_utc(start),
                        CandleRecord.timestamp <= ensure_utc(end),
                    )
                    .order_by(CandleRecord.timestamp)
                )
                return list(result.scalars().all())

        except Exception as e:
            self.logger.error(f"❌ Failed to get cached candles for {symbol}: {e}")
            raise

    async def save_candles(self, symbol: str, interval: str, candles: Iterable[Any]) -> int:
        """
        Сохранение свечей в кеш, уже известные пропускаются

        Returns:
            Количество новых записей
        """
        candles = list(candles)
        if not candles:
            return 0

        timestamps = [ensure_utc(candle.timestamp) for candle in candles]

        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CandleRecord.timestamp).where(
                        CandleRecord.symbol == symbol,
                        CandleRecord.interval == interval,
                        CandleRecord.timestamp >= min(timestamps),
                        CandleRecord.timestamp <= max(timestamps),
                    )
                )
                existing = {ensure_utc(ts) for ts in result.scalars().all()}

                saved = 0
                for candle, timestamp in zip(candles, timestamps):
                    if timestamp in existing:
                        continue
                    existing.add(timestamp)
                    session.add(CandleRecord(
                        symbol=symbol,
                        interval=interval,
                        open=to_money(candle.open),
                        high=to_money(candle.high),
                        low=to_money(candle.low),
                        close=to_money(candle.close),
                        volume=to_money(candle.volume),
                        timestamp=timestamp,
                    ))
                    saved += 1

            self.logger.debug(f"💾 Cached {saved} candles for {symbol} {interval}")
            return saved

        except Exception as e:
            self.logger.error(f"❌ Failed to cache candles for {symbol}: {e}")
            raise

    # ============================================================================
    # ЗДОРОВЬЕ
    # ============================================================================

    async def health_check(self) -> HealthCheckResult:
        """
        Проверка здоровья базы данных
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

            async with self.async_engine.connect() as conn:
                table_names = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names()
                )
            tables_exist = all(table in table_names for table in get_table_names())

            return HealthCheckResult(
                is_healthy=tables_exist,
                connection_ok=True,
                tables_exist=tables_exist,
            )

        except Exception as e:
            self.logger.error(f"❌ Health check error: {e}")
            return HealthCheckResult(
                is_healthy=False,
                connection_ok=False,
                tables_exist=False,
                error_message=str(e)
            )

    @property
    def is_connected(self) -> bool:
        """Проверка состояния подключения"""
        return self._connected
