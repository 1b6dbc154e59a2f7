"""
Trading Robot Engine Robot Executor
Запуск робота: генерация сделок по всем назначенным счетам
"""

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from data.database import Database
from data.models import AuditAction
from services.trade_generator import RobotTradeGenerator
from utils.helpers import get_current_utc_datetime, measure_execution_time
from utils.logger import setup_logger, log_trading_event


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

AUDIT_TARGET_TYPE = "trading_robot"


# ============================================================================
# DATACLASSES ДЛЯ РЕЗУЛЬТАТОВ
# ============================================================================

@dataclass
class ExecutionStats:
    """Статистика одного запуска робота"""
    clients_processed: int = 0
    clients_skipped: int = 0
    trades_generated: int = 0
    total_profit: Decimal = Decimal('0')
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'clients_processed': self.clients_processed,
            'clients_skipped': self.clients_skipped,
            'trades_generated': self.trades_generated,
            'total_profit': f"{self.total_profit:.2f}",
            'errors': list(self.errors),
        }


@dataclass
class ExecutionResult:
    """Результат запуска робота"""
    success: bool
    message: str
    stats: Optional[ExecutionStats] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'stats': self.stats.to_dict() if self.stats else None,
        }


# ============================================================================
# ОСНОВНОЙ КЛАСС
# ============================================================================

class RobotExecutor:
    """
    Исполнитель роботов

    Ошибка на одном счете не прерывает обработку остальных,
    execute_robot никогда не выбрасывает исключения.
    """

    def __init__(
        self,
        database: Database,
        trade_generator: RobotTradeGenerator,
        clock: Callable[[], datetime] = get_current_utc_datetime
    ):
        self.database = database
        self.trade_generator = trade_generator
        self.clock = clock
        self.logger = setup_logger(f"{__name__}.RobotExecutor")

        self.stats = {
            'runs_started': 0,
            'runs_succeeded': 0,
            'runs_failed': 0,
            'trades_generated': 0,
        }

    async def execute_robot_now(self, robot_id: str) -> ExecutionResult:
        """
        Ручной запуск робота
        """
        self.logger.info(f"🖐️ Manual execution requested for robot {robot_id}")
        return await self.execute_robot(robot_id)

    @measure_execution_time
    async def execute_robot(self, robot_id: str) -> ExecutionResult:
        """
        Запуск робота по всем активным назначениям
        """
        self.logger.info(f"🚀 Starting execution for robot {robot_id}")
        self.stats['runs_started'] += 1

        try:
            result = await self._run(robot_id)

        except Exception as e:
            message = f"Robot execution failed: {e}"
            self.logger.error(f"❌ {message}", exc_info=True)
            await self._audit_failure(robot_id, e)
            result = ExecutionResult(success=False, message=message)

        if result.success:
            self.stats['runs_succeeded'] += 1
        else:
            self.stats['runs_failed'] += 1
        return result

    async def _run(self, robot_id: str) -> ExecutionResult:
        robot = await self.database.get_robot(robot_id)
        if robot is None:
            message = f"Robot {robot_id} not found"
            self.logger.error(f"❌ {message}")
            return ExecutionResult(success=False, message=message)

        if not robot.is_active:
            message = f"Robot {robot.name} is not active (status: {robot.status.value})"
            self.logger.info(f"⏸️ {message}")
            return ExecutionResult(success=False, message=message)

        now = self.clock()
        stats = ExecutionStats()
        assignments = await self.database.get_robot_assignments(robot_id)

        if not assignments:
            message = f"Robot {robot.name} has no active client assignments"
            self.logger.info(f"📭 {message}")
            await self._finish_run(robot, stats, now)
            return ExecutionResult(success=True, message=message, stats=stats)

        tz_name = await self.database.get_platform_timezone()
        self.logger.info(f"📊 Processing {len(assignments)} accounts for robot {robot.name} ({tz_name})")

        for assignment in assignments:
            await self._process_account(robot, assignment.account_id, stats, tz_name, now)

        await self._finish_run(robot, stats, now)

        message = (
            f"Robot {robot.name} executed successfully: {stats.clients_processed} clients processed, "
            f"{stats.trades_generated} trades generated, total profit: ${stats.total_profit:.2f}"
        )
        self.logger.info(f"✅ {message}")
        return ExecutionResult(success=True, message=message, stats=stats)

    async def _process_account(
        self,
        robot,
        account_id: str,
        stats: ExecutionStats,
        tz_name: str,
        now: datetime
    ) -> None:
        """Генерация и сохранение сделок одного счета"""
        try:
            account = await self.database.get_account(account_id)
            if account is None:
                stats.clients_skipped += 1
                stats.errors.append(f"Account {account_id} not found")
                log_trading_event("account_missing", robot.id, f"⚠️ Account {account_id} not found", account_id)
                return

            trades = await self.trade_generator.generate_trades_for_account(robot, account, tz_name, now)
            if not trades:
                stats.clients_skipped += 1
                log_trading_event(
                    "account_skipped", robot.id,
                    f"📭 No trades generated for account {account.account_number}", account_id
                )
                return

            total = await self.database.record_robot_trades(account.id, robot.id, robot.name, trades)

            stats.clients_processed += 1
            stats.trades_generated += len(trades)
            stats.total_profit += total
            self.stats['trades_generated'] += len(trades)

            log_trading_event(
                "trades_generated", robot.id,
                f"💰 Generated {len(trades)} trades for account {account.account_number}, profit: ${total:.2f}",
                account_id,
                trades=len(trades),
                profit=f"{total:.2f}",
            )

        except Exception as e:
            stats.clients_skipped += 1
            stats.errors.append(f"Account {account_id}: {e}")
            self.logger.error(f"❌ Error processing account {account_id} for robot {robot.id}: {e}")

    async def _finish_run(self, robot, stats: ExecutionStats, now: datetime) -> None:
        """Отметка last_run_at и запись аудита"""
        await self.database.update_robot(robot.id, {'last_run_at': now})

        details = {
            'robot_name': robot.name,
            'clients_processed': stats.clients_processed,
            'clients_skipped': stats.clients_skipped,
            'trades_generated': stats.trades_generated,
            'total_profit': f"{stats.total_profit:.2f}",
        }
        if stats.errors:
            details['errors'] = list(stats.errors)

        await self.database.create_audit_log(
            action=AuditAction.ROBOT_EXECUTED,
            target_type=AUDIT_TARGET_TYPE,
            target_id=robot.id,
            details=details,
        )

    async def _audit_failure(self, robot_id: str, error: Exception) -> None:
        """Запись неудачного запуска в аудит"""
        try:
            await self.database.create_audit_log(
                action=AuditAction.ROBOT_EXECUTION_FAILED,
                target_type=AUDIT_TARGET_TYPE,
                target_id=robot_id,
                details={
                    'error': str(error),
                    'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
                },
            )
        except Exception as audit_error:
            self.logger.error(f"❌ Failed to record execution failure for robot {robot_id}: {audit_error}")

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
