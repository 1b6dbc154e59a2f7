"""
Trading Robot Engine Scheduler
Ежедневный запуск роботов по локальному времени платформы
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.config.settings import Settings, get_settings
from core.robot_executor import RobotExecutor
from data.database import Database
from data.models import RobotStatus
from utils.helpers import (
    TimeOfDay, create_task_with_logging, ensure_utc,
    get_current_utc_datetime, resolve_timezone
)
from utils.logger import setup_logger


# ============================================================================
# РАСЧЕТ ВРЕМЕНИ ЗАПУСКА
# ============================================================================

def compute_next_run(execution_time: str, tz_name: Optional[str], now: datetime) -> datetime:
    """
    Ближайший момент HH:MM в часовом поясе платформы (UTC)

    Момент строго в будущем: если сегодня время уже наступило,
    берется следующий локальный день.
    """
    tz = resolve_timezone(tz_name)
    time_of_day = TimeOfDay.parse(execution_time)
    now_utc = ensure_utc(now)
    local_date = now_utc.astimezone(tz).date()

    next_run = time_of_day.on_date(local_date, tz).astimezone(timezone.utc)
    if next_run <= now_utc:
        next_run = time_of_day.on_date(local_date + timedelta(days=1), tz).astimezone(timezone.utc)

    return next_run


@dataclass
class ScheduledEntry:
    """Запланированный запуск робота"""
    robot_id: str
    robot_name: str
    next_run_at: datetime
    task: Optional[asyncio.Task] = None
    running: bool = False


# ============================================================================
# ОСНОВНОЙ КЛАСС
# ============================================================================

class RobotScheduler:
    """
    Планировщик роботов: одна asyncio задача на активного робота

    Снятие с расписания отменяет ожидание, но не прерывает
    уже идущий запуск.
    """

    def __init__(
        self,
        database: Database,
        executor: RobotExecutor,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = get_current_utc_datetime,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.database = database
        self.executor = executor
        self.settings = settings or get_settings()
        self.clock = clock
        self._sleep = sleep
        self.logger = setup_logger(f"{__name__}.RobotScheduler")

        self._entries: Dict[str, ScheduledEntry] = {}
        self._lock = asyncio.Lock()
        self._shutting_down = False

    async def initialize(self) -> int:
        """
        Постановка всех активных роботов в расписание

        Returns:
            Количество запланированных роботов
        """
        self.logger.info("🚀 Initializing robot execution schedules")
        self._shutting_down = False

        robots = await self.database.get_robots(status=RobotStatus.ACTIVE)
        scheduled = 0
        for robot in robots:
            if await self.schedule_robot(robot) is not None:
                scheduled += 1

        self.logger.info(f"✅ Initialized {scheduled}/{len(robots)} active robots")
        return scheduled

    async def schedule_robot(self, robot) -> Optional[datetime]:
        """
        Планирование робота на ближайшее время запуска

        Заменяет существующее расписание. Ошибки логируются.

        Returns:
            Время следующего запуска (UTC) или None
        """
        return await self._arm(robot)

    async def _arm(self, robot, replacing: Optional[ScheduledEntry] = None) -> Optional[datetime]:
        if robot is None:
            self.logger.warning("⚠️ Cannot schedule missing robot")
            return None

        if not robot.is_active:
            self.logger.info(f"⏸️ Robot {robot.name} is not active, not scheduling")
            return None

        try:
            tz_name = await self.database.get_platform_timezone()
            next_run = compute_next_run(robot.execution_time, tz_name, self.clock())
        except Exception as e:
            self.logger.error(f"❌ Failed to compute next run for robot {robot.id}: {e}")
            return None

        async with self._lock:
            if self._shutting_down:
                return None

            existing = self._entries.get(robot.id)
            if replacing is not None and existing is not replacing:
                # Пока шел запуск, робот был снят или перепланирован
                return None

            if existing is not None and existing is not replacing and not existing.running:
                existing.task.cancel()

            entry = ScheduledEntry(robot_id=robot.id, robot_name=robot.name, next_run_at=next_run)
            entry.task = create_task_with_logging(self._wait_and_run(entry), name=f"robot-{robot.id}")
            self._entries[robot.id] = entry

        self.logger.info(f"⏰ Scheduling robot {robot.name} to run at {next_run.isoformat()} ({tz_name})")
        return next_run

    async def _wait_and_run(self, entry: ScheduledEntry) -> None:
        """Ожидание, запуск и повторная постановка в расписание"""
        delay = (entry.next_run_at - ensure_utc(self.clock())).total_seconds()
        await self._sleep(max(0.0, delay))

        async with self._lock:
            if self._entries.get(entry.robot_id) is not entry:
                return
            entry.running = True

        try:
            result = await self.executor.execute_robot(entry.robot_id)
            if not result.success:
                self.logger.warning(f"⚠️ Scheduled run of robot {entry.robot_name} failed: {result.message}")
        except Exception as e:
            self.logger.error(f"❌ Scheduled run of robot {entry.robot_name} raised: {e}")
        finally:
            entry.running = False

        try:
            robot = await self.database.get_robot(entry.robot_id)
        except Exception as e:
            self.logger.error(f"❌ Failed to reload robot {entry.robot_id} for re-arming: {e}")
            robot = None

        if robot is not None and robot.is_active:
            await self._arm(robot, replacing=entry)
            return

        async with self._lock:
            if self._entries.get(entry.robot_id) is entry:
                del self._entries[entry.robot_id]
        self.logger.info(f"⏹️ Robot {entry.robot_name} not re-armed (missing or inactive)")

    async def unschedule_robot(self, robot_id: str) -> bool:
        """
        Снятие робота с расписания

        Returns:
            True если робот был в расписании
        """
        async with self._lock:
            entry = self._entries.pop(robot_id, None)

        if entry is None:
            return False

        if not entry.running:
            entry.task.cancel()

        self.logger.info(f"🛑 Unscheduled robot {robot_id}")
        return True

    async def reschedule_robot(self, robot_id: str) -> Optional[datetime]:
        """
        Перепланирование после изменения конфигурации робота
        """
        try:
            robot = await self.database.get_robot(robot_id)
        except Exception as e:
            self.logger.error(f"❌ Failed to load robot {robot_id} for rescheduling: {e}")
            return None

        if robot is not None and robot.is_active:
            return await self.schedule_robot(robot)

        await self.unschedule_robot(robot_id)
        return None

    def get_robot_statuses(self) -> List[Dict[str, Any]]:
        """
        Состояние расписания всех роботов
        """
        return [
            {
                'robot_id': entry.robot_id,
                'robot_name': entry.robot_name,
                'scheduled': True,
                'running': entry.running,
                'next_run_at': entry.next_run_at.isoformat(),
            }
            for entry in self._entries.values()
        ]

    def get_next_run(self, robot_id: str) -> Optional[datetime]:
        entry = self._entries.get(robot_id)
        return entry.next_run_at if entry else None

    async def shutdown(self) -> None:
        """
        Остановка планировщика

        Ожидающие задачи отменяются, идущие запуски дорабатывают.
        """
        self.logger.info("🛑 Stopping robot scheduler...")

        async with self._lock:
            self._shutting_down = True
            entries = list(self._entries.values())
            self._entries.clear()

        in_flight = []
        for entry in entries:
            if entry.running:
                in_flight.append(entry.task)
            else:
                entry.task.cancel()

        if in_flight:
            self.logger.info(f"⏳ Waiting for {len(in_flight)} in-flight robot runs")
            await asyncio.gather(*in_flight, return_exceptions=True)

        self.logger.info("✅ Robot scheduler stopped")
