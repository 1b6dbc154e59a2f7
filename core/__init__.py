"""
Trading Robot Engine Core Module
Ядро системы - запуск роботов и расписание
"""

from .robot_executor import (
    RobotExecutor,
    ExecutionResult,
    ExecutionStats
)
from .scheduler import (
    RobotScheduler,
    ScheduledEntry,
    compute_next_run
)

# Версия модуля
__version__ = "1.0.0"

# Экспортируемые классы и функции
__all__ = [
    # Robot Executor
    "RobotExecutor",
    "ExecutionResult",
    "ExecutionStats",

    # Scheduler
    "RobotScheduler",
    "ScheduledEntry",
    "compute_next_run",
]
