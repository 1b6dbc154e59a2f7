"""
Trading Robot Engine Main Application
FastAPI приложение: запуск роботов и управление расписанием
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import numpy as np
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

# Внутренние импорты
from app.config.settings import Settings, get_settings
from core.robot_executor import RobotExecutor
from core.scheduler import RobotScheduler
from data.database import Database
from data.historical_data import HistoricalDataManager
from services.trade_generator import RobotTradeGenerator
from utils.logger import setup_logger, engine_logger, configure_external_loggers


logger = setup_logger(__name__)


# ============================================================================
# PYDANTIC МОДЕЛИ ДЛЯ API
# ============================================================================

class ExecutionStatsResponse(BaseModel):
    clients_processed: int
    clients_skipped: int
    trades_generated: int
    total_profit: str
    errors: List[str] = []


class ExecutionResponse(BaseModel):
    success: bool
    message: str
    stats: Optional[ExecutionStatsResponse] = None


class RobotScheduleStatus(BaseModel):
    robot_id: str
    robot_name: str
    scheduled: bool
    running: bool
    next_run_at: Optional[str] = None


class RescheduleResponse(BaseModel):
    robot_id: str
    scheduled: bool
    next_run_at: Optional[str] = None


class UnscheduleResponse(BaseModel):
    robot_id: str
    unscheduled: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    database: Dict[str, Any]
    scheduled_robots: int
    executor: Dict[str, Any]
    market_data: Dict[str, Any]


# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

async def startup_sequence(app: FastAPI, settings: Settings, rng: Optional[np.random.Generator]) -> None:
    """
    Последовательность запуска всех компонентов
    """
    engine_logger.setup(force=True, **settings.get_logging_config())
    configure_external_loggers()
    settings.log_startup_config(logger)

    rng = rng or np.random.default_rng()

    # 1. База данных
    logger.info("📦 Initializing database...")
    database = Database(settings)
    await database.init()

    # 2. Рыночные данные и генерация сделок
    logger.info("📈 Initializing market data and trade generator...")
    market_data = HistoricalDataManager(database=database, settings=settings, rng=rng)
    trade_generator = RobotTradeGenerator(market_data, settings=settings, rng=rng)

    # 3. Исполнитель и планировщик
    executor = RobotExecutor(database, trade_generator)
    scheduler = RobotScheduler(database, executor, settings=settings)

    if settings.SCHEDULER_ENABLED:
        logger.info("⏰ Arming robot schedules...")
        await scheduler.initialize()
    else:
        logger.warning("⚠️ Scheduler disabled, robots run only on manual trigger")

    app.state.database = database
    app.state.market_data = market_data
    app.state.executor = executor
    app.state.scheduler = scheduler


async def shutdown_sequence(app: FastAPI) -> None:
    """
    Последовательность завершения работы
    """
    scheduler: Optional[RobotScheduler] = getattr(app.state, 'scheduler', None)
    database: Optional[Database] = getattr(app.state, 'database', None)

    if scheduler:
        await scheduler.shutdown()

    if database:
        logger.info("📦 Closing database connections...")
        await database.close()


def create_app(settings: Optional[Settings] = None, rng: Optional[np.random.Generator] = None) -> FastAPI:
    """
    Создание FastAPI приложения
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting Trading Robot Engine...")
        try:
            await startup_sequence(app, settings, rng)
            logger.info("✅ Trading Robot Engine started successfully")
            yield
        except Exception as e:
            logger.error(f"❌ Failed to start Trading Robot Engine: {e}")
            raise
        finally:
            logger.info("🔄 Shutting down Trading Robot Engine...")
            await shutdown_sequence(app)
            logger.info("✅ Trading Robot Engine shut down gracefully")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Synthetic trade generation and scheduling for trading robots",
        version=settings.VERSION,
        lifespan=lifespan
    )
    app.state.settings = settings

    register_routes(app)
    return app


# ============================================================================
# API ENDPOINTS
# ============================================================================

def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return component


def register_routes(app: FastAPI) -> None:
    """Регистрация endpoint'ов"""

    @app.get("/", response_model=dict)
    async def root(request: Request):
        """Корневой endpoint"""
        settings: Settings = request.app.state.settings
        return {
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "status": "running",
            "docs": "/docs"
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Проверка состояния системы"""
        database: Database = _component(request, 'database')
        scheduler: RobotScheduler = _component(request, 'scheduler')
        executor: RobotExecutor = _component(request, 'executor')
        market_data: HistoricalDataManager = _component(request, 'market_data')

        db_health = await database.health_check()

        return HealthResponse(
            status="healthy" if db_health.is_healthy else "unhealthy",
            version=request.app.state.settings.VERSION,
            database={
                'healthy': db_health.is_healthy,
                'connection_ok': db_health.connection_ok,
                'tables_exist': db_health.tables_exist,
                'error': db_health.error_message,
            },
            scheduled_robots=len(scheduler.get_robot_statuses()),
            executor=executor.get_stats(),
            market_data=market_data.get_stats(),
        )

    @app.post("/robots/{robot_id}/execute", response_model=ExecutionResponse)
    async def execute_robot(robot_id: str, request: Request):
        """Немедленный запуск робота"""
        executor: RobotExecutor = _component(request, 'executor')
        result = await executor.execute_robot_now(robot_id)
        return result.to_dict()

    @app.post("/robots/{robot_id}/reschedule", response_model=RescheduleResponse)
    async def reschedule_robot(robot_id: str, request: Request):
        """Перепланирование робота после изменения настроек"""
        scheduler: RobotScheduler = _component(request, 'scheduler')
        next_run = await scheduler.reschedule_robot(robot_id)
        return RescheduleResponse(
            robot_id=robot_id,
            scheduled=next_run is not None,
            next_run_at=next_run.isoformat() if next_run else None,
        )

    @app.delete("/robots/{robot_id}/schedule", response_model=UnscheduleResponse)
    async def unschedule_robot(robot_id: str, request: Request):
        """Снятие робота с расписания"""
        scheduler: RobotScheduler = _component(request, 'scheduler')
        removed = await scheduler.unschedule_robot(robot_id)
        return UnscheduleResponse(robot_id=robot_id, unscheduled=removed)

    @app.get("/robots/schedule", response_model=List[RobotScheduleStatus])
    async def get_schedule(request: Request):
        """Расписание всех роботов"""
        scheduler: RobotScheduler = _component(request, 'scheduler')
        return scheduler.get_robot_statuses()


app = create_app()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=int(settings.PORT),
        reload=settings.is_development,
        workers=1,  # Один процесс: расписание живет в памяти
        log_level=settings.LOG_LEVEL.value.lower(),
    )
