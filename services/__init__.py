"""
Trading Robot Engine Services Module
Распределение прибыли и генерация сделок роботов
"""

from .profit_allocator import (
    ProfitAllocation,
    TradePlan,
    InfeasibleAllocationError,
    allocate_profit,
    plan_trades
)
from .trade_generator import (
    GeneratedTrade,
    TradeMaterializer,
    RobotTradeGenerator,
    MaterializationError,
    calculate_quantity_for_target,
    compute_trade_window
)

__version__ = "1.0.0"

__all__ = [
    # Profit Allocator
    "ProfitAllocation",
    "TradePlan",
    "InfeasibleAllocationError",
    "allocate_profit",
    "plan_trades",

    # Trade Generator
    "GeneratedTrade",
    "TradeMaterializer",
    "RobotTradeGenerator",
    "MaterializationError",
    "calculate_quantity_for_target",
    "compute_trade_window",
]
