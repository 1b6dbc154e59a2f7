"""
Trading Robot Engine Profit Allocator
Распределение дневной прибыли робота по прибыльным и убыточным сделкам
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from utils.helpers import RobotEngineError, safe_float
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

logger = setup_logger(__name__)

DEFAULT_LOSS_BAND = (1.0, 10.0)
DEFAULT_WIN_BAND = (2.0, 15.0)
DEFAULT_MIN_WIN_AMOUNT = 0.01


class InfeasibleAllocationError(RobotEngineError):
    """Целевую прибыль нельзя разложить на заданное число сделок"""
    pass


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class ProfitAllocation:
    """Суммы прибыльных и убыточных сделок (все значения положительные)"""
    win_amounts: List[float] = field(default_factory=list)
    loss_amounts: List[float] = field(default_factory=list)

    @property
    def total_wins(self) -> float:
        return math.fsum(self.win_amounts)

    @property
    def total_losses(self) -> float:
        return math.fsum(self.loss_amounts)

    @property
    def net_profit(self) -> float:
        return self.total_wins - self.total_losses

    @property
    def trade_count(self) -> int:
        return len(self.win_amounts) + len(self.loss_amounts)


@dataclass
class TradePlan:
    """План дня для одного счета"""
    trade_count: int
    target_profit: float
    win_count: int
    loss_count: int


# ============================================================================
# РАСПРЕДЕЛЕНИЕ
# ============================================================================

def allocate_profit(
    target_profit: float,
    win_count: int,
    loss_count: int,
    rng: Optional[np.random.Generator] = None,
    loss_band: Tuple[float, float] = DEFAULT_LOSS_BAND,
    win_band: Tuple[float, float] = DEFAULT_WIN_BAND,
    min_win_amount: float = DEFAULT_MIN_WIN_AMOUNT
) -> ProfitAllocation:
    """
    Разложение target_profit на win_count прибылей и loss_count убытков

    Убытки равномерны в loss_band. Прибыли, кроме последней, равномерны
    в win_band и ограничены так, чтобы остатка хватило остальным сделкам;
    последняя прибыль забирает остаток. sum(wins) - sum(losses) == target.

    Raises:
        InfeasibleAllocationError: форма сделок не позволяет получить target
    """
    rng = rng or np.random.default_rng()
    target = float(target_profit)
    loss_min, loss_max = loss_band
    win_min, win_max = win_band

    if win_count < 0 or loss_count < 0:
        raise InfeasibleAllocationError(f"Negative trade counts: {win_count} wins, {loss_count} losses")

    if win_count == 0 and target > 0:
        raise InfeasibleAllocationError(
            f"Cannot achieve target profit of ${target:.2f} with zero winning trades"
        )

    if win_count == 0 and loss_count == 0:
        if target != 0:
            raise InfeasibleAllocationError(f"Cannot achieve target ${target:.2f} without trades")
        return ProfitAllocation()

    losses = [float(amount) for amount in rng.uniform(loss_min, loss_max, size=loss_count)]
    total_losses = math.fsum(losses)

    # Только убытки: масштабируем их до -target
    if win_count == 0:
        if target == 0:
            raise InfeasibleAllocationError("Losing trades cannot net to zero profit")
        scale = -target / total_losses
        return ProfitAllocation(win_amounts=[], loss_amounts=[amount * scale for amount in losses])

    # Каждой прибыли нужно минимум min_win_amount
    required = win_count * min_win_amount
    if target + total_losses < required:
        if loss_count == 0:
            raise InfeasibleAllocationError(
                f"Cannot achieve target ${target:.2f} with {win_count} winning trades only"
            )
        scale = (required - target) / total_losses
        losses = [amount * scale for amount in losses]
        total_losses = math.fsum(losses)
        logger.debug(f"📊 Loss amounts scaled by {scale:.4f} to keep wins positive")

    remaining = target + total_losses
    wins: List[float] = []

    for i in range(win_count - 1):
        wins_left = win_count - i
        upper = min(win_max, remaining - (wins_left - 1) * min_win_amount)

        if upper < win_min:
            # Полосу не соблюсти: делим остаток поровну
            amount = remaining / wins_left
        else:
            amount = float(rng.uniform(win_min, upper))

        wins.append(amount)
        remaining -= amount

    wins.append(max(min_win_amount, remaining))

    allocation = ProfitAllocation(win_amounts=wins, loss_amounts=losses)
    logger.debug(
        f"📊 P/L distribution: wins={allocation.total_wins:.2f} losses={allocation.total_losses:.2f} "
        f"net={allocation.net_profit:.2f} ({win_count}W/{loss_count}L)"
    )
    return allocation


def round_half_up(value: float) -> int:
    """Округление .5 вверх"""
    return int(math.floor(value + 0.5))


def plan_trades(
    robot,
    rng: Optional[np.random.Generator] = None,
    default_win_rate: float = 70.0
) -> TradePlan:
    """
    Количество сделок, целевая прибыль и число прибыльных сделок на день
    """
    rng = rng or np.random.default_rng()

    min_trades = max(1, int(robot.min_trades_per_day or 1))
    max_trades = max(min_trades, int(robot.max_trades_per_day or min_trades))
    trade_count = int(rng.integers(min_trades, max_trades + 1))

    profit_min = safe_float(robot.profit_range_min)
    profit_max = max(profit_min, safe_float(robot.profit_range_max))
    target_profit = float(rng.uniform(profit_min, profit_max))

    win_rate = safe_float(robot.win_rate, default_win_rate)
    win_count = min(trade_count, round_half_up(trade_count * win_rate / 100))
    if target_profit > 0 and win_count == 0:
        win_count = 1
    elif target_profit < 0 and win_count == trade_count:
        win_count -= 1
    elif target_profit == 0 and trade_count > 1:
        # Нулевой итог: нужна хотя бы одна прибыль и один убыток
        win_count = min(max(win_count, 1), trade_count - 1)

    return TradePlan(
        trade_count=trade_count,
        target_profit=target_profit,
        win_count=win_count,
        loss_count=trade_count - win_count,
    )
