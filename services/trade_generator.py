"""
Trading Robot Engine Trade Generator
Материализация сделок роботов по историческим свечам
"""

import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional, Sequence, Tuple

import numpy as np

from app.config.settings import Settings, get_settings
from services.profit_allocator import allocate_profit, plan_trades, TradePlan
from utils.helpers import (
    RobotEngineError, TimeOfDay, ensure_utc, get_current_utc_datetime,
    resolve_timezone, safe_float
)
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ И ТИПЫ
# ============================================================================

logger = setup_logger(__name__)

SIDE_BUY = "buy"
SIDE_SELL = "sell"


class MaterializationError(RobotEngineError):
    """Не удалось построить сделку по свечам"""
    pass


@dataclass
class GeneratedTrade:
    """Сделка, построенная по историческим свечам"""
    symbol: str
    side: str
    quantity: float
    open_price: float
    close_price: float
    opened_at: datetime
    closed_at: datetime
    realized_pnl: float
    fees: float
    is_win: bool
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['opened_at'] = self.opened_at.isoformat()
        data['closed_at'] = self.closed_at.isoformat()
        return data


def price_move(side: str, entry_price: float, exit_price: float) -> float:
    """Движение цены в пользу позиции"""
    if side == SIDE_BUY:
        return exit_price - entry_price
    return entry_price - exit_price


def calculate_quantity_for_target(
    target_pnl: float,
    entry_price: float,
    exit_price: float,
    side: str,
    is_win: bool,
    fee_rate: float = 0.0,
    min_lot: float = 0.01
) -> float:
    """
    Объем позиции, при котором P&L равен target_pnl

    Прибыль: target = qty * (move - entry * fee)
    Убыток: target = qty * (move + entry * fee)
    """
    move = price_move(side, entry_price, exit_price)
    if is_win:
        denominator = move - entry_price * fee_rate
    else:
        denominator = move + entry_price * fee_rate

    if denominator == 0:
        return min_lot

    return max(abs(target_pnl / denominator), min_lot)


def compute_trade_window(
    window_start: str,
    window_end: str,
    tz_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> Tuple[datetime, datetime]:
    """
    Торговое окно за вчерашний локальный день в UTC

    Если конец не позже начала, он переносится на следующий день.
    """
    tz = resolve_timezone(tz_name)
    local_now = ensure_utc(now or get_current_utc_datetime()).astimezone(tz)
    day = local_now.date() - timedelta(days=1)

    start_local = TimeOfDay.parse(window_start).on_date(day, tz)
    end_time = TimeOfDay.parse(window_end)
    end_local = end_time.on_date(day, tz)
    if end_local <= start_local:
        end_local = end_time.on_date(day + timedelta(days=1), tz)

    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


# ============================================================================
# МАТЕРИАЛИЗАЦИЯ СДЕЛКИ
# ============================================================================

class TradeMaterializer:
    """
    Превращает целевой P&L в сделку с реальными ценами входа и выхода
    """

    def __init__(self, settings: Optional[Settings] = None, rng: Optional[np.random.Generator] = None):
        self.settings = settings or get_settings()
        self.rng = rng or np.random.default_rng()
        self.logger = setup_logger(f"{__name__}.TradeMaterializer")

        s = self.settings
        self.fee_rate = s.ROBOT_FEE_RATE
        self.min_lot = s.ROBOT_MIN_LOT
        self.entry_fraction = s.ROBOT_ENTRY_FRACTION
        self.exit_min_offset = s.ROBOT_EXIT_MIN_OFFSET
        self.exit_max_offset = s.ROBOT_EXIT_MAX_OFFSET
        self.simulated_move = (s.ROBOT_SIMULATED_MOVE_MIN, s.ROBOT_SIMULATED_MOVE_MAX)
        self.simulated_exit_offset = s.ROBOT_SIMULATED_EXIT_OFFSET

    def _realized(self, side: str, entry_price: float, exit_price: float, quantity: float) -> Tuple[float, float]:
        fees = quantity * entry_price * self.fee_rate
        return price_move(side, entry_price, exit_price) * quantity - fees, fees

    def _simulated_move_pct(self, target: float, entry_price: float) -> float:
        """
        Относительное движение цены для симулированного выхода (без комиссии)

        Ограничено сверху так, чтобы объем target / (entry * move) не был
        меньше минимального лота.
        """
        move_pct = float(self.rng.uniform(*self.simulated_move))
        if entry_price <= 0:
            return move_pct

        max_move_pct = target / (self.min_lot * entry_price)
        if max_move_pct <= 0:
            return self.simulated_move[0]
        return min(move_pct, max_move_pct)

    def materialize(
        self,
        symbol: str,
        target_pnl: float,
        is_win: bool,
        candles: Sequence[Any],
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None
    ) -> GeneratedTrade:
        """
        Построение одной сделки

        Args:
            symbol: Инструмент
            target_pnl: Модуль целевого P&L
            is_win: Прибыльная ли сделка
            candles: Свечи в любом порядке
            window_start: Начало торгового окна (свечи вне окна не используются, если есть свечи внутри)
            window_end: Конец торгового окна

        Raises:
            MaterializationError: свечей нет
        """
        if not candles:
            raise MaterializationError(f"No candles available for {symbol}")

        target = abs(float(target_pnl))
        series = sorted(candles, key=lambda candle: ensure_utc(candle.timestamp))

        if window_start is not None and window_end is not None:
            start, end = ensure_utc(window_start), ensure_utc(window_end)
            in_window = [c for c in series if start <= ensure_utc(c.timestamp) <= end]
            if in_window:
                series = in_window

        n = len(series)
        max_entry = max(1, math.floor(n * self.entry_fraction))
        entry_index = int(self.rng.integers(0, max_entry))
        entry_candle = series[entry_index]
        entry_price = float(entry_candle.close)
        side = SIDE_BUY if self.rng.random() < 0.5 else SIDE_SELL

        best_exit = None
        best_error = math.inf

        last_offset = min(self.exit_max_offset, n - entry_index - 1)
        for offset in range(self.exit_min_offset, last_offset + 1):
            candidate = series[entry_index + offset]
            candidate_price = float(candidate.close)

            quantity = calculate_quantity_for_target(
                target, entry_price, candidate_price, side, is_win, self.fee_rate, min_lot=0.0
            )
            # Объем ниже минимального лота дал бы P&L больше цели
            if quantity < self.min_lot:
                continue
            realized, _ = self._realized(side, entry_price, candidate_price, quantity)
            if realized == 0 or (realized > 0) != is_win:
                continue

            error = abs(abs(realized) - target)
            if error < best_error:
                best_error = error
                best_exit = candidate

        simulated = best_exit is None
        opened_at = ensure_utc(entry_candle.timestamp)

        if simulated:
            self.logger.warning(
                f"⚠️ No suitable exit candle for {symbol} {'WIN' if is_win else 'LOSS'}, using simulated price"
            )
            move_pct = self._simulated_move_pct(target, entry_price) + self.fee_rate
            favourable = is_win == (side == SIDE_BUY)
            exit_price = entry_price * (1 + move_pct) if favourable else entry_price * (1 - move_pct)

            exit_candle = series[min(entry_index + self.simulated_exit_offset, n - 1)]
            closed_at = ensure_utc(exit_candle.timestamp)
            if closed_at <= opened_at:
                closed_at = opened_at + timedelta(minutes=self.simulated_exit_offset)
        else:
            exit_price = float(best_exit.close)
            closed_at = ensure_utc(best_exit.timestamp)

        quantity = calculate_quantity_for_target(
            target, entry_price, exit_price, side, is_win, self.fee_rate, self.min_lot
        )
        realized, fees = self._realized(side, entry_price, exit_price, quantity)

        return GeneratedTrade(
            symbol=symbol,
            side=side,
            quantity=quantity,
            open_price=entry_price,
            close_price=exit_price,
            opened_at=opened_at,
            closed_at=closed_at,
            realized_pnl=realized,
            fees=fees,
            is_win=is_win,
            simulated=simulated,
        )


# ============================================================================
# ГЕНЕРАТОР СДЕЛОК ДЛЯ СЧЕТА
# ============================================================================

class RobotTradeGenerator:
    """
    Генерация дневных сделок робота для одного счета
    """

    def __init__(
        self,
        market_data,
        settings: Optional[Settings] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.market_data = market_data
        self.settings = settings or get_settings()
        self.rng = rng or np.random.default_rng()
        self.materializer = TradeMaterializer(self.settings, self.rng)
        self.logger = setup_logger(f"{__name__}.RobotTradeGenerator")

    def has_sufficient_balance(self, robot, account) -> bool:
        """Реальный баланс счета не ниже минимума робота"""
        return safe_float(account.real_balance) >= safe_float(robot.min_account_balance)

    def plan(self, robot) -> TradePlan:
        return plan_trades(robot, self.rng, self.settings.ROBOT_DEFAULT_WIN_RATE)

    async def generate_trades_for_account(
        self,
        robot,
        account,
        tz_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[GeneratedTrade]:
        """
        Сделки робота для счета за вчерашнее торговое окно

        Returns:
            Пустой список, если баланса недостаточно
        """
        if not self.has_sufficient_balance(robot, account):
            self.logger.info(
                f"📊 Skipping account {account.id}: insufficient balance "
                f"({account.real_balance} < {robot.min_account_balance})"
            )
            return []

        plan = self.plan(robot)
        economics = self.settings.get_robot_economics()
        allocation = allocate_profit(
            plan.target_profit,
            plan.win_count,
            plan.loss_count,
            rng=self.rng,
            loss_band=(economics['loss_min'], economics['loss_max']),
            win_band=(economics['win_min'], economics['win_max']),
            min_win_amount=economics['min_win_amount'],
        )

        window_start, window_end = compute_trade_window(
            robot.trade_window_start, robot.trade_window_end, tz_name, now
        )

        self.logger.info(
            f"📊 Generating {plan.trade_count} trades for account {account.id}: "
            f"{plan.win_count}W/{plan.loss_count}L, target ${plan.target_profit:.2f}, "
            f"window {window_start:%Y-%m-%d %H:%M} - {window_end:%H:%M} UTC"
        )

        amounts = (
            [(amount, True) for amount in allocation.win_amounts]
            + [(amount, False) for amount in allocation.loss_amounts]
        )
        symbols = list(robot.symbols)
        candles_by_symbol: Dict[str, List[Any]] = {}
        trades = []

        for index in self.rng.permutation(len(amounts)):
            amount, is_win = amounts[int(index)]
            symbol = symbols[int(self.rng.integers(0, len(symbols)))]

            if symbol not in candles_by_symbol:
                candles_by_symbol[symbol] = await self.market_data.get_historical_candles_for_window(
                    symbol, window_start, window_end
                )

            trades.append(self.materializer.materialize(
                symbol, amount, is_win, candles_by_symbol[symbol], window_start, window_end
            ))

        simulated = sum(1 for trade in trades if trade.simulated)
        if simulated:
            self.logger.warning(f"⚠️ {simulated}/{len(trades)} trades for account {account.id} used simulated exits")

        return trades
