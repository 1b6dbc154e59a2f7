"""
Tests for trade materialization and per-account trade generation.
"""

import random
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import numpy as np
import pytest

from conftest import flat_candles, make_settings, oscillating_candles, StubMarketData
from data.historical_data import HistoricalDataManager
from services.trade_generator import (
    MaterializationError,
    RobotTradeGenerator,
    TradeMaterializer,
    calculate_quantity_for_target,
    compute_trade_window,
)


class TestQuantityForTarget:
    def test_buy_win(self):
        assert calculate_quantity_for_target(5.0, 100.0, 101.0, "buy", True) == pytest.approx(5.0)

    def test_sell_loss(self):
        assert calculate_quantity_for_target(4.0, 100.0, 102.0, "sell", False) == pytest.approx(2.0)

    def test_floored_at_min_lot(self):
        assert calculate_quantity_for_target(0.001, 100.0, 200.0, "buy", True) == 0.01

    def test_zero_move_returns_min_lot(self):
        assert calculate_quantity_for_target(5.0, 100.0, 100.0, "buy", True, min_lot=0.05) == 0.05

    def test_fee_is_accounted_for_wins(self):
        quantity = calculate_quantity_for_target(5.0, 100.0, 102.0, "buy", True, fee_rate=0.01)
        # 5 = q * (2 - 1)
        assert quantity == pytest.approx(5.0)


class TestTradeMaterializer:
    def test_real_path_hits_target_with_correct_sign(self, settings, window_start):
        candles = oscillating_candles(window_start)
        closes = {c.close for c in candles}

        for seed in range(20):
            materializer = TradeMaterializer(settings, np.random.default_rng(seed))
            for is_win in (True, False):
                trade = materializer.materialize("BTC/USD", 5.0, is_win, candles)

                assert not trade.simulated
                assert (trade.realized_pnl > 0) == is_win
                assert abs(trade.realized_pnl) == pytest.approx(5.0)
                assert trade.close_price in closes
                assert trade.closed_at > trade.opened_at
                assert trade.fees == 0

    def test_flat_series_uses_simulated_exit(self, settings, window_start):
        candles = flat_candles(window_start)

        for seed in range(10):
            materializer = TradeMaterializer(settings, np.random.default_rng(seed))
            for is_win in (True, False):
                trade = materializer.materialize("ETH/USD", 3.0, is_win, candles)

                assert trade.simulated
                assert (trade.realized_pnl > 0) == is_win
                move = abs(trade.close_price - trade.open_price) / trade.open_price
                assert 0.005 <= move <= 0.025 + 1e-12
                assert trade.closed_at > trade.opened_at

    def test_single_candle_exit_is_ten_minutes_after_entry(self, settings, window_start):
        candles = flat_candles(window_start, count=1)
        trade = TradeMaterializer(settings, np.random.default_rng(0)).materialize("XAU/USD", 2.0, True, candles)

        assert trade.simulated
        assert trade.opened_at == window_start
        assert trade.closed_at == window_start + timedelta(minutes=10)

    def test_unsorted_candles_are_sorted(self, settings, window_start):
        candles = oscillating_candles(window_start)
        random.Random(4).shuffle(candles)

        trade = TradeMaterializer(settings, np.random.default_rng(9)).materialize("BTC/USD", 7.5, True, candles)

        assert not trade.simulated
        assert trade.closed_at > trade.opened_at
        assert trade.opened_at < window_start + timedelta(minutes=42)

    def test_candles_outside_window_are_ignored(self, settings, window_start):
        early = oscillating_candles(window_start - timedelta(hours=5), count=60)
        inside = oscillating_candles(window_start, count=60)
        window_end = window_start + timedelta(hours=3)

        trade = TradeMaterializer(settings, np.random.default_rng(2)).materialize(
            "BTC/USD", 4.0, False, early + inside, window_start, window_end
        )

        assert window_start <= trade.opened_at <= window_end

    def test_large_moves_on_expensive_symbol_still_hit_target(self, settings, window_start):
        # every candle exit moves $1000, so a $2 target would need 0.002 lot
        candles = oscillating_candles(window_start, base=43000.0)
        for candle in candles:
            candle.close = 43000.0 + (500.0 if candle.close > 43000.0 else -500.0)

        for seed in range(10):
            materializer = TradeMaterializer(settings, np.random.default_rng(seed))
            for is_win in (True, False):
                trade = materializer.materialize("BTC/USD", 2.0, is_win, candles)

                assert trade.simulated
                assert trade.quantity >= settings.ROBOT_MIN_LOT
                assert abs(trade.realized_pnl) == pytest.approx(2.0, abs=1e-6)
                assert (trade.realized_pnl > 0) == is_win

    def test_simulated_exit_move_is_capped_by_lot_floor(self, settings, window_start):
        candles = flat_candles(window_start, price=43000.0)

        for seed in range(10):
            trade = TradeMaterializer(settings, np.random.default_rng(seed)).materialize(
                "BTC/USD", 2.0, True, candles
            )

            move = abs(trade.close_price - trade.open_price) / trade.open_price
            assert move <= 2.0 / (settings.ROBOT_MIN_LOT * 43000.0) + 1e-12
            assert trade.realized_pnl == pytest.approx(2.0, abs=1e-6)

    def test_empty_candles_raise(self, settings):
        with pytest.raises(MaterializationError):
            TradeMaterializer(settings).materialize("BTC/USD", 5.0, True, [])


class TestTradeWindow:
    def test_previous_day_in_utc(self):
        now = datetime(2024, 3, 15, 6, 0, tzinfo=timezone.utc)
        start, end = compute_trade_window("01:00", "04:00", "UTC", now)

        assert start == datetime(2024, 3, 14, 1, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 14, 4, 0, tzinfo=timezone.utc)

    def test_window_crossing_midnight_rolls_end_forward(self):
        now = datetime(2024, 3, 15, 6, 0, tzinfo=timezone.utc)
        start, end = compute_trade_window("22:00", "02:00", "UTC", now)

        assert start == datetime(2024, 3, 14, 22, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 15, 2, 0, tzinfo=timezone.utc)

    def test_platform_timezone(self):
        now = datetime(2024, 7, 10, 12, 0, tzinfo=timezone.utc)
        start, end = compute_trade_window("01:00", "04:00", "America/New_York", now)

        # EDT is UTC-4
        assert start == datetime(2024, 7, 9, 5, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 7, 9, 8, 0, tzinfo=timezone.utc)

    def test_unknown_timezone_falls_back_to_utc(self):
        now = datetime(2024, 3, 15, 6, 0, tzinfo=timezone.utc)
        start, _ = compute_trade_window("01:00", "04:00", "Mars/Olympus", now)
        assert start == datetime(2024, 3, 14, 1, 0, tzinfo=timezone.utc)


class TestRobotTradeGenerator:
    def _robot(self, **overrides):
        values = dict(
            id="robot-1",
            min_trades_per_day=5,
            max_trades_per_day=5,
            profit_range_min=20,
            profit_range_max=20,
            win_rate=100,
            trade_window_start="01:00",
            trade_window_end="04:00",
            symbols=["BTC/USD", "ETH/USD"],
            min_account_balance=0,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    async def test_generates_trades_summing_to_target(self, settings, rng):
        market_data = StubMarketData()
        generator = RobotTradeGenerator(market_data, settings=settings, rng=rng)
        account = SimpleNamespace(id="acc-1", real_balance=1000)
        now = datetime(2024, 3, 15, 5, 0, tzinfo=timezone.utc)

        trades = await generator.generate_trades_for_account(self._robot(), account, "UTC", now)

        assert len(trades) == 5
        assert all(trade.is_win and trade.realized_pnl > 0 for trade in trades)
        assert sum(trade.realized_pnl for trade in trades) == pytest.approx(20.0, abs=0.01)
        assert all(count == 1 for count in market_data.calls.values())
        assert set(trade.symbol for trade in trades) <= {"BTC/USD", "ETH/USD"}

        window_start = datetime(2024, 3, 14, 1, 0, tzinfo=timezone.utc)
        window_end = datetime(2024, 3, 14, 4, 0, tzinfo=timezone.utc)
        for trade in trades:
            assert window_start <= trade.opened_at <= window_end

    async def test_mixed_wins_and_losses(self, settings, rng):
        generator = RobotTradeGenerator(StubMarketData(), settings=settings, rng=rng)
        account = SimpleNamespace(id="acc-1", real_balance=1000)
        robot = self._robot(min_trades_per_day=10, max_trades_per_day=10, win_rate=70,
                            profit_range_min=22, profit_range_max=22)

        trades = await generator.generate_trades_for_account(robot, account, "UTC")

        wins = [trade for trade in trades if trade.is_win]
        assert len(trades) == 10
        assert len(wins) == 7
        assert sum(trade.realized_pnl for trade in trades) == pytest.approx(22.0, abs=0.01)

    @pytest.mark.parametrize("interval", ["1min", "1h"])
    async def test_simulated_btc_market_hits_target_with_default_lot(self, tmp_path, interval):
        settings = make_settings(tmp_path, MARKET_DATA_INTERVAL=interval)
        assert settings.ROBOT_MIN_LOT == 0.01
        account = SimpleNamespace(id="acc-1", real_balance=1000)
        now = datetime(2024, 3, 15, 5, 0, tzinfo=timezone.utc)

        for seed in range(10):
            rng = np.random.default_rng(seed)
            market_data = HistoricalDataManager(settings=settings, rng=rng)
            generator = RobotTradeGenerator(market_data, settings=settings, rng=rng)

            trades = await generator.generate_trades_for_account(
                self._robot(symbols=["BTC/USD"]), account, "UTC", now
            )

            assert len(trades) == 5
            assert all(trade.quantity >= 0.01 for trade in trades)
            assert sum(trade.realized_pnl for trade in trades) == pytest.approx(20.0, abs=0.01)

    async def test_insufficient_balance_returns_no_trades(self, settings, rng):
        market_data = StubMarketData()
        generator = RobotTradeGenerator(market_data, settings=settings, rng=rng)
        account = SimpleNamespace(id="acc-1", real_balance=50)

        trades = await generator.generate_trades_for_account(
            self._robot(min_account_balance=100), account, "UTC"
        )

        assert trades == []
        assert market_data.calls == {}
