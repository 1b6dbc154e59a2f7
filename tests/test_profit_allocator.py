"""
Tests for profit allocation and daily trade planning.
"""

from types import SimpleNamespace

import numpy as np
import pytest

from services.profit_allocator import (
    InfeasibleAllocationError,
    allocate_profit,
    plan_trades,
    round_half_up,
)


def robot(**overrides):
    values = dict(
        min_trades_per_day=5,
        max_trades_per_day=5,
        profit_range_min=20,
        profit_range_max=20,
        win_rate=100,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestAllocateProfit:
    @pytest.mark.parametrize("target,wins,losses", [
        (20.0, 5, 0),
        (22.5, 7, 3),
        (25.0, 1, 9),
        (3.0, 5, 0),
        (0.5, 4, 4),
        (-5.0, 2, 3),
        (-50.0, 1, 2),
        (0.0, 3, 3),
    ])
    def test_identity_and_lengths(self, target, wins, losses):
        """Wins minus losses equals the target, with one amount per trade."""
        for seed in range(25):
            allocation = allocate_profit(target, wins, losses, rng=np.random.default_rng(seed))

            assert len(allocation.win_amounts) == wins
            assert len(allocation.loss_amounts) == losses
            assert abs(allocation.net_profit - target) < 1e-6
            assert all(amount > 0 for amount in allocation.win_amounts)
            assert all(amount > 0 for amount in allocation.loss_amounts)

    def test_losses_stay_in_band_when_target_is_reachable(self):
        allocation = allocate_profit(20.0, 7, 3, rng=np.random.default_rng(1))
        assert all(1.0 <= amount <= 10.0 for amount in allocation.loss_amounts)

    def test_intermediate_wins_respect_band(self):
        allocation = allocate_profit(60.0, 5, 2, rng=np.random.default_rng(7))
        for amount in allocation.win_amounts[:-1]:
            assert 2.0 <= amount <= 15.0

    def test_zero_wins_with_positive_target_is_rejected(self):
        with pytest.raises(InfeasibleAllocationError):
            allocate_profit(20.0, 0, 5, rng=np.random.default_rng(0))

    def test_wins_only_with_non_positive_target_is_rejected(self):
        with pytest.raises(InfeasibleAllocationError):
            allocate_profit(-1.0, 3, 0, rng=np.random.default_rng(0))

    def test_no_trades(self):
        assert allocate_profit(0.0, 0, 0).trade_count == 0
        with pytest.raises(InfeasibleAllocationError):
            allocate_profit(5.0, 0, 0)

    def test_losses_only_are_scaled_to_target(self):
        allocation = allocate_profit(-12.0, 0, 4, rng=np.random.default_rng(3))
        assert allocation.win_amounts == []
        assert abs(allocation.total_losses - 12.0) < 1e-9

    def test_losses_only_cannot_net_zero(self):
        with pytest.raises(InfeasibleAllocationError):
            allocate_profit(0.0, 0, 2)

    def test_last_win_absorbs_remainder(self):
        allocation = allocate_profit(20.0, 1, 0, rng=np.random.default_rng(0))
        assert allocation.win_amounts == [pytest.approx(20.0)]

    def test_custom_bands(self):
        allocation = allocate_profit(
            10.0, 2, 2,
            rng=np.random.default_rng(0),
            loss_band=(0.5, 0.5),
            win_band=(1.0, 3.0),
        )
        assert allocation.loss_amounts == [0.5, 0.5]
        assert abs(allocation.net_profit - 10.0) < 1e-9


class TestPlanTrades:
    def test_fixed_configuration(self):
        plan = plan_trades(robot(), np.random.default_rng(0))
        assert plan.trade_count == 5
        assert plan.target_profit == 20.0
        assert plan.win_count == 5
        assert plan.loss_count == 0

    def test_zero_win_rate_forces_one_win_for_positive_target(self):
        plan = plan_trades(robot(win_rate=0), np.random.default_rng(0))
        assert plan.win_count == 1
        assert plan.loss_count == 4

    def test_win_count_rounds_half_up(self):
        plan = plan_trades(robot(win_rate=70), np.random.default_rng(0))
        # 5 * 0.7 = 3.5
        assert plan.win_count == 4

    def test_invalid_trade_range_is_normalised(self):
        plan = plan_trades(robot(min_trades_per_day=0, max_trades_per_day=0), np.random.default_rng(0))
        assert plan.trade_count == 1

    def test_ranges_are_respected(self):
        rng = np.random.default_rng(42)
        for _ in range(50):
            plan = plan_trades(robot(min_trades_per_day=3, max_trades_per_day=8,
                                     profit_range_min=10, profit_range_max=15, win_rate=60), rng)
            assert 3 <= plan.trade_count <= 8
            assert 10 <= plan.target_profit <= 15
            assert plan.win_count + plan.loss_count == plan.trade_count

    @pytest.mark.parametrize("overrides", [
        {'profit_range_min': 0, 'profit_range_max': 0, 'win_rate': 100},
        {'profit_range_min': 0, 'profit_range_max': 0, 'win_rate': 0},
        {'profit_range_min': -5, 'profit_range_max': -5, 'win_rate': 100},
        {'profit_range_min': -5, 'profit_range_max': -5, 'win_rate': 0},
        {'profit_range_min': -5, 'profit_range_max': -5, 'win_rate': 100,
         'min_trades_per_day': 1, 'max_trades_per_day': 1},
    ])
    def test_non_positive_targets_are_planned_feasibly(self, overrides):
        for seed in range(10):
            rng = np.random.default_rng(seed)
            plan = plan_trades(robot(**overrides), rng)

            allocation = allocate_profit(plan.target_profit, plan.win_count, plan.loss_count, rng=rng)

            assert plan.win_count + plan.loss_count == plan.trade_count
            assert allocation.trade_count == plan.trade_count
            assert abs(allocation.net_profit - plan.target_profit) < 1e-6
            assert all(amount > 0 for amount in allocation.win_amounts + allocation.loss_amounts)

    def test_zero_target_gets_one_win_and_one_loss(self):
        plan = plan_trades(robot(profit_range_min=0, profit_range_max=0), np.random.default_rng(0))
        assert plan.win_count == 4
        assert plan.loss_count == 1

        plan = plan_trades(robot(profit_range_min=0, profit_range_max=0, win_rate=0), np.random.default_rng(0))
        assert plan.win_count == 1
        assert plan.loss_count == 4

    def test_negative_target_with_all_wins_forces_a_loss(self):
        plan = plan_trades(robot(profit_range_min=-5, profit_range_max=-5), np.random.default_rng(0))
        assert plan.win_count == 4
        assert plan.loss_count == 1

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4
        assert round_half_up(2.49) == 2
