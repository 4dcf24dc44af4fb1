"""
Tests for performance metrics, PnL breakdown and chart data
"""

import math
from dataclasses import replace
import pytest

import numpy as np

from backend.errors import EmptyInputError, ValidationError
from backend.models import PositionInfo, Side, StrategySnapshot
from backend.performance_analyzer import (
    CHART_COLUMNS, analyze, annualize, build_chart_data, max_drawdown, pnl_breakdown, summarize,
)

INITIAL = 10_000.0


def make_snapshots(values, initial=INITIAL, reference_prices=None, funding=None, active=None):
    """Bare snapshots carrying only the value series"""
    snapshots = []
    previous = initial
    for i, value in enumerate(values):
        fee = funding[i] if funding else 0.0
        snapshots.append(StrategySnapshot(
            timestamp=f"t{i + 1}",
            hour=0,
            reference_price=reference_prices[i] if reference_prices else 100.0,
            reference_change_24h=0.0,
            reference_position=None,
            short_positions=(),
            closed_positions=(),
            cash_balance=value,
            total_value=value,
            period_pnl=value - previous - fee,
            period_pnl_percent=(value - previous) / previous,
            cumulative_pnl=value - initial,
            cumulative_pnl_percent=(value - initial) / initial,
            period_trading_fee=0.0,
            cumulative_trading_fee=0.0,
            period_funding_fee=fee,
            cumulative_funding_fee=sum(funding[:i + 1]) if funding else 0.0,
            is_active=active[i] if active else True,
            rebalance_reason="",
        ))
        previous = value
    return snapshots


class TestDrawdown:

    def test_peak_to_trough(self):
        """Values [10000, 11000, 9000, 9500, 12000]"""
        metrics = analyze(make_snapshots([10_000, 11_000, 9_000, 9_500, 12_000]), 8)

        assert metrics.max_drawdown == pytest.approx(2000 / 11000)
        assert round(metrics.max_drawdown, 4) == 0.1818
        assert metrics.max_drawdown_start_period == 2
        assert metrics.max_drawdown_end_period == 3

    def test_peak_at_initial_capital(self):
        worst, start, end = max_drawdown([9_000, 8_000, 9_500], INITIAL)

        assert worst == pytest.approx(0.2)
        assert (start, end) == (0, 2)

    def test_monotonic_rise_has_no_drawdown(self):
        assert max_drawdown([10_100, 10_200, 10_300], INITIAL) == (0.0, 0, 0)


class TestMetrics:

    def test_returns_statistics(self):
        values = [10_000, 11_000, 9_000, 9_500, 12_000]
        metrics = analyze(make_snapshots(values), 8)
        returns = np.array([0.0, 0.1, -2000 / 11000, 500 / 9000, 2500 / 9500])

        assert metrics.total_return == pytest.approx(0.2)
        assert metrics.win_rate == pytest.approx(0.6)
        assert metrics.avg_return == pytest.approx(returns.mean())
        assert metrics.best_period == pytest.approx(2500 / 9500)
        assert metrics.worst_period == pytest.approx(-2000 / 11000)
        assert metrics.best_period_index == 5
        assert metrics.worst_period_index == 3
        assert metrics.volatility == pytest.approx(returns.std() * math.sqrt(8760 / 8))

    def test_annualized_and_ratios(self):
        metrics = analyze(make_snapshots([10_000, 11_000, 9_000, 9_500, 12_000]), 8)
        expected = 1.2 ** (8760 / 40) - 1

        assert metrics.annualized_return == pytest.approx(expected)
        assert metrics.sharpe_ratio == pytest.approx(expected / metrics.volatility)
        assert metrics.calmar_ratio == pytest.approx(expected / metrics.max_drawdown)

    def test_flat_series_gives_zero_ratios(self):
        metrics = analyze(make_snapshots([INITIAL, INITIAL, INITIAL]), 8)

        assert metrics.total_return == 0.0
        assert metrics.volatility == 0.0
        assert metrics.sharpe_ratio == 0.0
        assert metrics.calmar_ratio == 0.0
        assert metrics.max_drawdown == 0.0
        assert metrics.win_rate == 0.0

    def test_total_loss_annualizes_to_minus_one(self):
        assert annualize(-1.0, 10, 8) == -1.0
        assert annualize(-1.5, 10, 8) == -1.0

    def test_no_years(self):
        assert annualize(0.5, 0, 8) == 0.0

    def test_overflowing_annualization_collapses_to_zero(self):
        assert annualize(1e6, 1, 1) == 0.0

    def test_ratios_are_always_finite(self):
        metrics = analyze(make_snapshots([10_000, 30_000, 5_000]), 1)

        for value in metrics.to_dict().values():
            assert math.isfinite(value)

    def test_reference_return_and_funding_extremes(self):
        snapshots = make_snapshots([10_000, 10_010, 10_005], reference_prices=[100.0, 105.0, 110.0],
                                   funding=[0.0, 5.0, -2.0])
        metrics = analyze(snapshots, 8)

        assert metrics.reference_return == pytest.approx(0.1)
        assert metrics.best_funding_period == 5.0
        assert metrics.worst_funding_period == -2.0

    def test_explicit_initial_capital(self):
        """Passing initial capital overrides the derived one for drawdown"""
        snapshots = make_snapshots([10_000, 10_500])
        metrics = analyze(snapshots, 8, initial_capital=12_000)

        assert metrics.max_drawdown == pytest.approx(2000 / 12000)
        assert metrics.max_drawdown_start_period == 0

    def test_empty_input(self):
        with pytest.raises(EmptyInputError):
            analyze([], 8)

    def test_bad_granularity(self):
        with pytest.raises(ValidationError):
            analyze(make_snapshots([INITIAL]), 0)


class TestBreakdownAndSummary:

    def test_breakdown_by_leg(self):
        long_pos = PositionInfo(symbol="BTCUSDT", side=Side.LONG, quantity=0.1, entry_price=50_000,
                                current_price=51_000, period_pnl=100.0)
        short_pos = PositionInfo(symbol="ETHUSDT", side=Side.SHORT, quantity=0.0, entry_price=2_000,
                                 current_price=1_900, period_pnl=50.0, is_closed=True)
        base = make_snapshots([10_150])[0]
        snapshot = replace(base, reference_position=long_pos, closed_positions=(short_pos,))
        b = pnl_breakdown([snapshot])

        assert b.reference_pnl == pytest.approx(100.0)
        assert b.short_pnl == pytest.approx(50.0)
        assert b.total_pnl == pytest.approx(150.0)
        assert b.total_pnl_rate == pytest.approx(0.015)

    def test_summary(self):
        snapshots = make_snapshots([INITIAL] * 4, active=[True, False, True, True])
        summary = summarize(snapshots, 8)

        assert summary.total_periods == 4
        assert summary.active_periods == 3
        assert summary.inactive_periods == 1
        assert summary.avg_short_positions == 0.0
        assert summary.granularity_hours == 8

    def test_summary_requires_snapshots(self):
        with pytest.raises(EmptyInputError):
            summarize([], 8)


class TestChartData:

    def test_columns_and_drawdown(self):
        df = build_chart_data(make_snapshots([10_000, 11_000, 9_000, 9_500, 12_000],
                                             reference_prices=[100, 110, 90, 95, 120]))

        assert list(df.columns) == CHART_COLUMNS
        assert len(df) == 5
        assert df['drawdown'].iloc[2] == pytest.approx(-2000 / 11000)
        assert df['drawdown'].iloc[4] == pytest.approx(0.0)
        assert df['total_return'].iloc[-1] == pytest.approx(0.2)
        assert df['reference_return'].iloc[1] == pytest.approx(0.1)

    def test_drawdown_starts_from_initial_capital(self):
        df = build_chart_data(make_snapshots([9_000, 9_500, 10_500]), initial_capital=10_000)

        assert df["drawdown"].iloc[0] == pytest.approx(-0.1)
        assert df["drawdown"].iloc[1] == pytest.approx(-0.05)
        assert df["drawdown"].iloc[2] == pytest.approx(0.0)

    def test_empty(self):
        df = build_chart_data([])

        assert df.empty
        assert list(df.columns) == CHART_COLUMNS
