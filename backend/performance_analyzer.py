"""
Performance Analyzer

Reduces a run's snapshots to return, risk and attribution statistics, and
builds the equity-curve table used for charting.
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from config_loader import config
from backend.errors import EmptyInputError, ValidationError
from backend.models import BacktestSummary, PerformanceMetrics, PnlBreakdown, Side, StrategySnapshot

logger = logging.getLogger(__name__)

HOURS_PER_YEAR = config.get('performance.hours_per_year', default=8760)

CHART_COLUMNS = [
    'timestamp', 'hour', 'total_value', 'total_return', 'reference_return', 'reference_price',
    'reference_value', 'short_value', 'cash_value', 'drawdown', 'is_active',
]


def _safe(value: float) -> float:
    """NaN and infinities collapse to 0"""
    value = float(value)
    return value if math.isfinite(value) else 0.0


def _require_snapshots(snapshots: Sequence[StrategySnapshot]):
    if not snapshots:
        raise EmptyInputError("No snapshots to analyze")


def _initial_capital(snapshots: Sequence[StrategySnapshot], initial_capital: Optional[float]) -> float:
    if initial_capital is not None:
        return initial_capital
    first = snapshots[0]
    return first.total_value - first.cumulative_pnl


def annualize(total_return: float, periods: int, granularity_hours: float) -> float:
    years = periods * granularity_hours / HOURS_PER_YEAR
    if years <= 0:
        return 0.0
    if 1 + total_return <= 0:
        return -1.0
    with np.errstate(over='ignore'):
        return _safe(np.power(1 + total_return, 1 / years) - 1)


def max_drawdown(values: Sequence[float], initial_capital: float):
    """
    Largest peak-to-trough fall of the value series.

    The running peak starts at initial_capital (period 0). Returns
    (drawdown fraction, peak period, trough period) with 1-indexed periods.
    """
    peak = initial_capital
    peak_period = 0
    worst, start, end = 0.0, 0, 0
    for period, value in enumerate(values, start=1):
        if value > peak:
            peak = value
            peak_period = period
        elif peak > 0:
            drawdown = (peak - value) / peak
            if drawdown > worst:
                worst, start, end = drawdown, peak_period, period
    return worst, start, end


def analyze(snapshots: Sequence[StrategySnapshot], granularity_hours: float,
            initial_capital: Optional[float] = None) -> PerformanceMetrics:
    """Compute PerformanceMetrics for a completed run"""
    _require_snapshots(snapshots)
    if not granularity_hours or granularity_hours <= 0:
        raise ValidationError(f"granularity_hours must be > 0, got {granularity_hours}")

    capital = _initial_capital(snapshots, initial_capital)
    first, last = snapshots[0], snapshots[-1]
    returns = np.array([s.period_pnl_percent for s in snapshots], dtype=float)
    periods_per_year = HOURS_PER_YEAR / granularity_hours

    total_return = _safe(last.cumulative_pnl_percent)
    annualized_return = annualize(total_return, len(snapshots), granularity_hours)
    volatility = _safe(np.std(returns) * math.sqrt(periods_per_year))
    sharpe_ratio = _safe(annualized_return / volatility) if volatility > 0 else 0.0

    drawdown, dd_start, dd_end = max_drawdown([s.total_value for s in snapshots], capital)
    calmar_ratio = _safe(annualized_return / drawdown) if drawdown > 0 else 0.0

    funding = [s.period_funding_fee for s in snapshots]
    if first.reference_price > 0:
        reference_return = (last.reference_price - first.reference_price) / first.reference_price
    else:
        reference_return = 0.0

    metrics = PerformanceMetrics(
        total_return=total_return,
        annualized_return=annualized_return,
        volatility=volatility,
        sharpe_ratio=sharpe_ratio,
        max_drawdown=drawdown,
        max_drawdown_start_period=dd_start,
        max_drawdown_end_period=dd_end,
        win_rate=_safe(np.mean(returns > 0)),
        avg_return=_safe(np.mean(returns)),
        best_period=_safe(np.max(returns)),
        worst_period=_safe(np.min(returns)),
        calmar_ratio=calmar_ratio,
        best_period_index=int(np.argmax(returns)) + 1,
        worst_period_index=int(np.argmin(returns)) + 1,
        best_funding_period=max(funding),
        worst_funding_period=min(funding),
        reference_return=_safe(reference_return),
    )
    logger.debug(f"Analyzed {len(snapshots)} periods: return {total_return:.4f}, "
                 f"drawdown {drawdown:.4f} (periods {dd_start}-{dd_end})")
    return metrics


def pnl_breakdown(snapshots: Sequence[StrategySnapshot], initial_capital: Optional[float] = None) -> PnlBreakdown:
    """Split the total PnL into reference leg, short leg, trading fees and funding"""
    _require_snapshots(snapshots)
    capital = _initial_capital(snapshots, initial_capital)
    last = snapshots[-1]

    reference_pnl = 0.0
    short_pnl = 0.0
    for snapshot in snapshots:
        for position in snapshot.open_positions + snapshot.closed_positions:
            if position.side == Side.LONG:
                reference_pnl += position.period_pnl
            else:
                short_pnl += position.period_pnl

    trading_fees = last.cumulative_trading_fee
    funding_fees = last.cumulative_funding_fee
    total_pnl = last.cumulative_pnl

    def rate(amount):
        return amount / capital if capital > 0 else 0.0

    return PnlBreakdown(
        total_pnl=total_pnl,
        reference_pnl=reference_pnl,
        short_pnl=short_pnl,
        trading_fees=trading_fees,
        funding_fees=funding_fees,
        total_pnl_rate=rate(total_pnl),
        reference_pnl_rate=rate(reference_pnl),
        short_pnl_rate=rate(short_pnl),
        trading_fee_rate=rate(trading_fees),
        funding_fee_rate=rate(funding_fees),
    )


def summarize(snapshots: Sequence[StrategySnapshot], granularity_hours: float) -> BacktestSummary:
    _require_snapshots(snapshots)
    active = sum(1 for s in snapshots if s.is_active)
    return BacktestSummary(
        total_periods=len(snapshots),
        active_periods=active,
        inactive_periods=len(snapshots) - active,
        avg_short_positions=sum(len(s.short_positions) for s in snapshots) / len(snapshots),
        granularity_hours=granularity_hours,
    )


def build_chart_data(snapshots: Sequence[StrategySnapshot],
                     initial_capital: Optional[float] = None) -> pd.DataFrame:
    """
    Equity-curve table, one row per period.

    reference_value is the reference position's spot value, short_value the
    short basket's cost plus unrealized PnL, drawdown is <= 0 relative to the
    running peak of total_value, seeded with the initial capital.
    """
    if not snapshots:
        return pd.DataFrame(columns=CHART_COLUMNS)

    capital = _initial_capital(snapshots, initial_capital)
    first_price = snapshots[0].reference_price
    rows: List[dict] = []
    for snapshot in snapshots:
        reference = snapshot.reference_position
        rows.append({
            'timestamp': snapshot.timestamp,
            'hour': snapshot.hour,
            'total_value': snapshot.total_value,
            'total_return': (snapshot.total_value - capital) / capital if capital > 0 else 0.0,
            'reference_return': (snapshot.reference_price - first_price) / first_price if first_price > 0 else 0.0,
            'reference_price': snapshot.reference_price,
            'reference_value': reference.quantity * reference.current_price if reference else 0.0,
            'short_value': sum(pos.market_value for pos in snapshot.short_positions),
            'cash_value': snapshot.cash_balance,
            'is_active': snapshot.is_active,
        })

    df = pd.DataFrame(rows, columns=[c for c in CHART_COLUMNS if c != 'drawdown'])
    # The running peak starts from the capital so a first-period loss is a drawdown
    peak = df['total_value'].cummax().clip(lower=capital)
    df['drawdown'] = -((peak - df['total_value']) / peak).where(peak > 0, 0.0)
    return df[CHART_COLUMNS]
