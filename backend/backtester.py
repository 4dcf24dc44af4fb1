"""
BTCDOM Backtesting Engine

Simulates the "long the reference asset, short a basket of alts" strategy
period by period. Each period reads only the previous snapshot and the
current market point, so a run is a strictly sequential fold.
"""

import logging
import math
import sys
import os
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

# Add parent directory to path for config_loader import
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config_loader import config

from backend.errors import BacktestError, SimulationArithmeticError, ValidationError
from backend.models import (
    AllocationStrategy, BacktestResult, CandidateQuote, FundingSettlement, MarketPoint, PositionInfo,
    ShortCandidateScore, Side, StrategyParameters, StrategySnapshot,
)
from backend.position_accountant import (
    Adjustment, adjust_position, close_position, quantity_for_notional, settle_funding,
)
from backend import performance_analyzer
from short_scorer import ShortCandidateScorer

logger = logging.getLogger(__name__)

ACCOUNTING_TOLERANCE = config.simulation.get('accounting_tolerance', 1e-6)

REASON_BOTH_DISABLED = "Strategy inactive: both legs disabled"
REASON_NO_SHORTS = "No eligible short candidates"
REASON_LONG_ONLY_FALLBACK = "No eligible short candidates, holding reference asset only"
REASON_LONG_ONLY = "Long reference asset only"


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def allocate_sleeve(candidates: Sequence[ShortCandidateScore], sleeve: float,
                    params: StrategyParameters) -> List[float]:
    """Split the short sleeve notional across the selected candidates"""
    if not candidates or sleeve <= 0:
        return [0.0] * len(candidates)

    equal = [sleeve / len(candidates)] * len(candidates)
    strategy = params.allocation_strategy

    if strategy == AllocationStrategy.EQUAL:
        return equal

    if strategy == AllocationStrategy.BY_COMPOSITE_SCORE:
        total_score = sum(max(c.total_score, 0.0) for c in candidates)
        if total_score <= 0:
            return equal
        cap = sleeve * params.max_single_position_ratio
        allocations = [min(sleeve * max(c.total_score, 0.0) / total_score, cap) for c in candidates]

        # Hand capped-off notional to the symbols still below the cap
        remaining = sleeve - sum(allocations)
        headroom = [max(0.0, cap - a) for a in allocations]
        total_headroom = sum(headroom)
        if remaining > 0 and total_headroom > 0:
            allocations = [a + remaining * h / total_headroom for a, h in zip(allocations, headroom)]
        return allocations

    total_share = sum(max(c.market_share, 0.0) for c in candidates)
    if total_share <= 0:
        return equal
    return [sleeve * max(c.market_share, 0.0) / total_share for c in candidates]


class StrategySimulator:
    """
    Runs the period-by-period state machine for one parameter set.

    Active:   long leg enabled, or short leg enabled with >= 1 selected candidate
    Inactive: fully in cash
    State is recomputed every period from the config and the scorer output.
    """

    def __init__(self, params: StrategyParameters):
        params.validate()
        self.params = params
        self.scorer = ShortCandidateScorer(params)

    # ------------------ Validation ------------------

    def validate_market_points(self, market_points: Sequence[MarketPoint]):
        """Check every point up front so a bad input never yields a partial run"""
        if not market_points:
            raise ValidationError("No market data supplied")
        for index, point in enumerate(market_points, start=1):
            self._validate_point(point, index)

    def _validate_point(self, point: MarketPoint, index: int):
        def fail(message):
            raise ValidationError(message, period_index=index, timestamp=getattr(point, 'timestamp', None))

        if not isinstance(point, MarketPoint):
            fail(f"Expected MarketPoint, got {type(point).__name__}")
        if not _finite(point.reference_price) or point.reference_price < 0:
            fail(f"Invalid reference price {point.reference_price}")
        if not _finite(point.reference_change_24h):
            fail(f"Invalid reference 24h change {point.reference_change_24h}")

        tradable = [q for q in point.rankings if getattr(q, 'symbol', None) != self.params.reference_symbol]
        if self.params.short_alt and not tradable:
            fail("Empty ranking while the short leg is enabled")

        for quotes in (point.rankings, point.removed_quotes):
            symbols = [getattr(q, 'symbol', None) for q in quotes]
            duplicates = sorted({s for s in symbols if s and symbols.count(s) > 1})
            if duplicates:
                fail(f"Duplicate symbol {duplicates[0]} in ranking")

        for quote in tuple(point.rankings) + tuple(point.removed_quotes):
            if not isinstance(quote, CandidateQuote) or not quote.symbol:
                fail(f"Malformed ranking entry: {quote!r}")
            if not isinstance(quote.rank, int) or quote.rank < 1:
                fail(f"Invalid rank {quote.rank} for {quote.symbol}")
            for name in ('price', 'price_change_24h', 'volume_24h', 'quote_volume_24h',
                         'volatility_24h', 'market_share'):
                if not _finite(getattr(quote, name)):
                    fail(f"Non-finite {name} for {quote.symbol}")
            for name in ('price', 'volume_24h', 'quote_volume_24h', 'volatility_24h', 'market_share'):
                if getattr(quote, name) < 0:
                    fail(f"Negative {name} for {quote.symbol}")
            if quote.futures_price is not None and (not _finite(quote.futures_price) or quote.futures_price < 0):
                fail(f"Invalid futures price {quote.futures_price} for {quote.symbol}")
            if quote.funding_rate is not None and not _finite(quote.funding_rate):
                fail(f"Non-finite funding rate for {quote.symbol}")
            for settlement in quote.funding_history:
                if not _finite(settlement.funding_rate):
                    fail(f"Non-finite funding rate in history for {quote.symbol}")
                mark = settlement.mark_price
                if mark is not None and (not _finite(mark) or mark < 0):
                    fail(f"Invalid funding mark price {mark} for {quote.symbol}")

    # ------------------ Simulation ------------------

    def iter_snapshots(self, market_points: Sequence[MarketPoint]) -> Iterator[StrategySnapshot]:
        """Yield one snapshot per period. Stop iterating to cancel the run."""
        self.validate_market_points(market_points)
        previous: Optional[StrategySnapshot] = None
        for index, point in enumerate(market_points, start=1):
            try:
                snapshot = self.step(point, previous)
            except SimulationArithmeticError as e:
                raise SimulationArithmeticError(e.message, period_index=index, timestamp=point.timestamp) from e
            self._check_accounting(snapshot, previous, index)
            yield snapshot
            previous = snapshot

    def run(self, market_points: Sequence[MarketPoint]) -> List[StrategySnapshot]:
        return list(self.iter_snapshots(market_points))

    def step(self, point: MarketPoint, previous: Optional[StrategySnapshot]) -> StrategySnapshot:
        """Produce the snapshot for `point` given the preceding snapshot (None for period 1)"""
        params = self.params
        prev_total = previous.total_value if previous else params.initial_capital

        selection = self.scorer.select(point.rankings, point.reference_change_24h)
        has_shorts = len(selection.selected) > 0
        is_active = params.long_btc or (params.short_alt and has_shorts)

        moved: List[PositionInfo] = []
        reference_position = self._rebalance_reference(point, previous, prev_total, moved)
        short_positions = self._rebalance_shorts(point, previous, prev_total, selection.selected, moved)

        closed = tuple(pos for pos in moved if pos.is_closed)
        period_trading_fee = sum(pos.period_trading_fee for pos in moved)
        period_funding_fee = sum(pos.period_funding_fee for pos in moved)
        period_pnl = sum(pos.period_pnl for pos in moved)

        total_value = prev_total + period_pnl - period_trading_fee + period_funding_fee
        open_value = sum(pos.market_value for pos in moved if not pos.is_closed)
        cash_balance = total_value - open_value

        cumulative_pnl = total_value - params.initial_capital
        prev_trading = previous.cumulative_trading_fee if previous else 0.0
        prev_funding = previous.cumulative_funding_fee if previous else 0.0

        if is_active and has_shorts and params.short_alt:
            reason = selection.reason
        else:
            reason = self._inactive_reason(has_shorts)

        snapshot = StrategySnapshot(
            timestamp=point.timestamp,
            hour=point.hour,
            reference_price=point.reference_price,
            reference_change_24h=point.reference_change_24h,
            reference_position=reference_position,
            short_positions=tuple(short_positions),
            closed_positions=closed,
            cash_balance=cash_balance,
            total_value=total_value,
            period_pnl=period_pnl,
            period_pnl_percent=(total_value - prev_total) / prev_total if prev_total > 0 else 0.0,
            cumulative_pnl=cumulative_pnl,
            cumulative_pnl_percent=cumulative_pnl / params.initial_capital,
            period_trading_fee=period_trading_fee,
            cumulative_trading_fee=prev_trading + period_trading_fee,
            period_funding_fee=period_funding_fee,
            cumulative_funding_fee=prev_funding + period_funding_fee,
            is_active=is_active,
            rebalance_reason=reason,
            candidate_scores=selection.candidates,
        )

        if previous is not None and previous.is_active != is_active:
            logger.debug(f"{point.timestamp}: {'inactive -> active' if is_active else 'active -> inactive'} "
                         f"({reason})")
        return snapshot

    def _rebalance_reference(self, point: MarketPoint, previous: Optional[StrategySnapshot],
                             prev_total: float, moved: List[PositionInfo]) -> Optional[PositionInfo]:
        params = self.params
        prev_ref = previous.reference_position if previous else None
        price = point.reference_price

        if params.long_btc:
            target = quantity_for_notional(prev_total * params.btc_ratio, price, params.reference_symbol)
            adj = adjust_position(prev_ref, target, price, symbol=params.reference_symbol, side=Side.LONG,
                                  fee_rate=params.trading_fee_rate, reason="Reference long leg")
        elif prev_ref is not None:
            adj = close_position(prev_ref, price, fee_rate=params.trading_fee_rate,
                                 reason="Long leg disabled")
        else:
            return None

        if adj.position is None:
            return None
        moved.append(adj.position)
        return None if adj.position.is_closed else adj.position

    def _rebalance_shorts(self, point: MarketPoint, previous: Optional[StrategySnapshot], prev_total: float,
                          selected: Tuple[ShortCandidateScore, ...], moved: List[PositionInfo]) -> List[PositionInfo]:
        params = self.params
        prev_shorts: Dict[str, PositionInfo] = {
            pos.symbol: pos for pos in (previous.short_positions if previous else ())
        }
        targets = selected if params.short_alt else ()
        allocations = allocate_sleeve(targets, prev_total * params.short_sleeve_ratio, params)

        held: List[PositionInfo] = []
        targeted = set()
        for candidate, notional in zip(targets, allocations):
            targeted.add(candidate.symbol)
            prev_pos = prev_shorts.get(candidate.symbol)
            quantity = quantity_for_notional(notional, candidate.price, candidate.symbol)
            adj = adjust_position(prev_pos, quantity, candidate.price, symbol=candidate.symbol, side=Side.SHORT,
                                  fee_rate=params.trading_fee_rate, reason=candidate.reason)
            position = self._with_funding(adj, prev_pos, candidate.funding_rate,
                                        candidate.funding_history, candidate.market_share)
            if position is None:
                continue
            moved.append(position)
            if not position.is_closed:
                held.append(position)

        if not params.short_alt:
            close_reason = "Short leg disabled"
        elif not selected:
            close_reason = "No eligible candidates, position closed"
        else:
            close_reason = "Dropped from selection"

        for symbol, prev_pos in prev_shorts.items():
            if symbol in targeted:
                continue
            price = self._close_price(point, prev_pos)
            adj = close_position(prev_pos, price, fee_rate=params.trading_fee_rate, reason=close_reason)
            moved.append(self._with_funding(adj, prev_pos, None, (), prev_pos.market_share))

        return held

    @staticmethod
    def _with_funding(adj: Adjustment, prev_pos: Optional[PositionInfo], observed_rate: Optional[float],
                      history: Tuple[FundingSettlement, ...],
                      market_share: Optional[float]) -> Optional[PositionInfo]:
        """Settle the funding recorded last period and store what was observed this period"""
        if adj.position is None:
            return None
        settled = 0.0
        if prev_pos is not None and not prev_pos.is_closed:
            settled = settle_funding(prev_pos)
        return adj.position.with_updates(period_funding_fee=settled, funding_rate=observed_rate,
                                         funding_history=tuple(history),
                                         market_share=market_share)

    @staticmethod
    def _close_price(point: MarketPoint, prev_pos: PositionInfo) -> float:
        quote = point.find_quote(prev_pos.symbol)
        if quote is not None and quote.trade_price > 0:
            return quote.trade_price
        logger.warning(f"{point.timestamp}: no quote for {prev_pos.symbol}, closing at last price "
                       f"{prev_pos.current_price}")
        return prev_pos.current_price

    def _inactive_reason(self, has_shorts: bool) -> str:
        params = self.params
        if not params.long_btc and not params.short_alt:
            return REASON_BOTH_DISABLED
        if not params.long_btc:
            return REASON_NO_SHORTS
        if not params.short_alt:
            return REASON_LONG_ONLY
        return REASON_LONG_ONLY_FALLBACK

    def _check_accounting(self, snapshot: StrategySnapshot, previous: Optional[StrategySnapshot], index: int):
        """
        Recompute cash from trade flows and compare with the residual cash
        balance. Both must agree with total_value = cash + open market value.
        """
        prev_cash = previous.cash_balance if previous else self.params.initial_capital
        prev_cost = {(p.symbol, p.side): p.notional_at_cost for p in (previous.open_positions if previous else ())}
        moved = snapshot.open_positions + snapshot.closed_positions

        cost_change = sum(p.notional_at_cost - prev_cost.get((p.symbol, p.side), 0.0) for p in moved)
        realized = sum(p.realized_pnl for p in moved)
        flow_cash = (prev_cash - cost_change + realized
                     - snapshot.period_trading_fee + snapshot.period_funding_fee)

        scale = max(abs(snapshot.total_value), 1.0)
        if abs(flow_cash - snapshot.cash_balance) > ACCOUNTING_TOLERANCE * scale:
            logger.warning(f"Period {index} ({snapshot.timestamp}): cash from flows {flow_cash:.6f} "
                           f"!= cash balance {snapshot.cash_balance:.6f}")


def simulate(params: StrategyParameters, market_points: Sequence[MarketPoint]) -> List[StrategySnapshot]:
    """Run the strategy over market_points and return one snapshot per period"""
    return StrategySimulator(params).run(market_points)


def run_backtest(params: StrategyParameters, market_points: Sequence[MarketPoint],
                 granularity_hours: Optional[float] = None) -> BacktestResult:
    """Simulate, then reduce the snapshots to metrics, a summary and a PnL breakdown"""
    hours = granularity_hours or params.granularity_hours
    logger.info(f"Backtest starting: {len(market_points)} periods, {hours}h granularity, "
                f"long_btc={params.long_btc}, short_alt={params.short_alt}, btc_ratio={params.btc_ratio}")
    try:
        snapshots = simulate(params, market_points)
        performance = performance_analyzer.analyze(snapshots, hours, initial_capital=params.initial_capital)
    except BacktestError as e:
        logger.error(f"Backtest failed: {e}")
        raise

    result = BacktestResult(
        params=params,
        snapshots=tuple(snapshots),
        performance=performance,
        summary=performance_analyzer.summarize(snapshots, hours),
        pnl_breakdown=performance_analyzer.pnl_breakdown(snapshots, params.initial_capital),
    )
    logger.info(f"Backtest completed: {performance.total_return * 100:.2f}% return, "
                f"max drawdown {performance.max_drawdown * 100:.2f}%, sharpe {performance.sharpe_ratio:.2f}")
    return result
