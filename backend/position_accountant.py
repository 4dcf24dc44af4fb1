"""
Position accounting for the backtest.

Pure functions: given the previous state of one position and a target
quantity at the current price, work out the new weighted-average cost basis,
realized and unrealized PnL, and the trading fee. No state is kept here.
"""

import math
from dataclasses import dataclass
from typing import Optional

from config_loader import config

from backend.errors import SimulationArithmeticError
from backend.models import PositionInfo, Side

# Quantity deltas below this are float noise from notional/price division
QUANTITY_EPSILON = config.get('simulation.quantity_epsilon', default=1e-4)


@dataclass(frozen=True)
class Adjustment:
    """Outcome of moving one position to a target quantity"""
    position: Optional[PositionInfo]   # None when nothing was ever opened
    traded_quantity: float             # signed: + bought/added, - sold/reduced
    realized_pnl: float
    trading_fee: float
    period_pnl: float                  # realized + change in unrealized

    @property
    def traded(self) -> bool:
        return self.traded_quantity != 0


def trading_fee(notional_traded: float, fee_rate: float) -> float:
    """Fee on traded notional. Always a cost, whatever the direction."""
    return abs(notional_traded) * fee_rate


def funding_fee(position_notional: float, funding_rate: Optional[float], side: Side) -> float:
    """
    Funding settled over one period, signed from the holder's point of view.

    A positive rate means longs pay shorts: a gain for SHORT, a loss for LONG.
    position_notional is the notional at the start of the period.
    """
    if not funding_rate or not position_notional:
        return 0.0
    amount = abs(position_notional) * funding_rate
    return amount if side == Side.SHORT else -amount


def settle_funding(position: PositionInfo) -> float:
    """
    Funding owed on a position held through the last period.

    Every recorded settlement is charged on quantity at its own mark price,
    falling back to the position price when no mark was published. Without a
    history the single observed rate is charged once on the position notional.
    """
    if position.funding_history:
        total = 0.0
        for settlement in position.funding_history:
            mark = settlement.mark_price
            if mark is None or mark <= 0:
                mark = position.current_price
            total += funding_fee(position.quantity * mark, settlement.funding_rate, position.side)
        return total
    return funding_fee(position.quantity * position.current_price, position.funding_rate, position.side)


def unrealized_pnl(side: Side, quantity: float, entry_price: float, price: float) -> float:
    if side == Side.LONG:
        return quantity * (price - entry_price)
    return quantity * (entry_price - price)


def _check_price(price: float, symbol: str):
    if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
        raise SimulationArithmeticError(f"Invalid price {price} for {symbol}")


def quantity_for_notional(notional: float, price: float, symbol: str = "") -> float:
    """Units purchasable with a notional amount at price"""
    _check_price(price, symbol)
    if notional <= 0:
        return 0.0
    return notional / price


def adjust_position(prev: Optional[PositionInfo], target_quantity: float, price: float, *,
                    symbol: str, side: Side, fee_rate: float, reason: str = "",
                    epsilon: float = QUANTITY_EPSILON) -> Adjustment:
    """
    Move a position to target_quantity at price.

    - Increase: entry price becomes the weighted average of old and new units.
    - Decrease: entry price is unchanged, PnL on the sold units is realized.
    - |delta| < epsilon: no trade, no fee, cost basis untouched.
    - target 0: full close, position is returned with is_closed=True.
    """
    _check_price(price, symbol)
    if target_quantity < 0 or not math.isfinite(target_quantity):
        raise SimulationArithmeticError(f"Invalid target quantity {target_quantity} for {symbol}")

    prev_open = prev is not None and not prev.is_closed
    prev_qty = prev.quantity if prev_open else 0.0
    prev_entry = prev.entry_price if prev_open else 0.0
    prev_unrealized = prev.unrealized_pnl if prev_open else 0.0
    prev_cumulative = prev.cumulative_realized_pnl if prev is not None else 0.0
    funding_rate = prev.funding_rate if prev is not None else None
    funding_history = prev.funding_history if prev is not None else ()
    market_share = prev.market_share if prev is not None else None

    delta = target_quantity - prev_qty
    closing = prev_open and target_quantity == 0

    if abs(delta) < epsilon and not closing:
        if not prev_open:
            return Adjustment(position=None, traded_quantity=0.0, realized_pnl=0.0,
                              trading_fee=0.0, period_pnl=0.0)
        # No trade: only the mark moves
        unrealized = unrealized_pnl(side, prev_qty, prev_entry, price)
        position = PositionInfo(
            symbol=symbol, side=side, quantity=prev_qty, entry_price=prev_entry,
            current_price=price, notional_at_cost=prev_qty * prev_entry,
            unrealized_pnl=unrealized, realized_pnl=0.0,
            cumulative_realized_pnl=prev_cumulative,
            period_pnl=unrealized - prev_unrealized,
            funding_rate=funding_rate, funding_history=funding_history, market_share=market_share,
            is_new_position=False, reason=reason or prev.reason,
        )
        return Adjustment(position=position, traded_quantity=0.0, realized_pnl=0.0,
                          trading_fee=0.0, period_pnl=position.period_pnl)

    fee = trading_fee(abs(delta) * price, fee_rate)

    if delta > 0:
        new_qty = target_quantity
        new_entry = (prev_qty * prev_entry + delta * price) / new_qty
        realized = 0.0
    else:
        sold = -delta
        new_qty = target_quantity
        new_entry = prev_entry
        realized = unrealized_pnl(side, sold, prev_entry, price)

    unrealized = unrealized_pnl(side, new_qty, new_entry, price) if new_qty > 0 else 0.0
    period_pnl = realized + unrealized - prev_unrealized

    position = PositionInfo(
        symbol=symbol,
        side=side,
        quantity=new_qty,
        entry_price=new_entry,
        current_price=price,
        notional_at_cost=new_qty * new_entry,
        unrealized_pnl=unrealized,
        realized_pnl=realized,
        cumulative_realized_pnl=prev_cumulative + realized,
        period_pnl=period_pnl,
        period_trading_fee=fee,
        funding_rate=funding_rate,
        funding_history=funding_history,
        market_share=market_share,
        is_new_position=not prev_open,
        is_closed=closing,
        reason=reason,
    )
    return Adjustment(position=position, traded_quantity=delta, realized_pnl=realized,
                      trading_fee=fee, period_pnl=period_pnl)


def close_position(prev: PositionInfo, price: float, *, fee_rate: float, reason: str = "") -> Adjustment:
    """Fully close prev at price, realizing whatever PnL remains"""
    return adjust_position(prev, 0.0, price, symbol=prev.symbol, side=prev.side,
                           fee_rate=fee_rate, reason=reason)
