"""
Tests for position accounting: cost basis, realized PnL, fees
"""

import pytest
import sys
from pathlib import Path

parent_dir = Path(__file__).parent.parent
sys.path.insert(0, str(parent_dir))

from backend.errors import SimulationArithmeticError
from backend.models import FundingSettlement, PositionInfo, Side
from backend.position_accountant import (
    adjust_position, close_position, funding_fee, quantity_for_notional, settle_funding, trading_fee,
    unrealized_pnl,
)

FEE = 0.001


def open_position(quantity, price, side=Side.LONG, symbol="ETHUSDT"):
    return adjust_position(None, quantity, price, symbol=symbol, side=side, fee_rate=FEE).position


class TestFees:

    def test_trading_fee_is_always_a_cost(self):
        assert trading_fee(1000.0, 0.001) == pytest.approx(1.0)
        assert trading_fee(-1000.0, 0.001) == pytest.approx(1.0)

    def test_funding_sign_by_side(self):
        """Positive rate: shorts receive, longs pay"""
        assert funding_fee(1000.0, 0.0001, Side.SHORT) == pytest.approx(0.1)
        assert funding_fee(1000.0, 0.0001, Side.LONG) == pytest.approx(-0.1)
        assert funding_fee(1000.0, -0.0001, Side.SHORT) == pytest.approx(-0.1)

    def test_funding_without_rate(self):
        assert funding_fee(1000.0, None, Side.SHORT) == 0.0

    def test_settle_funding_sums_history(self):
        position = open_position(100.0, 10.0, side=Side.SHORT).with_updates(funding_history=(
            FundingSettlement(0.001, 11.0), FundingSettlement(0.002, None)))

        assert settle_funding(position) == pytest.approx(100 * 11.0 * 0.001 + 100 * 10.0 * 0.002)

    def test_settle_funding_single_rate(self):
        position = open_position(100.0, 10.0).with_updates(funding_rate=0.001)

        assert settle_funding(position) == pytest.approx(-1.0)


class TestOpenAndAdjust:

    def test_open_long(self):
        adj = adjust_position(None, 2.0, 100.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE)
        pos = adj.position

        assert pos.is_new_position
        assert pos.quantity == 2.0
        assert pos.entry_price == 100.0
        assert pos.notional_at_cost == pytest.approx(200.0)
        assert adj.trading_fee == pytest.approx(0.2)
        assert adj.period_pnl == 0.0

    def test_increase_uses_weighted_average(self):
        prev = open_position(1.0, 100.0)
        pos = adjust_position(prev, 3.0, 130.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE).position

        assert pos.entry_price == pytest.approx((1 * 100 + 2 * 130) / 3)
        assert pos.realized_pnl == 0.0
        assert not pos.is_new_position

    def test_decrease_keeps_entry_and_realizes(self):
        prev = open_position(4.0, 100.0)
        adj = adjust_position(prev, 1.0, 110.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE)

        assert adj.position.entry_price == 100.0
        assert adj.realized_pnl == pytest.approx(30.0)
        assert adj.position.unrealized_pnl == pytest.approx(10.0)
        assert adj.trading_fee == pytest.approx(3 * 110.0 * FEE)

    def test_period_pnl_is_mark_to_market(self):
        """Realized plus change in unrealized equals q0 * (p - p0)"""
        prev = open_position(4.0, 100.0)
        adj = adjust_position(prev, 2.5, 120.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE)

        assert adj.period_pnl == pytest.approx(4.0 * 20.0)

    def test_short_decrease_realizes_inverse(self):
        prev = open_position(3.0, 100.0, side=Side.SHORT)
        adj = adjust_position(prev, 1.0, 90.0, symbol="ETHUSDT", side=Side.SHORT, fee_rate=FEE)

        assert adj.realized_pnl == pytest.approx(20.0)
        assert adj.position.unrealized_pnl == pytest.approx(10.0)

    def test_small_delta_is_not_a_trade(self):
        prev = open_position(2.0, 100.0)
        adj = adjust_position(prev, 2.00005, 105.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE)

        assert not adj.traded
        assert adj.trading_fee == 0.0
        assert adj.position.quantity == 2.0
        assert adj.position.entry_price == 100.0
        assert adj.position.unrealized_pnl == pytest.approx(10.0)
        assert adj.period_pnl == pytest.approx(10.0)

    def test_nothing_to_open(self):
        adj = adjust_position(None, 0.0, 100.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE)

        assert adj.position is None
        assert adj.trading_fee == 0.0

    def test_cumulative_realized_accumulates(self):
        pos = open_position(4.0, 100.0)
        pos = adjust_position(pos, 3.0, 110.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE).position
        pos = adjust_position(pos, 2.0, 120.0, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE).position

        assert pos.cumulative_realized_pnl == pytest.approx(10.0 + 20.0)


class TestClose:

    def test_short_round_trip(self):
        """SHORT 1 @ 100 closed @ 90: realized 10, fees on both legs"""
        opened = adjust_position(None, 1.0, 100.0, symbol="ALTUSDT", side=Side.SHORT, fee_rate=FEE)
        closed = close_position(opened.position, 90.0, fee_rate=FEE, reason="Dropped")

        assert closed.position.is_closed
        assert closed.position.quantity == 0.0
        assert closed.realized_pnl == pytest.approx(10.0)
        assert closed.position.cumulative_realized_pnl == pytest.approx(10.0)
        assert opened.trading_fee == pytest.approx(100.0 * FEE)
        assert closed.trading_fee == pytest.approx(90.0 * FEE)
        assert closed.position.market_value == 0.0

    def test_tiny_position_still_closes(self):
        prev = PositionInfo(symbol="ETHUSDT", side=Side.LONG, quantity=0.00005, entry_price=100.0,
                            current_price=100.0, notional_at_cost=0.005)
        adj = close_position(prev, 100.0, fee_rate=FEE)

        assert adj.position.is_closed


class TestArithmeticGuards:

    @pytest.mark.parametrize("price", [0.0, -1.0, float('nan'), float('inf')])
    def test_bad_price(self, price):
        with pytest.raises(SimulationArithmeticError):
            adjust_position(None, 1.0, price, symbol="ETHUSDT", side=Side.LONG, fee_rate=FEE)

    def test_quantity_for_zero_price(self):
        with pytest.raises(SimulationArithmeticError):
            quantity_for_notional(100.0, 0.0, "ETHUSDT")

    def test_quantity_for_notional(self):
        assert quantity_for_notional(500.0, 250.0) == 2.0
        assert quantity_for_notional(0.0, 250.0) == 0.0

    def test_unrealized_by_side(self):
        assert unrealized_pnl(Side.LONG, 2.0, 100.0, 110.0) == pytest.approx(20.0)
        assert unrealized_pnl(Side.SHORT, 2.0, 100.0, 110.0) == pytest.approx(-20.0)
