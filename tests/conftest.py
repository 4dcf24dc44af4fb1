"""
Pytest configuration and fixtures
"""

import os
import pytest
import sys
from pathlib import Path

# Add parent directory to path so we can import modules
parent_dir = Path(__file__).parent.parent
sys.path.insert(0, str(parent_dir))

# Must be set before config_loader is first imported
os.environ.setdefault("BTCDOM_ENV", "test")


@pytest.fixture
def make_quote():
    """Factory for CandidateQuote with sensible defaults"""
    from backend.models import CandidateQuote

    def _make(symbol, rank=1, price=10.0, change=-5.0, volume=1_000_000.0, volatility=5.0,
              market_share=0.1, funding_rate=None, futures_price=None, funding_history=()):
        return CandidateQuote(
            symbol=symbol,
            rank=rank,
            price=price,
            price_change_24h=change,
            volume_24h=volume,
            quote_volume_24h=volume * price,
            volatility_24h=volatility,
            market_share=market_share,
            funding_rate=funding_rate,
            futures_price=futures_price,
            funding_history=tuple(funding_history),
        )

    return _make


@pytest.fixture
def make_point():
    """Factory for MarketPoint"""
    from backend.models import MarketPoint

    def _make(timestamp, reference_price=50_000.0, reference_change=0.0, rankings=(), removed=(), hour=0):
        return MarketPoint(
            timestamp=timestamp,
            reference_price=reference_price,
            reference_change_24h=reference_change,
            rankings=tuple(rankings),
            hour=hour,
            removed_quotes=tuple(removed),
        )

    return _make


@pytest.fixture
def base_params():
    """Both legs on, 50/50 split, low fees"""
    from backend.models import StrategyParameters

    return StrategyParameters(
        initial_capital=10_000.0,
        btc_ratio=0.5,
        long_btc=True,
        short_alt=True,
        trading_fee_rate=0.0002,
        max_short_positions=3,
        price_change_weight=0.4,
        volume_weight=0.2,
        volatility_weight=0.1,
        funding_rate_weight=0.3,
        granularity_hours=8,
    )


@pytest.fixture
def market_series(make_quote, make_point):
    """Five periods with a reference asset and four alts moving around"""
    def ranking(prices, changes, funding):
        symbols = ["ETHUSDT", "SOLUSDT", "XRPUSDT", "DOGEUSDT"]
        shares = [0.4, 0.3, 0.2, 0.1]
        return [
            make_quote(symbol, rank=i + 1, price=prices[i], change=changes[i],
                       volatility=3.0 + i, market_share=shares[i], funding_rate=funding[i])
            for i, symbol in enumerate(symbols)
        ]

    return [
        make_point("2024-01-01T00:00:00Z", 42_000.0, 1.0,
                   ranking([2200, 95, 0.6, 0.08], [-2.0, 3.0, -4.0, 0.5], [0.0001, 0.0002, 0.0003, -0.0001])),
        make_point("2024-01-01T08:00:00Z", 42_500.0, 1.5,
                   ranking([2150, 97, 0.58, 0.082], [-3.0, 2.5, -5.0, 1.0], [0.0001, 0.0001, 0.0004, 0.0])),
        make_point("2024-01-01T16:00:00Z", 41_800.0, -0.5,
                   ranking([2100, 92, 0.55, 0.079], [-4.0, -1.0, -6.0, -0.2], [0.0002, 0.0001, 0.0002, 0.0001])),
        make_point("2024-01-02T00:00:00Z", 43_000.0, 2.0,
                   ranking([2180, 99, 0.57, 0.085], [1.0, 4.0, -1.0, 3.0], [0.0001, 0.0003, 0.0001, 0.0002])),
        make_point("2024-01-02T08:00:00Z", 43_200.0, 0.8,
                   ranking([2210, 101, 0.59, 0.086], [0.5, 2.0, -0.5, 1.5], [0.0001, 0.0002, 0.0001, 0.0001])),
    ]
