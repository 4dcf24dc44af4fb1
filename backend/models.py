"""
Value types for the BTCDOM strategy backtest.

Everything here is immutable: a snapshot is produced once per period and then
only read, by the next simulation step, the performance analyzer and any
reporting layer.
"""

import math
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from config_loader import config
from backend.errors import ValidationError


class Side(Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class AllocationStrategy(Enum):
    BY_VOLUME = "by_volume"                    # market share of the selected set
    BY_COMPOSITE_SCORE = "by_composite_score"  # total score, overflow above the cap redistributed
    EQUAL = "equal"


def _is_finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass(frozen=True)
class StrategyParameters:
    """Run configuration. Owned by the caller, read-only to the simulator."""
    initial_capital: float = 10000.0
    btc_ratio: float = 0.5
    long_btc: bool = True
    short_alt: bool = True
    trading_fee_rate: float = 0.0002
    max_short_positions: int = 10

    # Factor weights only scale relative ranking; they need not sum to 1
    price_change_weight: float = 0.4
    volume_weight: float = 0.2
    volatility_weight: float = 0.1
    funding_rate_weight: float = 0.3

    granularity_hours: float = 8.0
    reference_symbol: str = "BTCUSDT"
    allocation_strategy: AllocationStrategy = AllocationStrategy.BY_VOLUME
    max_single_position_ratio: float = 0.25

    @classmethod
    def from_config(cls, **overrides) -> "StrategyParameters":
        """Build parameters from the `strategy` config section, then apply overrides."""
        section = config.strategy
        weights = section.get('weights', {})
        values = {
            'initial_capital': section.get('initial_capital', cls.initial_capital),
            'btc_ratio': section.get('btc_ratio', cls.btc_ratio),
            'long_btc': section.get('long_btc', cls.long_btc),
            'short_alt': section.get('short_alt', cls.short_alt),
            'trading_fee_rate': section.get('trading_fee_rate', cls.trading_fee_rate),
            'max_short_positions': section.get('max_short_positions', cls.max_short_positions),
            'price_change_weight': weights.get('price_change', cls.price_change_weight),
            'volume_weight': weights.get('volume', cls.volume_weight),
            'volatility_weight': weights.get('volatility', cls.volatility_weight),
            'funding_rate_weight': weights.get('funding_rate', cls.funding_rate_weight),
            'granularity_hours': section.get('granularity_hours', cls.granularity_hours),
            'reference_symbol': section.get('reference_symbol', cls.reference_symbol),
            'allocation_strategy': section.get('allocation_strategy', cls.allocation_strategy),
            'max_single_position_ratio': section.get('max_single_position_ratio',
                                                     cls.max_single_position_ratio),
        }
        values.update(overrides)
        strategy = values['allocation_strategy']
        if not isinstance(strategy, AllocationStrategy):
            try:
                values['allocation_strategy'] = AllocationStrategy(strategy)
            except ValueError:
                raise ValidationError(f"Unknown allocation strategy: {strategy!r}")
        return cls(**values)

    @property
    def weights(self) -> Dict[str, float]:
        return {
            'price_change': self.price_change_weight,
            'volume': self.volume_weight,
            'volatility': self.volatility_weight,
            'funding_rate': self.funding_rate_weight,
        }

    @property
    def short_sleeve_ratio(self) -> float:
        """Fraction of capital given to the short leg when it is active"""
        return 1 - self.btc_ratio if self.long_btc else 1.0

    def validate(self) -> None:
        """Raise ValidationError on the first out-of-range field."""
        if not _is_finite(self.initial_capital) or self.initial_capital <= 0:
            raise ValidationError(f"initial_capital must be > 0, got {self.initial_capital}")
        if not _is_finite(self.btc_ratio) or not 0 <= self.btc_ratio <= 1:
            raise ValidationError(f"btc_ratio must be in [0, 1], got {self.btc_ratio}")
        if not isinstance(self.long_btc, bool) or not isinstance(self.short_alt, bool):
            raise ValidationError("long_btc and short_alt must be booleans")
        if not _is_finite(self.trading_fee_rate) or self.trading_fee_rate < 0:
            raise ValidationError(f"trading_fee_rate must be >= 0, got {self.trading_fee_rate}")
        if (not isinstance(self.max_short_positions, int) or isinstance(self.max_short_positions, bool)
                or self.max_short_positions < 1):
            raise ValidationError(
                f"max_short_positions must be an integer >= 1, got {self.max_short_positions}")
        for name, weight in self.weights.items():
            if not _is_finite(weight) or weight < 0:
                raise ValidationError(f"{name} weight must be a non-negative number, got {weight}")
        if not _is_finite(self.granularity_hours) or self.granularity_hours <= 0:
            raise ValidationError(f"granularity_hours must be > 0, got {self.granularity_hours}")
        if not isinstance(self.allocation_strategy, AllocationStrategy):
            raise ValidationError(f"Unknown allocation strategy: {self.allocation_strategy!r}")
        if (not _is_finite(self.max_single_position_ratio)
                or not 0 < self.max_single_position_ratio <= 1):
            raise ValidationError(
                f"max_single_position_ratio must be in (0, 1], got {self.max_single_position_ratio}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['allocation_strategy'] = self.allocation_strategy.value
        return data


@dataclass(frozen=True)
class FundingSettlement:
    """One funding event inside a period. mark_price None means use the position price."""
    funding_rate: float
    mark_price: Optional[float] = None


@dataclass(frozen=True)
class CandidateQuote:
    """One row of a period's volume ranking"""
    symbol: str
    rank: int                    # 1 = highest volume
    price: float                 # spot price at the period timestamp
    price_change_24h: float      # percent
    volume_24h: float = 0.0
    quote_volume_24h: float = 0.0
    volatility_24h: float = 0.0
    market_share: float = 0.0
    funding_rate: Optional[float] = None
    futures_price: Optional[float] = None
    funding_history: Tuple[FundingSettlement, ...] = ()

    @property
    def trade_price(self) -> float:
        """Futures price when available, spot otherwise"""
        if self.futures_price is not None and self.futures_price > 0:
            return self.futures_price
        return self.price


@dataclass(frozen=True)
class MarketPoint:
    """Market state for one period"""
    timestamp: str
    reference_price: float
    reference_change_24h: float
    rankings: Tuple[CandidateQuote, ...] = ()
    hour: int = 0
    # Symbols that dropped out of the ranking this period; only used to price closes
    removed_quotes: Tuple[CandidateQuote, ...] = ()

    def find_quote(self, symbol: str) -> Optional[CandidateQuote]:
        for quote in self.rankings:
            if quote.symbol == symbol:
                return quote
        for quote in self.removed_quotes:
            if quote.symbol == symbol:
                return quote
        return None


@dataclass(frozen=True)
class ShortCandidateScore:
    """Per-period score for one candidate. Never carried forward."""
    symbol: str
    rank: int
    price: float
    price_change_24h: float
    market_share: float
    volume_score: float
    price_change_score: float
    volatility_score: float
    funding_rate_score: float
    total_score: float
    eligible: bool
    reason: str
    selected: bool = False
    funding_rate: Optional[float] = None
    funding_history: Tuple[FundingSettlement, ...] = ()


@dataclass(frozen=True)
class ShortSelectionResult:
    selected: Tuple[ShortCandidateScore, ...]
    rejected: Tuple[ShortCandidateScore, ...]
    reason: str

    @property
    def candidates(self) -> Tuple[ShortCandidateScore, ...]:
        """Single tagged list: selected first, then rejected"""
        return self.selected + self.rejected


@dataclass(frozen=True)
class PositionInfo:
    symbol: str
    side: Side
    quantity: float
    entry_price: float           # weighted-average cost
    current_price: float
    notional_at_cost: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0    # realized this period
    cumulative_realized_pnl: float = 0.0
    period_pnl: float = 0.0      # price PnL this period, fees and funding excluded
    period_trading_fee: float = 0.0
    period_funding_fee: float = 0.0
    funding_rate: Optional[float] = None  # observed this period, settled next period
    funding_history: Tuple[FundingSettlement, ...] = ()
    market_share: Optional[float] = None
    is_new_position: bool = False
    is_closed: bool = False
    reason: str = ""

    @property
    def market_value(self) -> float:
        """Capital tied up in the position: cost plus unrealized PnL"""
        if self.is_closed:
            return 0.0
        return self.notional_at_cost + self.unrealized_pnl

    def with_updates(self, **changes) -> "PositionInfo":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['side'] = self.side.value
        data['market_value'] = self.market_value
        return data


@dataclass(frozen=True)
class StrategySnapshot:
    """Portfolio state at the end of one period"""
    timestamp: str
    hour: int
    reference_price: float
    reference_change_24h: float
    reference_position: Optional[PositionInfo]
    short_positions: Tuple[PositionInfo, ...]
    closed_positions: Tuple[PositionInfo, ...]
    cash_balance: float
    total_value: float
    period_pnl: float
    period_pnl_percent: float
    cumulative_pnl: float
    cumulative_pnl_percent: float
    period_trading_fee: float
    cumulative_trading_fee: float
    period_funding_fee: float
    cumulative_funding_fee: float
    is_active: bool
    rebalance_reason: str
    candidate_scores: Tuple[ShortCandidateScore, ...] = ()

    @property
    def open_positions(self) -> Tuple[PositionInfo, ...]:
        if self.reference_position is not None:
            return (self.reference_position,) + self.short_positions
        return self.short_positions

    @property
    def positions_value(self) -> float:
        return sum(pos.market_value for pos in self.open_positions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "hour": self.hour,
            "reference_price": self.reference_price,
            "reference_change_24h": self.reference_change_24h,
            "reference_position": self.reference_position.to_dict() if self.reference_position else None,
            "short_positions": [pos.to_dict() for pos in self.short_positions],
            "closed_positions": [pos.to_dict() for pos in self.closed_positions],
            "cash_balance": self.cash_balance,
            "total_value": self.total_value,
            "period_pnl": self.period_pnl,
            "period_pnl_percent": self.period_pnl_percent,
            "cumulative_pnl": self.cumulative_pnl,
            "cumulative_pnl_percent": self.cumulative_pnl_percent,
            "period_trading_fee": self.period_trading_fee,
            "cumulative_trading_fee": self.cumulative_trading_fee,
            "period_funding_fee": self.period_funding_fee,
            "cumulative_funding_fee": self.cumulative_funding_fee,
            "is_active": self.is_active,
            "rebalance_reason": self.rebalance_reason,
            "candidate_scores": [asdict(score) for score in self.candidate_scores],
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    total_return: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0            # positive fraction of the peak
    max_drawdown_start_period: int = 0   # 1-indexed peak period, 0 = initial capital
    max_drawdown_end_period: int = 0     # 1-indexed trough period
    win_rate: float = 0.0
    avg_return: float = 0.0
    best_period: float = 0.0
    worst_period: float = 0.0
    calmar_ratio: float = 0.0
    best_period_index: int = 0
    worst_period_index: int = 0
    best_funding_period: float = 0.0
    worst_funding_period: float = 0.0
    reference_return: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PnlBreakdown:
    """Where the total PnL came from. Fees are positive costs."""
    total_pnl: float
    reference_pnl: float
    short_pnl: float
    trading_fees: float
    funding_fees: float
    total_pnl_rate: float
    reference_pnl_rate: float
    short_pnl_rate: float
    trading_fee_rate: float
    funding_fee_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BacktestSummary:
    total_periods: int
    active_periods: int
    inactive_periods: int
    avg_short_positions: float
    granularity_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BacktestResult:
    params: StrategyParameters
    snapshots: Tuple[StrategySnapshot, ...]
    performance: PerformanceMetrics
    summary: BacktestSummary
    pnl_breakdown: PnlBreakdown

    def to_dict(self, include_snapshots: bool = True) -> Dict[str, Any]:
        data = {
            "params": self.params.to_dict(),
            "performance": self.performance.to_dict(),
            "summary": self.summary.to_dict(),
            "pnl_breakdown": self.pnl_breakdown.to_dict(),
        }
        if include_snapshots:
            data["snapshots"] = [snap.to_dict() for snap in self.snapshots]
        return data
