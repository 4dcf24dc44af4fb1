"""
Historical Data Loader for Backtesting

Turns an already-fetched "volume backtest" payload into MarketPoints.
The payload is one entry per period with the reference price, its 24h change
and the volume ranking of the alt universe at that timestamp.

Expected shape:
    {
        "success": true,
        "granularityHours": 8,
        "data": [
            {"timestamp": ..., "hour": ..., "btcPrice": ..., "btcPriceChange24h": ...,
             "rankings": [{"rank", "symbol", "priceChange24h", "priceAtTime",
                           "futurePriceAtTime", "volume24h", "quoteVolume24h",
                           "volatility24h", "marketShare",
                           "fundingRateHistory": [{"fundingRate", "markPrice"}, ...]}, ...],
             "removedSymbols": [...]}
        ]
    }
"""

import json
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from config_loader import config
from backend.errors import ValidationError
from backend.models import CandidateQuote, FundingSettlement, MarketPoint

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_SYMBOL = config.get('strategy.reference_symbol', default='BTCUSDT')
DEFAULT_GRANULARITY_HOURS = config.get('strategy.granularity_hours', default=8)


def _number(item: Dict[str, Any], key: str, default: Optional[float] = 0.0, index: int = None,
            timestamp: str = None) -> Optional[float]:
    value = item.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field {key} is not numeric: {value!r}", period_index=index,
                              timestamp=timestamp or item.get('timestamp'))


def _required(item: Dict[str, Any], key: str, index: int = None, timestamp: str = None) -> float:
    """Prices and 24h changes have no meaningful default"""
    if item.get(key) is None:
        label = f" for {item['symbol']}" if item.get('symbol') else ""
        raise ValidationError(f"Missing required field {key}{label}", period_index=index,
                              timestamp=timestamp or item.get('timestamp'))
    return _number(item, key, index=index, timestamp=timestamp)


def _funding_history(item: Dict[str, Any], index: int = None,
                     timestamp: str = None) -> Tuple[FundingSettlement, ...]:
    """Every funding settlement published for the period, oldest first"""
    settlements = []
    for entry in item.get('fundingRateHistory') or []:
        if entry.get('fundingRate') is None:
            continue
        mark = _number(entry, 'markPrice', default=None, index=index, timestamp=timestamp)
        settlements.append(FundingSettlement(
            funding_rate=_number(entry, 'fundingRate', index=index, timestamp=timestamp),
            mark_price=mark if mark and mark > 0 else None,
        ))
    return tuple(settlements)


def _latest_funding_rate(item: Dict[str, Any], history: Tuple[FundingSettlement, ...]) -> Optional[float]:
    if history:
        rate = history[-1].funding_rate
    else:
        rate = item.get('fundingRate')
    if rate is None:
        return None
    rate = float(rate)
    return rate if math.isfinite(rate) else None


def parse_quote(item: Dict[str, Any], index: int = None, timestamp: str = None) -> CandidateQuote:
    """Map one upstream ranking item to a CandidateQuote"""
    symbol = item.get('symbol')
    if not symbol:
        raise ValidationError(f"Ranking item without symbol: {item!r}", period_index=index, timestamp=timestamp)
    rank = item.get('rank')
    if rank is None or isinstance(rank, bool):
        raise ValidationError(f"Ranking item {symbol} without rank", period_index=index, timestamp=timestamp)

    futures_price = _number(item, 'futurePriceAtTime', default=None, index=index, timestamp=timestamp)
    history = _funding_history(item, index, timestamp)
    return CandidateQuote(
        symbol=symbol,
        rank=int(rank),
        price=_required(item, 'priceAtTime', index, timestamp),
        price_change_24h=_required(item, 'priceChange24h', index, timestamp),
        volume_24h=_number(item, 'volume24h', index=index, timestamp=timestamp),
        quote_volume_24h=_number(item, 'quoteVolume24h', index=index, timestamp=timestamp),
        volatility_24h=_number(item, 'volatility24h', index=index, timestamp=timestamp),
        market_share=_number(item, 'marketShare', index=index, timestamp=timestamp),
        funding_rate=_latest_funding_rate(item, history),
        funding_history=history,
        futures_price=futures_price if futures_price and futures_price > 0 else None,
    )


def parse_data_point(entry: Dict[str, Any], reference_symbol: str = DEFAULT_REFERENCE_SYMBOL,
                     index: int = None) -> MarketPoint:
    """Map one upstream period entry to a MarketPoint, dropping the reference symbol from rankings"""
    timestamp = entry.get('timestamp')
    if not timestamp:
        raise ValidationError("Data point without timestamp", period_index=index)

    rankings = tuple(
        parse_quote(item, index, str(timestamp))
        for item in entry.get('rankings') or []
        if item.get('symbol') != reference_symbol
    )
    removed = tuple(
        parse_quote(item, index, str(timestamp))
        for item in entry.get('removedSymbols') or []
        if item.get('symbol') != reference_symbol
    )

    return MarketPoint(
        timestamp=str(timestamp),
        reference_price=_required(entry, 'btcPrice', index),
        reference_change_24h=_required(entry, 'btcPriceChange24h', index),
        rankings=rankings,
        hour=int(entry.get('hour') or 0),
        removed_quotes=removed,
    )


def parse_market_points(payload: Dict[str, Any],
                        reference_symbol: str = DEFAULT_REFERENCE_SYMBOL) -> Tuple[float, List[MarketPoint]]:
    """
    Parse an upstream payload into (granularity_hours, market points).

    Raises ValidationError when the upstream reported failure or carried no data.
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"Payload must be an object, got {type(payload).__name__}")
    if payload.get('success') is False:
        raise ValidationError(f"Upstream reported failure: {payload.get('error', 'unknown error')}")

    data = payload.get('data')
    if not data:
        raise ValidationError("Payload contains no data points")

    granularity = _number(payload, 'granularityHours', default=DEFAULT_GRANULARITY_HOURS)
    points = [parse_data_point(entry, reference_symbol, index) for index, entry in enumerate(data, start=1)]

    logger.info(f"Parsed {len(points)} market points ({granularity}h granularity), "
                f"{points[0].timestamp} -> {points[-1].timestamp}")
    return granularity, points


def load_market_points(path: str,
                       reference_symbol: str = DEFAULT_REFERENCE_SYMBOL) -> Tuple[float, List[MarketPoint]]:
    """Read a saved upstream payload from a JSON file"""
    with open(path, 'r') as f:
        payload = json.load(f)
    logger.debug(f"Loaded payload from {path}")
    return parse_market_points(payload, reference_symbol)
