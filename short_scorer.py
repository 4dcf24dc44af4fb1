"""
Short Candidate Scorer
Ranks a period's alt-coin volume ranking into short candidates.

Each candidate gets four factor scores in [0, 1]:
  - volume:       higher volume rank scores higher
  - price change: weaker 24h performance scores higher
  - volatility:   calmer 24h range scores higher
  - funding rate: higher funding (paid by longs to shorts) scores higher

A candidate is only eligible if it underperformed the reference asset over
the last 24h; the best eligible candidates by weighted total score form the
short basket for the period.
"""

import logging
from dataclasses import replace
from typing import List, Sequence

from backend.models import CandidateQuote, ShortCandidateScore, ShortSelectionResult, StrategyParameters

logger = logging.getLogger(__name__)

NO_DISPERSION_SCORE = 0.5


def _normalize(value: float, low: float, high: float, invert: bool = False) -> float:
    """Min-max normalize into [0, 1]; 0.5 when the distribution has no spread"""
    if high <= low:
        return NO_DISPERSION_SCORE
    score = (high - value) / (high - low) if invert else (value - low) / (high - low)
    return min(1.0, max(0.0, score))


class ShortCandidateScorer:
    """Scores and selects short candidates for one period"""

    def __init__(self, params: StrategyParameters):
        self.params = params

    def score_candidates(self, rankings: Sequence[CandidateQuote],
                         reference_change: float) -> List[ShortCandidateScore]:
        """Score every candidate and flag eligibility. Order follows the ranking."""
        candidates = [q for q in rankings if q.symbol != self.params.reference_symbol]
        if not candidates:
            return []

        total = len(candidates)
        changes = [q.price_change_24h for q in candidates]
        vols = [q.volatility_24h for q in candidates]
        rates = [q.funding_rate for q in candidates if q.funding_rate is not None]

        min_change, max_change = min(changes), max(changes)
        min_vol, max_vol = min(vols), max(vols)
        min_rate, max_rate = (min(rates), max(rates)) if rates else (0.0, 0.0)

        scores = []
        for quote in candidates:
            volume_score = min(1.0, max(0.0, (total - quote.rank + 1) / total))
            price_change_score = _normalize(quote.price_change_24h, min_change, max_change, invert=True)
            volatility_score = _normalize(quote.volatility_24h, min_vol, max_vol, invert=True)
            if quote.funding_rate is None:
                funding_rate_score = NO_DISPERSION_SCORE
            else:
                funding_rate_score = _normalize(quote.funding_rate, min_rate, max_rate)

            total_score = (
                price_change_score * self.params.price_change_weight +
                volume_score * self.params.volume_weight +
                volatility_score * self.params.volatility_weight +
                funding_rate_score * self.params.funding_rate_weight
            )

            eligible = quote.price_change_24h < reference_change
            if eligible:
                reason = f"Score {total_score:.3f}"
            else:
                reason = (f"24h change {quote.price_change_24h:.2f}% not below "
                          f"reference {reference_change:.2f}%")

            scores.append(ShortCandidateScore(
                symbol=quote.symbol,
                rank=quote.rank,
                price=quote.trade_price,
                price_change_24h=quote.price_change_24h,
                market_share=quote.market_share,
                volume_score=volume_score,
                price_change_score=price_change_score,
                volatility_score=volatility_score,
                funding_rate_score=funding_rate_score,
                total_score=total_score,
                eligible=eligible,
                reason=reason,
                funding_rate=quote.funding_rate,
                funding_history=quote.funding_history,
            ))

        return scores

    def select(self, rankings: Sequence[CandidateQuote], reference_change: float) -> ShortSelectionResult:
        """Pick the top eligible candidates, capped at max_short_positions"""
        scores = self.score_candidates(rankings, reference_change)
        if not scores:
            return ShortSelectionResult(selected=(), rejected=(), reason="No candidates available")

        eligible = [s for s in scores if s.eligible]
        ineligible = [s for s in scores if not s.eligible]

        # Stable sort: ties keep ranking order
        eligible.sort(key=lambda s: s.total_score, reverse=True)
        cap = self.params.max_short_positions

        selected = tuple(
            _mark(s, selected=True, reason=f"Selected #{i + 1}: score {s.total_score:.3f}")
            for i, s in enumerate(eligible[:cap])
        )
        overflow = [
            _mark(s, selected=False,
                  reason=f"Score {s.total_score:.3f} below cutoff (#{cap + i + 1} of {len(eligible)} eligible)")
            for i, s in enumerate(eligible[cap:])
        ]

        if selected:
            reason = f"Selected {len(selected)} short candidates from {len(eligible)} eligible"
        else:
            reason = "No eligible short candidates"

        logger.debug(f"Short selection: {len(scores)} candidates, {len(eligible)} eligible, "
                     f"{len(selected)} selected")

        return ShortSelectionResult(
            selected=selected,
            rejected=tuple(overflow + ineligible),
            reason=reason,
        )


def _mark(score: ShortCandidateScore, selected: bool, reason: str) -> ShortCandidateScore:
    return replace(score, selected=selected, reason=reason)


def select_short_candidates(rankings: Sequence[CandidateQuote], reference_change: float,
                            params: StrategyParameters) -> ShortSelectionResult:
    """Convenience wrapper around ShortCandidateScorer.select"""
    return ShortCandidateScorer(params).select(rankings, reference_change)
