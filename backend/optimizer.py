"""
Parameter Optimizer

Grid search over factor weights, basket size and allocation strategy.
Every combination is an independent simulate + analyze run, so they are
spread across a thread pool and share only the read-only market data.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from config_loader import config
from backend.backtester import simulate
from backend.errors import BacktestError, ValidationError
from backend.models import AllocationStrategy, MarketPoint, PerformanceMetrics, StrategyParameters
from backend.performance_analyzer import analyze

logger = logging.getLogger(__name__)

OPTIMIZER_WORKERS = config.get('optimizer.workers', default=4)

OBJECTIVES: Dict[str, Callable[[PerformanceMetrics], float]] = {
    'total_return': lambda m: m.total_return,
    'sharpe': lambda m: m.sharpe_ratio,
    'calmar': lambda m: m.calmar_ratio,
    'max_drawdown': lambda m: -m.max_drawdown,  # smaller drawdown is better
    'composite': lambda m: 0.4 * m.sharpe_ratio + 0.3 * m.total_return - 0.3 * m.max_drawdown,
}


@dataclass(frozen=True)
class CrossValidationConfig:
    """
    Time-split validation of each combination.

    The full range is the training run. The same range is cut into contiguous
    validation windows, each simulated from the initial capital, and the
    ranking score blends the training objective with the mean window objective.
    """
    windows: int = 2
    training_weight: float = 0.6
    validation_weight: float = 0.4
    min_window_periods: int = 2

    @classmethod
    def from_config(cls, **overrides) -> "CrossValidationConfig":
        section = config.optimizer.get('cross_validation', {}) or {}
        values = {
            'windows': section.get('windows', cls.windows),
            'training_weight': section.get('training_weight', cls.training_weight),
            'validation_weight': section.get('validation_weight', cls.validation_weight),
            'min_window_periods': section.get('min_window_periods', cls.min_window_periods),
        }
        values.update(overrides)
        return cls(**values)

    def validate(self) -> None:
        if self.windows < 1 or self.min_window_periods < 1:
            raise ValidationError(f"cross validation needs windows >= 1 and min_window_periods >= 1, "
                                  f"got {self.windows} and {self.min_window_periods}")
        if self.training_weight < 0 or self.validation_weight < 0:
            raise ValidationError("cross validation weights must be >= 0")


@dataclass(frozen=True)
class CrossValidationResult:
    training_objective: float
    validation_objectives: Tuple[float, ...]
    windows: Tuple[Tuple[int, int], ...]   # [start, stop) indices of the windows that ran
    composite_score: float
    standard_deviation: float
    objective_range: float
    stability_score: float                 # 1 / (1 + coefficient of variation), in [0, 1]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class OptimizationResult:
    params: StrategyParameters
    performance: PerformanceMetrics
    objective_value: float
    cross_validation: Optional[CrossValidationResult] = None

    def to_dict(self) -> dict:
        return {
            "params": self.params.to_dict(),
            "performance": self.performance.to_dict(),
            "objective_value": self.objective_value,
            "cross_validation": self.cross_validation.to_dict() if self.cross_validation else None,
        }


def split_windows(market_points: Sequence[MarketPoint], windows: int,
                  min_periods: int = 1) -> List[Tuple[int, int]]:
    """
    Contiguous [start, stop) windows covering market_points in order.

    The window count drops until each window has at least min_periods points;
    the last window absorbs the remainder. Empty when even one window is too short.
    """
    count = min(windows, len(market_points) // max(min_periods, 1))
    if count < 1:
        return []
    size = len(market_points) // count
    bounds = [(i * size, (i + 1) * size) for i in range(count)]
    bounds[-1] = (bounds[-1][0], len(market_points))
    return bounds


def consistency(training: float, validation: Sequence[float], training_weight: float,
                validation_weight: float) -> Tuple[float, float, float, float]:
    """(composite, std, range, stability) of the validation objectives"""
    if not validation:
        return training, 0.0, 0.0, 0.0
    values = np.asarray(validation, dtype=float)
    mean = float(values.mean())
    std = float(values.std())
    cv = std / abs(mean) if mean != 0 else 1.0
    stability = min(max(1.0 / (1.0 + cv), 0.0), 1.0)
    composite = training * training_weight + mean * validation_weight
    return composite, std, float(values.max() - values.min()), stability


def generate_weight_combinations(step: float = None, min_weight: float = None,
                                 max_weight: float = None) -> List[Dict[str, float]]:
    """
    All (price_change, volume, volatility, funding_rate) weight tuples on the
    grid where each weight lies in [min_weight, max_weight] and they sum to 1.
    """
    step = step if step is not None else config.get('optimizer.weight_step', default=0.1)
    min_weight = min_weight if min_weight is not None else config.get('optimizer.min_weight', default=0.1)
    max_weight = max_weight if max_weight is not None else config.get('optimizer.max_weight', default=0.7)
    if step <= 0 or step > 1:
        raise ValidationError(f"weight step must be in (0, 1], got {step}")

    # Integer grid units avoid float drift in the sum-to-one check
    units = round(1 / step)
    low = max(0, round(min_weight / step))
    high = min(units, round(max_weight / step))

    combinations = []
    for pc in range(low, high + 1):
        for vol in range(low, high + 1):
            for vlt in range(low, high + 1):
                funding = units - pc - vol - vlt
                if low <= funding <= high:
                    combinations.append({
                        'price_change_weight': round(pc / units, 6),
                        'volume_weight': round(vol / units, 6),
                        'volatility_weight': round(vlt / units, 6),
                        'funding_rate_weight': round(funding / units, 6),
                    })
    return combinations


def _short_position_range() -> List[int]:
    section = config.get('optimizer.max_short_positions', default={}) or {}
    low = int(section.get('min', 5))
    high = int(section.get('max', 15))
    step = max(1, int(section.get('step', 5)))
    return list(range(low, high + 1, step))


class ParameterOptimizer:
    """Runs a grid search and keeps the results sorted best first"""

    def __init__(self, market_points: Sequence[MarketPoint], base_params: StrategyParameters = None,
                 objective: str = None, granularity_hours: float = None, workers: int = None,
                 max_combinations: int = None,
                 progress_callback: Optional[Callable[[float], None]] = None,
                 cross_validation: Optional[CrossValidationConfig] = None):
        self.market_points = list(market_points)
        self.base_params = base_params or StrategyParameters.from_config()
        self.objective = objective or config.get('optimizer.objective', default='sharpe')
        if self.objective not in OBJECTIVES:
            raise ValidationError(f"Unknown objective {self.objective!r}, expected one of {sorted(OBJECTIVES)}")
        self.granularity_hours = granularity_hours or self.base_params.granularity_hours
        self.workers = workers or OPTIMIZER_WORKERS
        self.max_combinations = max_combinations
        self.progress_callback = progress_callback
        self.results: List[OptimizationResult] = []
        self.failed = 0
        self._cancelled = threading.Event()

        if cross_validation is None and (config.optimizer.get('cross_validation') or {}).get('enabled'):
            cross_validation = CrossValidationConfig.from_config()
        self.cross_validation = cross_validation
        self.windows: List[Tuple[int, int]] = []
        if cross_validation is not None:
            cross_validation.validate()
            self.windows = split_windows(self.market_points, cross_validation.windows,
                                         cross_validation.min_window_periods)
            if not self.windows:
                logger.warning(f"{len(self.market_points)} periods are too few for "
                               f"{cross_validation.min_window_periods}-period validation windows, "
                               f"ranking on the training run only")

    def generate_combinations(self, weight_combinations: List[Dict[str, float]] = None,
                              max_short_positions: Sequence[int] = None,
                              allocation_strategies: Sequence[str] = None) -> List[StrategyParameters]:
        weight_combinations = weight_combinations or generate_weight_combinations()
        max_short_positions = max_short_positions or _short_position_range()
        allocation_strategies = allocation_strategies or config.get(
            'optimizer.allocation_strategies', default=[self.base_params.allocation_strategy.value])

        combinations = []
        for weights in weight_combinations:
            for max_shorts in max_short_positions:
                for strategy in allocation_strategies:
                    combinations.append(replace(
                        self.base_params,
                        max_short_positions=max_shorts,
                        allocation_strategy=AllocationStrategy(strategy),
                        **weights,
                    ))

        if self.max_combinations and len(combinations) > self.max_combinations:
            logger.info(f"Truncating grid from {len(combinations)} to {self.max_combinations} combinations")
            combinations = combinations[:self.max_combinations]
        return combinations

    def evaluate(self, params: StrategyParameters) -> Optional[OptimizationResult]:
        """Run one combination. Returns None if the search was cancelled first."""
        if self._cancelled.is_set():
            return None
        performance = self._analyze(params, self.market_points)
        objective_value = OBJECTIVES[self.objective](performance)
        validation = None
        if self.cross_validation is not None:
            validation = self.cross_validate(params, objective_value)
            objective_value = validation.composite_score
        return OptimizationResult(
            params=params,
            performance=performance,
            objective_value=objective_value,
            cross_validation=validation,
        )

    def _analyze(self, params: StrategyParameters, points: Sequence[MarketPoint]) -> PerformanceMetrics:
        snapshots = simulate(params, points)
        return analyze(snapshots, self.granularity_hours, initial_capital=params.initial_capital)

    def cross_validate(self, params: StrategyParameters, training_objective: float) -> CrossValidationResult:
        """Score params on each validation window and blend with the training objective"""
        cv = self.cross_validation
        objectives = []
        ran = []
        for start, stop in self.windows:
            try:
                performance = self._analyze(params, self.market_points[start:stop])
            except BacktestError as e:
                logger.warning(f"Validation window [{start}, {stop}) failed for weights={params.weights}: {e}")
                continue
            objectives.append(OBJECTIVES[self.objective](performance))
            ran.append((start, stop))

        composite, std, spread, stability = consistency(
            training_objective, objectives, cv.training_weight, cv.validation_weight)
        return CrossValidationResult(
            training_objective=training_objective,
            validation_objectives=tuple(objectives),
            windows=tuple(ran),
            composite_score=composite,
            standard_deviation=std,
            objective_range=spread,
            stability_score=stability,
        )

    def run(self, combinations: List[StrategyParameters] = None) -> List[OptimizationResult]:
        combinations = combinations if combinations is not None else self.generate_combinations()
        total = len(combinations)
        logger.info(f"Optimizing {total} combinations on {self.objective} with {self.workers} workers")

        results = []
        done = 0
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            future_to_params = {executor.submit(self.evaluate, params): params for params in combinations}

            for future in as_completed(future_to_params):
                params = future_to_params[future]
                done += 1
                if future.cancelled():
                    continue
                try:
                    result = future.result()
                    if result is not None:
                        results.append(result)
                except Exception as e:
                    self.failed += 1
                    logger.warning(f"Combination failed (weights={params.weights}, "
                                   f"max_shorts={params.max_short_positions}): {e}")

                if self.progress_callback:
                    self.progress_callback(done / total * 100)

                if self._cancelled.is_set():
                    for pending in future_to_params:
                        pending.cancel()

        results.sort(key=lambda r: r.objective_value, reverse=True)
        self.results = results

        if results:
            best = results[0]
            logger.info(f"Optimization finished: {len(results)} ok, {self.failed} failed, "
                        f"best {self.objective}={best.objective_value:.4f} weights={best.params.weights}")
        else:
            logger.info(f"Optimization finished with no results ({self.failed} failed)")
        return results

    def cancel(self):
        """Stop scheduling new combinations; runs already in progress finish"""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def best(self) -> Optional[OptimizationResult]:
        return self.results[0] if self.results else None
