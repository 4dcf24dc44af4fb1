"""
Backtest error taxonomy.

Every error carries the period index and timestamp where it was detected so a
failed run can be reproduced from the same market data.
"""

from typing import Optional


class BacktestError(Exception):
    """Base class for all simulation and analysis failures"""

    def __init__(self, message: str, period_index: Optional[int] = None,
                 timestamp: Optional[str] = None):
        self.message = message
        self.period_index = period_index
        self.timestamp = timestamp
        super().__init__(self._format())

    def _format(self) -> str:
        location = []
        if self.period_index is not None:
            location.append(f"period {self.period_index}")
        if self.timestamp:
            location.append(self.timestamp)
        if location:
            return f"{self.message} ({', '.join(location)})"
        return self.message


class ValidationError(BacktestError, ValueError):
    """Bad parameters or a malformed market point. Caller-fixable."""


class SimulationArithmeticError(BacktestError, ArithmeticError):
    """Non-finite or degenerate numeric result, e.g. a zero-price division."""


class EmptyInputError(BacktestError, ValueError):
    """Nothing to analyze."""
