"""Error taxonomy for gridengine.

Strategy and simulator errors are local to one decision or one run.
Exchange errors are split into transient (retried by the adapter, then
surfaced as a connectivity halt) and non-transient (halt new placements for
the affected symbol until resumed).
"""

from typing import Optional


class GridEngineError(Exception):
    """Base class for every error raised by gridengine."""


# =============================================================================
# Configuration / Strategy
# =============================================================================


class InvalidConfiguration(GridEngineError):
    """A configuration value is missing or outside its declared range."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


# =============================================================================
# Historical data / Optimizer
# =============================================================================


class DataGapError(GridEngineError):
    """Historical series has missing intervals."""

    def __init__(self, message: str, gap_start: int = 0, gap_end: int = 0):
        super().__init__(message)
        self.gap_start = gap_start
        self.gap_end = gap_end


class InsufficientData(GridEngineError):
    """Historical series is too short for the requested operation."""


class InvalidSearchSpace(GridEngineError):
    """Optimizer search space is empty, unbounded or names unknown parameters."""


class SimulationFailed(GridEngineError):
    """A backtest ended in the FAILED state where a completed run was required."""


# =============================================================================
# Exchange
# =============================================================================


class ExchangeError(GridEngineError):
    """Base class for errors surfaced by an exchange adapter."""

    transient = False

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class TransientExchangeError(ExchangeError):
    """Network, timeout, rate limit or auth failure that outlived its retries."""

    transient = True


class OrderRejected(ExchangeError):
    """Exchange refused the order (invalid params, insufficient balance)."""
