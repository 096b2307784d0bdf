"""
Exceptions raised by the backtesting and market data services.
"""
from typing import Optional


class StrategyLabError(Exception):
    """Base class for all service errors."""


class InputError(StrategyLabError):
    """Raised when a strategy, date range or capital is malformed. Nothing has run yet."""


class DataUnavailableError(StrategyLabError):
    """Raised when a ticker has no bars after a fetch."""

    def __init__(self, ticker: str, message: str = ""):
        self.ticker = ticker
        super().__init__(message or f"No data available for {ticker}")


class UpstreamError(StrategyLabError):
    """Raised when the market data API answers with a non-2xx or an error payload."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        self.source = source
        self.status_code = status_code
        super().__init__(f"{source}: {message}")


__all__ = [
    "StrategyLabError",
    "InputError",
    "DataUnavailableError",
    "UpstreamError",
]
