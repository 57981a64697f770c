from typing import Optional


class TradingError(Exception):
    """Base class for failures surfaced by a symbol invocation."""


class ConfigurationError(TradingError):
    """Missing or invalid configuration. Never retried."""


class DataInsufficiencyError(TradingError):
    def __init__(self, symbol: str, bars: int, required: int):
        super().__init__(f"{symbol}: only {bars} bars available, {required} required")
        self.symbol = symbol
        self.bars = bars
        self.required = required


class GatewayError(TradingError):
    """Exchange call that kept failing after the retry policy gave up."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None, symbol: Optional[str] = None):
        detail = f"{operation} failed"
        if symbol:
            detail = f"{operation} failed for {symbol}"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.operation = operation
        self.symbol = symbol
        self.cause = cause
