from __future__ import annotations


class ConfigError(ValueError):
    """Raised when a strategy configuration mapping is missing fields or holds invalid values."""


class CycleError(Exception):
    """Base class for failures that end a trading cycle."""


class DataUnavailableError(CycleError):
    """Target candle, ticker or order lookup returned nothing usable."""


class TradeValidationError(CycleError):
    """Persisted state or computed order parameters are not tradable."""


class ExchangeCallError(CycleError):
    """A mutating exchange call (place/cancel/update) was rejected or failed."""

    def __init__(self, message: str, *, op: str | None = None, detail: str | None = None):
        super().__init__(message)
        self.op = op
        self.detail = detail


class StateConsistencyError(CycleError):
    """A conditional state update matched no row."""
