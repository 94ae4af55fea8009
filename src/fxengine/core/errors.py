"""Typed exceptions raised at the engine's external boundaries."""


class FXEngineError(Exception):
    """Base error for the FX engine."""


class CalendarFetchError(FXEngineError):
    """Economic calendar returned a non-2xx status or a malformed payload."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClassifierError(FXEngineError):
    """Regime classifier call failed or returned unusable output."""


class MarketDataError(FXEngineError):
    """Market-data provider could not produce a usable pair state."""

    def __init__(self, pair: str, message: str) -> None:
        super().__init__(f"{pair}: {message}")
        self.pair = pair


class BrokerError(FXEngineError):
    """Broker rejected or failed to place an order."""


class StoreError(FXEngineError):
    """Key-value store is unreachable; surfaces from cycle entry points."""
