from __future__ import annotations


class ArbitrageError(Exception):
    pass


class InvalidInput(ArbitrageError, ValueError):
    """Raised for non-positive prices, negative thresholds or malformed candidates."""


class InvalidDirection(InvalidInput):
    """Raised when a NO_OP direction reaches the profit estimator."""


class StaleReferencePriceError(ArbitrageError):
    def __init__(self, message: str, *, age_seconds: float | None = None, max_age_seconds: float = 0.0) -> None:
        super().__init__(message)
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
