"""Error taxonomy shared by providers, the rate limiter and the aggregator.

Provider failures (PriceNotFound, ProviderUnavailable) are absorbed by the
ConsensusAggregator unless every provider fails. RateLimitExceeded and
NoPriceData are the only errors callers of the public API normally see.
"""

from __future__ import annotations


class ValuatorError(Exception):
    """Base exception for all asset valuator errors."""

    pass


class PriceNotFound(ValuatorError):
    """Raised when a provider cannot resolve a symbol/currency pair."""

    def __init__(self, symbol: str, currency: str, source: str | None = None):
        """Initialize the error.

        :param symbol: Requested symbol.
        :param currency: Requested quote currency.
        :param source: Name of the provider that failed, if known.
        """
        self.symbol = symbol.upper()
        self.currency = currency.upper()
        self.source = source
        prefix = f"[{source}] " if source else ""
        super().__init__(f"{prefix}Price not found for {self.symbol} in {self.currency}")


class ProviderUnavailable(ValuatorError):
    """Raised when a provider cannot be reached or answers with an error.

    :ivar status_code: HTTP status code of the failed request, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize the error.

        :param message: Error description.
        :param status_code: HTTP status code, if the failure was an HTTP error.
        """
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code}: {message}"
        super().__init__(message)

    @property
    def is_throttled(self) -> bool:
        """Check if the provider rejected the request as too many requests."""
        return self.status_code == 429


class RateLimitExceeded(ValuatorError):
    """Raised when the retry ceiling of the rate limiter is reached."""

    def __init__(self, key: str, retries: int):
        """Initialize the error.

        :param key: Rate limiter key that was exhausted.
        :param retries: Number of backoff retries performed.
        """
        self.key = key
        self.retries = retries
        super().__init__(
            f"Rate limit exceeded for {key!r} after {retries} retries. "
            "Please try again later."
        )


class NoPriceData(ValuatorError):
    """Raised when no provider returned a price for a symbol."""

    def __init__(self, symbol: str, currency: str):
        """Initialize the error.

        :param symbol: Requested symbol.
        :param currency: Requested quote currency.
        """
        self.symbol = symbol.upper()
        self.currency = currency.upper()
        super().__init__(f"No price data available for {self.symbol}/{self.currency}")


class StorageQuotaExceeded(ValuatorError):
    """Raised by a key-value store when a write would exceed its quota."""

    pass
