"""Quote and AssetPrice: immutable price observations.

A Quote is one price observation for a symbol, either from a single provider
or the consensus of several. The symbol is always the canonical uppercase
ticker, whatever case the caller used.

.. code-block:: python

    >>> quote = Quote("btc", 50000.0, observed_at=1700000000.0, source="coingecko")
    >>> quote.symbol
    'BTC'
    >>> Quote.from_dict(quote.to_dict()) == quote
    True
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Quote:
    """A single price observation.

    :ivar symbol: Canonical uppercase ticker (e.g., "BTC").
    :ivar price: Observed price in the requested quote currency.
    :ivar observed_at: Unix timestamp of the observation.
    :ivar source: Name of the provider, or None for consensus quotes.
    """

    symbol: str
    price: float
    observed_at: float = field(default_factory=time.time)
    source: str | None = None

    def __post_init__(self) -> None:
        """Normalize the symbol to uppercase."""
        object.__setattr__(self, "symbol", self.symbol.upper())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "symbol": self.symbol,
            "price": self.price,
            "observed_at": self.observed_at,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Quote:
        """Rebuild a Quote from :meth:`to_dict` output.

        :param data: Dict with symbol, price, observed_at and optional source.
        :returns: New Quote instance.
        :raises KeyError: If a required field is missing.
        """
        return cls(
            symbol=data["symbol"],
            price=float(data["price"]),
            observed_at=float(data["observed_at"]),
            source=data.get("source"),
        )


@dataclass(frozen=True)
class AssetPrice:
    """Price of one asset expressed in another, as returned by AssetValuator.

    :ivar base: Base asset symbol (uppercase).
    :ivar quote: Quote currency symbol (uppercase).
    :ivar price: Units of quote per one unit of base.
    :ivar timestamp: Unix timestamp when the price was produced.
    """

    base: str
    quote: str
    price: float
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        """Normalize both symbols to uppercase."""
        object.__setattr__(self, "base", self.base.upper())
        object.__setattr__(self, "quote", self.quote.upper())

    def __str__(self) -> str:
        """Return a short human-readable form like 'BTC/USD=50000.000000'."""
        return f"{self.base}/{self.quote}={self.price:.6f}"
