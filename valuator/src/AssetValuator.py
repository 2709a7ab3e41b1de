"""AssetValuator: Public facade for price lookup and currency conversion.

Keeps a short-lived cache of resolved prices keyed by (base, quote), in front
of a price provider (a ConsensusAggregator unless another one is injected).
Conversions between two non-USD assets go through their USD prices.

.. code-block:: python

    >>> valuator = AssetValuator()
    >>> await valuator.get_price("btc")
    AssetPrice(base='BTC', quote='USD', price=50000.0, timestamp=...)
    >>> await valuator.convert("ETH", "BTC", amount=10)
    0.6
"""

from __future__ import annotations

import inspect
import logging
import time
from typing import TYPE_CHECKING

from .ConsensusAggregator import ConsensusAggregator
from .Quote import AssetPrice

if TYPE_CHECKING:
    from .providers import PriceProvider

logger = logging.getLogger(__name__)

USD = "USD"


class AssetValuator:
    """Price lookup, batch lookup and conversion with a facade-level cache.

    :ivar provider: Underlying price provider.
    :ivar cache_timeout: Facade cache lifetime in seconds.
    """

    DEFAULT_CACHE_TIMEOUT_SECONDS = 60.0

    def __init__(
        self,
        provider: PriceProvider | None = None,
        cache_timeout: float = DEFAULT_CACHE_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the valuator.

        :param provider: Price provider (default: a new ConsensusAggregator).
        :param cache_timeout: Facade cache lifetime in seconds (default: 60).
        """
        self.provider: PriceProvider = provider if provider is not None else ConsensusAggregator()
        self.cache_timeout = cache_timeout
        self._cache: dict[str, tuple[float, float]] = {}

    @staticmethod
    def _cache_key(base: str, quote: str) -> str:
        return f"{base.upper()}_{quote.upper()}"

    def _remember(self, base: str, quote: str, price: float) -> None:
        self._cache[self._cache_key(base, quote)] = (price, time.time())

    async def _cached_or_fetch_price(self, symbol: str, currency: str) -> float:
        key = self._cache_key(symbol, currency)
        cached = self._cache.get(key)

        if cached is not None:
            price, stored_at = cached
            if time.time() - stored_at < self.cache_timeout:
                return price

        quote = await self.provider.fetch_price(symbol, currency)
        self._remember(symbol, currency, quote.price)
        return quote.price

    async def get_price(self, base: str, quote: str = USD) -> AssetPrice:
        """Get the price of ``base`` in ``quote``.

        :param base: Asset symbol, any case.
        :param quote: Quote currency (default: "USD").
        :returns: AssetPrice labelled with both symbols uppercased.
        :raises NoPriceData: If no provider could price the asset.
        :raises RateLimitExceeded: If requests are being throttled.
        """
        price = await self._cached_or_fetch_price(base, quote)
        return AssetPrice(base=base, quote=quote, price=price)

    async def convert(self, from_asset: str, to_asset: str, amount: float = 1.0) -> float:
        """Convert an amount of one asset into another.

        Only USD prices are looked up: converting between two non-USD assets
        uses ``(from_usd / to_usd) * amount``.

        :param from_asset: Source asset symbol.
        :param to_asset: Target asset symbol.
        :param amount: Amount of ``from_asset`` (default: 1).
        :returns: Equivalent amount of ``to_asset``.
        """
        source = from_asset.upper()
        target = to_asset.upper()

        if source == target:
            return amount

        if target == USD:
            return await self._cached_or_fetch_price(source, USD) * amount

        if source == USD:
            return amount / await self._cached_or_fetch_price(target, USD)

        from_price_usd = await self._cached_or_fetch_price(source, USD)
        to_price_usd = await self._cached_or_fetch_price(target, USD)
        return (from_price_usd / to_price_usd) * amount

    async def get_prices(self, symbols: list[str], quote: str = USD) -> list[AssetPrice]:
        """Get prices for several assets in one round.

        Results follow the provider's order; unresolvable symbols are absent.

        :param symbols: Asset symbols.
        :param quote: Quote currency (default: "USD").
        :returns: AssetPrice per resolved symbol.
        """
        quotes = await self.provider.fetch_multiple_prices(symbols, quote)
        timestamp = time.time()

        results: list[AssetPrice] = []
        for price_data in quotes:
            self._remember(price_data.symbol, quote, price_data.price)
            results.append(
                AssetPrice(
                    base=price_data.symbol,
                    quote=quote,
                    price=price_data.price,
                    timestamp=timestamp,
                )
            )
        return results

    def set_cache_timeout(self, seconds: float) -> None:
        """Change the facade cache lifetime.

        :param seconds: New lifetime in seconds.
        """
        self.cache_timeout = seconds

    async def clear_cache(self) -> None:
        """Drop the facade cache and, when it has one, the provider's cache."""
        self._cache.clear()

        clear_provider_cache = getattr(self.provider, "clear_cache", None)
        if clear_provider_cache is not None:
            result = clear_provider_cache()
            if inspect.isawaitable(result):
                await result
            logger.debug("Provider cache cleared")

    async def close(self) -> None:
        """Release the provider's resources, if it holds any."""
        close = getattr(self.provider, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result
