"""Static provider with fixed prices, for offline use and tests."""

from ..errors import PriceNotFound
from ..Quote import Quote
from .base import BaseProvider, register_provider


@register_provider
class StaticProvider(BaseProvider):
    """Provider returning deterministic USD prices without network access.

    :ivar prices: Symbol to USD price mapping.
    """

    name = "static"

    DEFAULT_PRICES = {
        "BTC": 40000.0,
        "ETH": 2000.0,
        "SOL": 100.0,
        "USDC": 1.0,
        "USDT": 1.0,
    }

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        prices: dict[str, float] | None = None,
    ):
        super().__init__(api_key=api_key, timeout=timeout)
        source = self.DEFAULT_PRICES if prices is None else prices
        self.prices = {symbol.upper(): price for symbol, price in source.items()}

    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        price = self.prices.get(symbol.upper())
        if price is None or currency.upper() != "USD":
            raise PriceNotFound(symbol, currency, source=self.name)
        return self._quote(symbol, price)
