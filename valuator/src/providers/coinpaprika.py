"""Coinpaprika provider.

Endpoint: https://api.coinpaprika.com/v1/tickers/{coin_id}
Rate Limit: 20,000 calls/month (free tier)
Batch: Yes, via /tickers?quotes=USD (returns every ticker)
"""

import logging

from ..errors import PriceNotFound, ProviderUnavailable
from ..Quote import Quote
from .base import BaseProvider, register_provider

logger = logging.getLogger(__name__)


@register_provider
class CoinpaprikaProvider(BaseProvider):
    """Provider for the Coinpaprika API.

    The free tier only quotes prices in USD; other currencies raise
    PriceNotFound. No API key required.
    """

    name = "coinpaprika"
    BASE_URL = "https://api.coinpaprika.com/v1"
    SUPPORTED_CURRENCIES = frozenset({"USD"})

    # Map common symbols to Coinpaprika IDs
    # Format: {symbol}-{name}
    COIN_IDS = {
        "BTC": "btc-bitcoin",
        "ETH": "eth-ethereum",
        "USDT": "usdt-tether",
        "USDC": "usdc-usd-coin",
        "BNB": "bnb-binance-coin",
        "SOL": "sol-solana",
        "XRP": "xrp-xrp",
        "ADA": "ada-cardano",
        "DOGE": "doge-dogecoin",
        "AVAX": "avax-avalanche",
        "DOT": "dot-polkadot",
        "MATIC": "matic-polygon",
        "LINK": "link-chainlink",
        "UNI": "uni-uniswap",
        "ATOM": "atom-cosmos",
        "LTC": "ltc-litecoin",
        "DAI": "dai-dai",
        "ROSE": "rose-oasis-network",
    }

    def coin_id(self, symbol: str) -> str:
        """Map a symbol to its Coinpaprika id ("{sym}-{sym}" when unknown)."""
        lowered = symbol.lower()
        return self.COIN_IDS.get(symbol.upper(), f"{lowered}-{lowered}")

    @staticmethod
    def _usd_price(ticker: dict) -> float | None:
        price = ticker.get("quotes", {}).get("USD", {}).get("price")
        return float(price) if price is not None else None

    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        """Fetch price from Coinpaprika.

        :param symbol: Asset symbol (e.g., "BTC").
        :param currency: Quote currency, must be "USD".
        :returns: Current price quote.
        :raises PriceNotFound: If the currency is unsupported or the ticker
            has no USD price.
        :raises ProviderUnavailable: If the request fails.
        """
        if currency.upper() not in self.SUPPORTED_CURRENCIES:
            raise PriceNotFound(symbol, currency, source=self.name)

        coin_id = self.coin_id(symbol)
        try:
            response = await self._get(f"{self.BASE_URL}/tickers/{coin_id}")
        except ProviderUnavailable as e:
            if e.status_code == 404:
                raise PriceNotFound(symbol, currency, source=self.name) from e
            raise

        try:
            data = response.json()
            price = self._usd_price(data)
        except (ValueError, TypeError, AttributeError) as e:
            raise ProviderUnavailable(f"[{self.name}] Failed to parse {coin_id}: {e}") from e

        if price is None:
            raise PriceNotFound(symbol, currency, source=self.name)

        return self._quote(symbol, price)

    async def fetch_multiple_prices(
        self, symbols: list[str], currency: str = "USD"
    ) -> list[Quote]:
        """Fetch prices for several symbols using the /tickers endpoint.

        :param symbols: Asset symbols.
        :param currency: Quote currency; anything but USD yields no quotes.
        :returns: Quotes for the symbols found in the ticker list.
        :raises ProviderUnavailable: If the request fails.
        """
        if not symbols or currency.upper() not in self.SUPPORTED_CURRENCIES:
            return []

        response = await self._get(f"{self.BASE_URL}/tickers", params={"quotes": "USD"})
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"[{self.name}] Invalid JSON response: {e}") from e

        if isinstance(data, dict) and "error" in data:
            raise ProviderUnavailable(f"[{self.name}] Batch API error: {data['error']}")

        ticker_map: dict[str, dict] = {
            ticker["id"]: ticker for ticker in data if isinstance(ticker, dict) and "id" in ticker
        }

        results: list[Quote] = []
        for symbol in symbols:
            ticker = ticker_map.get(self.coin_id(symbol))
            if ticker is None:
                continue
            try:
                price = self._usd_price(ticker)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"[{self.name}] Failed to parse price for {symbol}: {e}")
                continue
            if price is not None:
                results.append(self._quote(symbol, price))

        return results
