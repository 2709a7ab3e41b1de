"""CoinGecko provider.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies={currency}
Rate Limit: 30 calls/min (free), higher with API key
Batch: Yes (comma-separated ids)
"""

import logging

from ..errors import PriceNotFound, ProviderUnavailable
from ..Quote import Quote
from .base import BaseProvider, register_provider

logger = logging.getLogger(__name__)


@register_provider
class CoinGeckoProvider(BaseProvider):
    """Provider for the CoinGecko API.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx

    Symbols missing from COIN_IDS are passed to the API lowercased, which
    matches CoinGecko ids for many smaller assets.
    """

    name = "coingecko"
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"

    # Map common symbols to CoinGecko IDs
    COIN_IDS = {
        "BTC": "bitcoin",
        "ETH": "ethereum",
        "USDT": "tether",
        "USDC": "usd-coin",
        "BNB": "binancecoin",
        "SOL": "solana",
        "XRP": "ripple",
        "ADA": "cardano",
        "DOGE": "dogecoin",
        "AVAX": "avalanche-2",
        "DOT": "polkadot",
        "MATIC": "matic-network",
        "LINK": "chainlink",
        "UNI": "uniswap",
        "ATOM": "cosmos",
        "LTC": "litecoin",
        "ROSE": "oasis-network",
    }

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize with optional demo: prefix handling."""
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]  # Strip "demo:" prefix
        super().__init__(api_key=api_key, timeout=timeout)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    @property
    def headers(self) -> dict[str, str] | None:
        """Return the API key header, if a key is configured."""
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return {header_name: self.api_key}

    def coin_id(self, symbol: str) -> str:
        """Map a symbol to its CoinGecko id."""
        return self.COIN_IDS.get(symbol.upper(), symbol.lower())

    async def _simple_price(self, coin_ids: list[str], currency: str) -> dict:
        response = await self._get(
            f"{self.base_url}/simple/price",
            params={"ids": ",".join(coin_ids), "vs_currencies": currency.lower()},
            headers=self.headers,
        )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"[{self.name}] Invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"[{self.name}] Unexpected response: {data!r}")
        return data

    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        """Fetch price from CoinGecko.

        :param symbol: Asset symbol (e.g., "BTC").
        :param currency: Quote currency (e.g., "USD").
        :returns: Current price quote.
        :raises PriceNotFound: If CoinGecko has no price for the pair.
        :raises ProviderUnavailable: If the request fails.
        """
        coin_id = self.coin_id(symbol)
        data = await self._simple_price([coin_id], currency)

        price = data.get(coin_id, {}).get(currency.lower())
        if price is None:
            raise PriceNotFound(symbol, currency, source=self.name)

        return self._quote(symbol, price)

    async def fetch_multiple_prices(
        self, symbols: list[str], currency: str = "USD"
    ) -> list[Quote]:
        """Fetch prices for several symbols in a single API call.

        :param symbols: Asset symbols.
        :param currency: Quote currency.
        :returns: Quotes for the symbols present in the response.
        :raises ProviderUnavailable: If the request fails.
        """
        if not symbols:
            return []

        ids = {symbol: self.coin_id(symbol) for symbol in symbols}
        data = await self._simple_price(sorted(set(ids.values())), currency)

        results: list[Quote] = []
        for symbol, coin_id in ids.items():
            price = data.get(coin_id, {}).get(currency.lower())
            if price is None:
                logger.debug(f"[{self.name}] No {currency.upper()} price for {symbol}")
                continue
            try:
                results.append(self._quote(symbol, price))
            except (ValueError, TypeError) as e:
                logger.warning(f"[{self.name}] Failed to parse price for {symbol}: {e}")

        return results
