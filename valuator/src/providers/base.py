"""Base provider interface and shared HTTP client management.

All price providers inherit from BaseProvider and implement fetch_price().
A shared httpx.AsyncClient is used across all providers to avoid connection
overhead.

Providers that can query several symbols in one request override
fetch_multiple_prices(); the default implementation falls back to one
fetch_price() call per symbol.

.. code-block:: python

    @register_provider
    class MyProvider(BaseProvider):
        name = "myprovider"

        async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
            response = await self._get(f"https://api.example.com/{symbol}/{currency}")
            return self._quote(symbol, response.json()["price"])
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Protocol

import httpx

from ..errors import PriceNotFound, ProviderUnavailable
from ..Quote import Quote

logger = logging.getLogger(__name__)


class PriceProvider(Protocol):
    """Anything that can produce quotes: a single adapter or an aggregator."""

    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        ...

    async def fetch_multiple_prices(
        self, symbols: list[str], currency: str = "USD"
    ) -> list[Quote]:
        ...


class BaseProvider(ABC):
    """Abstract base class for price source adapters.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "coingecko")
        - fetch_price(): Async method returning a Quote or raising
          PriceNotFound / ProviderUnavailable

    :cvar name: Unique identifier for this provider.
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""

    DEFAULT_TIMEOUT = 10.0

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize the provider.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Request timeout in seconds (default: 10).
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    @property
    def has_api_key(self) -> bool:
        """Check if this provider has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all provider instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseProvider._shared_client is None or BaseProvider._shared_client.is_closed:
            BaseProvider._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseProvider._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseProvider._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseProvider._shared_client = None

    @abstractmethod
    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        """Fetch the current price of one symbol.

        :param symbol: Asset symbol (e.g., "BTC"), any case.
        :param currency: Quote currency (e.g., "USD"), any case.
        :returns: Quote labelled with the uppercase symbol and this source.
        :raises PriceNotFound: If the source has no price for the pair.
        :raises ProviderUnavailable: If the source cannot be reached.
        """
        pass

    async def fetch_multiple_prices(
        self, symbols: list[str], currency: str = "USD"
    ) -> list[Quote]:
        """Fetch prices for several symbols.

        Returns only the symbols that could be resolved. Default
        implementation makes one fetch_price() call per symbol; override in
        subclasses whose API supports real batch queries.

        :param symbols: Asset symbols to fetch.
        :param currency: Quote currency.
        :returns: Quotes for the resolvable subset of ``symbols``.
        :raises ProviderUnavailable: If the source cannot be reached at all.
        """
        results: list[Quote] = []
        for symbol in symbols:
            try:
                results.append(await self.fetch_price(symbol, currency))
            except PriceNotFound as e:
                logger.debug(f"[{self.name}] Skipping {symbol}: {e}")
        return results

    def _quote(self, symbol: str, price: float) -> Quote:
        """Build a Quote stamped with this provider's name."""
        return Quote(symbol=symbol, price=float(price), source=self.name)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises ProviderUnavailable: On non-2xx response (with ``status_code``)
            and on network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"[{self.name}] Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise ProviderUnavailable(f"[{self.name}] Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise ProviderUnavailable(
                f"[{self.name}] {response.text[:200]}",
                status_code=response.status_code,
            )
        return response


# Registry of available providers (populated by subclass imports)
PROVIDER_REGISTRY: dict[str, type[BaseProvider]] = {}


def register_provider(cls: type[BaseProvider]) -> type[BaseProvider]:
    """Decorator to register a provider class in the global registry.

    :param cls: Provider class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If provider has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Provider {cls.__name__} must define a 'name' class variable")
    PROVIDER_REGISTRY[cls.name] = cls
    return cls


def get_provider(
    name: str, api_key: str | None = None, timeout: float | None = None
) -> BaseProvider:
    """Get a provider instance by name.

    :param name: Provider name (e.g., "coingecko", "coinpaprika").
    :param api_key: Optional API key.
    :param timeout: Optional request timeout in seconds.
    :returns: Provider instance.
    :raises ValueError: If provider name is unknown.
    """
    if name not in PROVIDER_REGISTRY:
        available = ", ".join(sorted(PROVIDER_REGISTRY.keys()))
        raise ValueError(f"Unknown provider '{name}'. Available: {available}")
    return PROVIDER_REGISTRY[name](api_key=api_key, timeout=timeout)


def get_available_providers() -> list[str]:
    """Get list of available provider names.

    :returns: Sorted list of registered provider names.
    """
    return sorted(PROVIDER_REGISTRY.keys())
