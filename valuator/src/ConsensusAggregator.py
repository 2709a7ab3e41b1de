"""ConsensusAggregator: Multi-provider price resolution with caching.

This module queries several price providers, reduces their quotes to one
trusted price per symbol, and keeps network traffic down with a TieredCache
and a RateLimiter.

Architecture:
    - Cache lookup first; hits never touch the network
    - Single-symbol path queries providers in priority order and stops once
      enough quotes for a consensus were collected
    - Batch path queries every provider concurrently and groups quotes by symbol
    - Individual provider failures are logged and skipped; only a round with
      no quotes at all fails (NoPriceData, single-symbol path only)
    - Upstream throttling escalates to the RateLimiter, which backs off and
      retries the whole round
    - Concurrent single-symbol requests for the same key share one resolution
"""

from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import NoPriceData
from .PriceConsensus import ConsensusResult, PriceConsensus
from .providers import BaseProvider, CoinGeckoProvider, CoinpaprikaProvider
from .Quote import Quote
from .RateLimiter import RateLimiter, is_throttling_error
from .storage import JsonFileStore, StorageCapabilities
from .TieredCache import TieredCache

if TYPE_CHECKING:
    from .providers import PriceProvider

logger = logging.getLogger(__name__)


class ConsensusAggregator:
    """Produces one consensus Quote per symbol from several providers.

    Implements the same fetch_price / fetch_multiple_prices contract as a
    single provider, so it can be used anywhere a provider is expected.

    :ivar consensus: Consensus reduction settings.
    :ivar rate_limiter: Limiter guarding every network round.
    :ivar cache: Cache of resolved quotes, keyed "SYMBOL-CURRENCY".
    :ivar fetch_timeout: Per-provider-call timeout in seconds (None disables).
    """

    DEFAULT_CACHE_TTL_SECONDS = 60.0
    DEFAULT_CACHE_MAX_SIZE = 500
    DEFAULT_MAX_REQUESTS = 5
    DEFAULT_WINDOW_SECONDS = 60.0
    DEFAULT_RETRY_AFTER_SECONDS = 2.0
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_FETCH_TIMEOUT = 10.0

    DATABASE_FILE = "valuator-cache.sqlite3"
    KEY_VALUE_FILE = "valuator-cache.json"

    def __init__(
        self,
        providers: list[PriceProvider] | None = None,
        *,
        cache_storage: str | None = None,
        capabilities: StorageCapabilities | None = None,
        cache_dir: str | Path | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        cache_max_size: int = DEFAULT_CACHE_MAX_SIZE,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        retry_after_seconds: float = DEFAULT_RETRY_AFTER_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        consensus_threshold: float = PriceConsensus.DEFAULT_THRESHOLD,
        max_deviation: float = PriceConsensus.DEFAULT_MAX_DEVIATION,
        fetch_timeout: float | None = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        """Initialize the aggregator.

        :param providers: Providers in priority order (default: CoinGecko,
            Coinpaprika).
        :param cache_storage: Explicit cache backend ("memory", "key_value",
            "database"). If None, chosen from ``capabilities``.
        :param capabilities: Host storage capabilities used when
            ``cache_storage`` is None (default: memory only).
        :param cache_dir: Directory for persistent cache files.
        :param cache_ttl: Cache time-to-live in seconds (default: 60).
        :param cache_max_size: Maximum cached entries (default: 500).
        :param max_requests: Rate limiter requests per window (default: 5).
        :param window_seconds: Rate limiter window length (default: 60).
        :param retry_after_seconds: Base backoff delay (default: 2).
        :param max_retries: Backoff retries per key (default: 3).
        :param consensus_threshold: Fraction of providers whose quotes are
            needed for consensus (default: 0.5).
        :param max_deviation: Relative deviation from the median before a
            quote is an outlier (default: 0.1).
        :param fetch_timeout: Timeout per provider call (default: 10.0).
        :raises ValueError: If a persistent backend is selected without a
            ``cache_dir`` or a parameter is invalid.
        """
        if providers is None:
            providers = [CoinGeckoProvider(), CoinpaprikaProvider()]
        self._providers: list[PriceProvider] = list(providers)

        self.consensus = PriceConsensus(
            threshold=consensus_threshold, max_deviation=max_deviation
        )
        self.rate_limiter = RateLimiter(
            max_requests=max_requests,
            window_seconds=window_seconds,
            retry_after_seconds=retry_after_seconds,
            max_retries=max_retries,
        )

        storage = cache_storage or (capabilities or StorageCapabilities()).select_storage()
        self.cache = self._build_cache(storage, cache_dir, cache_ttl, cache_max_size)
        self.fetch_timeout = fetch_timeout

        self._inflight: dict[str, asyncio.Future[Quote]] = {}

        logger.info(
            f"ConsensusAggregator initialized (providers={len(self._providers)}, "
            f"cache={storage}, threshold={consensus_threshold})"
        )

    def _build_cache(
        self,
        storage: str,
        cache_dir: str | Path | None,
        ttl: float,
        max_size: int,
    ) -> TieredCache:
        if storage == "memory":
            return TieredCache(storage="memory", default_ttl=ttl, max_size=max_size)

        if cache_dir is None:
            raise ValueError(f"{storage} cache storage requires a cache_dir")
        path = Path(cache_dir)

        if storage == "database":
            return TieredCache(
                storage="database",
                default_ttl=ttl,
                max_size=max_size,
                database_path=path / self.DATABASE_FILE,
            )
        return TieredCache(
            storage=storage,
            default_ttl=ttl,
            max_size=max_size,
            key_value_store=JsonFileStore(path / self.KEY_VALUE_FILE),
        )

    @staticmethod
    def _cache_key(symbol: str, currency: str) -> str:
        return f"{symbol.upper()}-{currency.upper()}"

    @staticmethod
    def _provider_name(provider: PriceProvider) -> str:
        return getattr(provider, "name", "") or type(provider).__name__

    async def _cached_quote(self, key: str) -> Quote | None:
        cached = await self.cache.get(key)
        if cached is None:
            return None
        try:
            return Quote.from_dict(cached)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"{key}: Discarding unreadable cache entry: {e}")
            await self.cache.delete(key)
            return None

    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        """Fetch the consensus price of one symbol.

        :param symbol: Asset symbol, any case.
        :param currency: Quote currency (default: "USD").
        :returns: Consensus Quote with the uppercase symbol.
        :raises NoPriceData: If every provider failed.
        :raises RateLimitExceeded: If the rate limiter gave up.
        """
        key = self._cache_key(symbol, currency)

        cached = await self._cached_quote(key)
        if cached is not None:
            logger.debug(f"{key}: cache hit")
            return cached

        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(
                self.rate_limiter.execute(
                    key, lambda: self._resolve_price(symbol, currency, key)
                )
            )
            self._inflight[key] = future
            future.add_done_callback(lambda done: self._discard_inflight(key, done))
        else:
            logger.debug(f"{key}: joining in-flight request")

        return await asyncio.shield(future)

    def _discard_inflight(self, key: str, future: asyncio.Future[Quote]) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]

    async def _resolve_price(self, symbol: str, currency: str, key: str) -> Quote:
        quotes = await self._collect_quotes(symbol, currency)
        if not quotes:
            raise NoPriceData(symbol, currency)

        result = self.consensus.reduce([q.price for q in quotes])
        quote = Quote(symbol=symbol, price=result.price)
        self._log_consensus(key, result, [q.source or "?" for q in quotes])

        await self.cache.set(key, quote.to_dict())
        return quote

    async def _collect_quotes(self, symbol: str, currency: str) -> list[Quote]:
        """Query providers in priority order until enough quotes are collected."""
        providers = list(self._providers)
        required = math.ceil(len(providers) * self.consensus.threshold)
        quotes: list[Quote] = []

        for provider in providers:
            name = self._provider_name(provider)
            try:
                quote = await asyncio.wait_for(
                    provider.fetch_price(symbol, currency),
                    timeout=self.fetch_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"[{name}] Timeout fetching {symbol}/{currency}")
                continue
            except Exception as e:
                if is_throttling_error(e):
                    raise
                logger.warning(f"[{name}] Error fetching {symbol}/{currency}: {e}")
                continue

            if quote.price <= 0:
                logger.warning(f"[{name}] Ignoring invalid price {quote.price} for {symbol}")
                continue

            quotes.append(quote)
            if len(quotes) >= required:
                break

        return quotes

    async def fetch_multiple_prices(
        self, symbols: list[str], currency: str = "USD"
    ) -> list[Quote]:
        """Fetch consensus prices for several symbols.

        Symbols that no provider could resolve are left out of the result.

        :param symbols: Asset symbols, any case.
        :param currency: Quote currency (default: "USD").
        :returns: Cached quotes followed by freshly resolved ones.
        :raises RateLimitExceeded: If the rate limiter gave up.
        """
        results: list[Quote] = []
        uncached: list[str] = []

        for symbol in dict.fromkeys(s.upper() for s in symbols):
            cached = await self._cached_quote(self._cache_key(symbol, currency))
            if cached is not None:
                results.append(cached)
            else:
                uncached.append(symbol)

        if uncached:
            batch_key = f"batch-{','.join(uncached)}-{currency.upper()}"
            fetched = await self.rate_limiter.execute(
                batch_key, lambda: self._resolve_batch(uncached, currency)
            )
            results.extend(fetched)

        return results

    async def _fetch_batch_from(
        self, provider: PriceProvider, symbols: list[str], currency: str
    ) -> list[Quote]:
        return await asyncio.wait_for(
            provider.fetch_multiple_prices(symbols, currency),
            timeout=self.fetch_timeout,
        )

    async def _resolve_batch(self, symbols: list[str], currency: str) -> list[Quote]:
        """Query every provider and reduce the quotes symbol by symbol."""
        providers = list(self._providers)
        responses = await asyncio.gather(
            *(self._fetch_batch_from(p, symbols, currency) for p in providers),
            return_exceptions=True,
        )

        grouped: dict[str, list[Quote]] = {symbol: [] for symbol in symbols}
        for provider, response in zip(providers, responses, strict=True):
            name = self._provider_name(provider)
            if isinstance(response, asyncio.TimeoutError):
                logger.warning(f"[{name}] Batch fetch timeout")
                continue
            if isinstance(response, Exception):
                if is_throttling_error(response):
                    raise response
                logger.warning(f"[{name}] Batch fetch error: {response}")
                continue
            if isinstance(response, BaseException):
                raise response

            for quote in response:
                if quote.symbol in grouped and quote.price > 0:
                    grouped[quote.symbol].append(quote)

        resolved: list[Quote] = []
        for symbol, quotes in grouped.items():
            key = self._cache_key(symbol, currency)
            if not quotes:
                logger.debug(f"{key}: no provider returned a price")
                continue

            result = self.consensus.reduce([q.price for q in quotes])
            quote = Quote(symbol=symbol, price=result.price)
            self._log_consensus(key, result, [q.source or "?" for q in quotes])

            await self.cache.set(key, quote.to_dict())
            resolved.append(quote)

        return resolved

    def _log_consensus(self, key: str, result: ConsensusResult, sources: list[str]) -> None:
        log_msg = f"{key}: {result.price:.6f} (consensus of {len(result.used)} [{', '.join(sources)}]"
        if result.dropped:
            dropped = ", ".join(f"{p:.6f}" for p in result.dropped)
            log_msg += f", dropped: [{dropped}]"
        if result.fallback:
            log_msg += ", median fallback"
        log_msg += ")"
        logger.info(log_msg)

    @property
    def providers(self) -> list[PriceProvider]:
        """Providers in priority order (a copy)."""
        return list(self._providers)

    def add_provider(self, provider: PriceProvider) -> None:
        """Append a provider with the lowest priority.

        :param provider: Provider to add.
        """
        self._providers.append(provider)

    def remove_provider(self, index: int) -> None:
        """Remove the provider at a priority index.

        :param index: Position in the provider list.
        :raises IndexError: If there is no provider at ``index``.
        """
        del self._providers[index]

    async def clear_cache(self) -> None:
        """Drop every cached quote."""
        await self.cache.clear()

    def reset_rate_limiter(self) -> None:
        """Clear the rate limiter's window history and retry counters."""
        self.rate_limiter.reset()

    async def close(self) -> None:
        """Close the cache and the shared HTTP client."""
        await self.cache.close()
        await BaseProvider.close_shared_client()
