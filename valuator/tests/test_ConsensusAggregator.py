"""Unit tests for ConsensusAggregator."""

import asyncio
import logging

import pytest

from valuator.src.ConsensusAggregator import ConsensusAggregator
from valuator.src.errors import (
    NoPriceData,
    PriceNotFound,
    ProviderUnavailable,
    RateLimitExceeded,
)
from valuator.src.providers import CoinGeckoProvider, CoinpaprikaProvider
from valuator.src.Quote import Quote
from valuator.src.storage import StorageCapabilities


class FakeProvider:
    """In-memory provider recording its calls."""

    def __init__(
        self,
        name: str,
        prices: dict[str, float] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.prices = {k.upper(): v for k, v in (prices or {}).items()}
        self.error = error
        self.delay = delay
        self.calls = 0
        self.batch_calls = 0

    async def fetch_price(self, symbol: str, currency: str = "USD") -> Quote:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        price = self.prices.get(symbol.upper())
        if price is None:
            raise PriceNotFound(symbol, currency, source=self.name)
        return Quote(symbol, price, source=self.name)

    async def fetch_multiple_prices(
        self, symbols: list[str], currency: str = "USD"
    ) -> list[Quote]:
        self.batch_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [
            Quote(s, self.prices[s.upper()], source=self.name)
            for s in symbols
            if s.upper() in self.prices
        ]


def make_aggregator(providers, **kwargs) -> ConsensusAggregator:
    """Aggregator with a generous request budget and no backoff delay."""
    kwargs.setdefault("max_requests", 100)
    kwargs.setdefault("retry_after_seconds", 0)
    return ConsensusAggregator(providers, **kwargs)


class TestConsensusAggregatorInit:
    """Test aggregator construction."""

    def test_default_providers(self) -> None:
        """CoinGecko then Coinpaprika are used when no providers are given."""
        aggregator = ConsensusAggregator()
        assert isinstance(aggregator.providers[0], CoinGeckoProvider)
        assert isinstance(aggregator.providers[1], CoinpaprikaProvider)

    def test_memory_cache_by_default(self) -> None:
        aggregator = make_aggregator([FakeProvider("a")])
        assert aggregator.cache.storage == "memory"

    def test_storage_from_capabilities(self, tmp_path) -> None:
        """The best storage the host supports is selected."""
        kv = make_aggregator(
            [FakeProvider("a")],
            capabilities=StorageCapabilities(key_value=True),
            cache_dir=tmp_path,
        )
        db = make_aggregator(
            [FakeProvider("a")],
            capabilities=StorageCapabilities(database=True, key_value=True),
            cache_dir=tmp_path,
        )
        assert kv.cache.storage == "key_value"
        assert db.cache.storage == "database"

    def test_persistent_storage_requires_cache_dir(self) -> None:
        with pytest.raises(ValueError, match="requires a cache_dir"):
            make_aggregator([FakeProvider("a")], cache_storage="database")

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError, match="threshold must be in"):
            make_aggregator([FakeProvider("a")], consensus_threshold=0)


class TestFetchPrice:
    """Test the single-symbol path."""

    @pytest.mark.asyncio
    async def test_partial_failure_uses_remaining_provider(self) -> None:
        """A failing provider is skipped and the next one answers."""
        failing = FakeProvider("a", error=ProviderUnavailable("boom", status_code=500))
        healthy = FakeProvider("b", {"BTC": 50000.0})
        aggregator = make_aggregator([failing, healthy])

        quote = await aggregator.fetch_price("BTC", "USD")

        assert quote.price == 50000.0
        assert failing.calls == 1
        assert healthy.calls == 1

    @pytest.mark.asyncio
    async def test_stops_once_threshold_reached(self) -> None:
        """With threshold 0.5 and two providers, one quote is enough."""
        first = FakeProvider("a", {"BTC": 100.0})
        second = FakeProvider("b", {"BTC": 200.0})
        aggregator = make_aggregator([first, second])

        quote = await aggregator.fetch_price("BTC")

        assert quote.price == 100.0
        assert second.calls == 0

    @pytest.mark.asyncio
    async def test_outlier_removed_with_full_threshold(self, caplog) -> None:
        """All providers are queried and the outlier falls back to the median."""
        providers = [
            FakeProvider("a", {"BTC": 100.0}),
            FakeProvider("b", {"BTC": 100.0}),
            FakeProvider("c", {"BTC": 1000.0}),
        ]
        aggregator = make_aggregator(providers, consensus_threshold=1.0)

        with caplog.at_level(logging.INFO):
            quote = await aggregator.fetch_price("BTC")

        assert quote.price == 100.0
        assert all(p.calls == 1 for p in providers)
        assert "dropped" in caplog.text

    @pytest.mark.asyncio
    async def test_agreeing_prices_averaged(self) -> None:
        providers = [
            FakeProvider("a", {"ETH": 2000.0}),
            FakeProvider("b", {"ETH": 2020.0}),
        ]
        aggregator = make_aggregator(providers, consensus_threshold=1.0)

        quote = await aggregator.fetch_price("ETH")
        assert quote.price == pytest.approx(2010.0)

    @pytest.mark.asyncio
    async def test_all_providers_failing(self) -> None:
        """NoPriceData is raised when no provider returned a quote."""
        aggregator = make_aggregator(
            [
                FakeProvider("a", error=ProviderUnavailable("down")),
                FakeProvider("b"),
            ]
        )

        with pytest.raises(NoPriceData, match="BTC/USD"):
            await aggregator.fetch_price("btc")

    @pytest.mark.asyncio
    async def test_invalid_price_ignored(self) -> None:
        zero = FakeProvider("a", {"BTC": 0.0})
        healthy = FakeProvider("b", {"BTC": 50000.0})
        aggregator = make_aggregator([zero, healthy])

        quote = await aggregator.fetch_price("BTC")
        assert quote.price == 50000.0

    @pytest.mark.asyncio
    async def test_symbol_uppercased(self) -> None:
        aggregator = make_aggregator([FakeProvider("a", {"BTC": 50000.0})])

        quote = await aggregator.fetch_price("btc", "usd")
        assert quote.symbol == "BTC"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_providers(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0})
        aggregator = make_aggregator([provider])

        await aggregator.fetch_price("BTC")
        quote = await aggregator.fetch_price("btc")

        assert quote.price == 50000.0
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_clear_cache_forces_fresh_query(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0})
        aggregator = make_aggregator([provider])

        await aggregator.fetch_price("BTC")
        await aggregator.clear_cache()
        await aggregator.fetch_price("BTC")

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_cache_keyed_by_currency(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0})
        aggregator = make_aggregator([provider])

        await aggregator.fetch_price("BTC", "USD")
        await aggregator.fetch_price("BTC", "EUR")
        await aggregator.fetch_price("btc", "eur")

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_skips_provider(self) -> None:
        """A provider exceeding fetch_timeout is treated as a failure."""
        slow = FakeProvider("slow", {"BTC": 1.0}, delay=1.0)
        fast = FakeProvider("fast", {"BTC": 50000.0})
        aggregator = make_aggregator([slow, fast], fetch_timeout=0.05)

        quote = await aggregator.fetch_price("BTC")
        assert quote.price == 50000.0

    @pytest.mark.asyncio
    async def test_throttling_escalates_to_rate_limiter(self) -> None:
        """Persistent 429s exhaust the limiter's retries."""
        throttled = FakeProvider(
            "a", error=ProviderUnavailable("Too Many Requests", status_code=429)
        )
        aggregator = make_aggregator([throttled], max_retries=2)

        with pytest.raises(RateLimitExceeded):
            await aggregator.fetch_price("BTC")

        assert throttled.calls == 3

    @pytest.mark.asyncio
    async def test_concurrent_requests_coalesced(self) -> None:
        """Simultaneous requests for one key share a single resolution."""
        provider = FakeProvider("a", {"BTC": 50000.0}, delay=0.05)
        aggregator = make_aggregator([provider])

        first, second = await asyncio.gather(
            aggregator.fetch_price("BTC"), aggregator.fetch_price("btc")
        )

        assert first == second
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_corrupt_cache_entry_discarded(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0})
        aggregator = make_aggregator([provider])
        await aggregator.cache.set("BTC-USD", {"unexpected": True})

        quote = await aggregator.fetch_price("BTC")

        assert quote.price == 50000.0
        assert provider.calls == 1


class TestFetchMultiplePrices:
    """Test the batch path."""

    @pytest.mark.asyncio
    async def test_partial_results(self) -> None:
        """Only symbols some provider knows are returned."""
        providers = [
            FakeProvider("a", {"ETH": 3000.0}),
            FakeProvider("b", error=ProviderUnavailable("down")),
        ]
        aggregator = make_aggregator(providers)

        quotes = await aggregator.fetch_multiple_prices(["BTC", "ETH"])

        assert [q.symbol for q in quotes] == ["ETH"]
        assert quotes[0].price == 3000.0

    @pytest.mark.asyncio
    async def test_queries_every_provider_once(self) -> None:
        providers = [
            FakeProvider("a", {"BTC": 100.0, "ETH": 10.0}),
            FakeProvider("b", {"BTC": 102.0, "ETH": 50.0}),
            FakeProvider("c", {"BTC": 104.0, "ETH": 10.0}),
        ]
        aggregator = make_aggregator(providers)

        quotes = await aggregator.fetch_multiple_prices(["btc", "eth"])
        by_symbol = {q.symbol: q.price for q in quotes}

        assert by_symbol["BTC"] == pytest.approx(102.0)
        # 50.0 is an outlier against the median of 10.0
        assert by_symbol["ETH"] == pytest.approx(10.0)
        assert all(p.batch_calls == 1 for p in providers)
        assert all(p.calls == 0 for p in providers)

    @pytest.mark.asyncio
    async def test_results_cached_per_symbol(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0, "ETH": 3000.0})
        aggregator = make_aggregator([provider])

        await aggregator.fetch_multiple_prices(["BTC", "ETH"])
        quote = await aggregator.fetch_price("ETH")

        assert quote.price == 3000.0
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_only_uncached_symbols_fetched(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0, "ETH": 3000.0})
        aggregator = make_aggregator([provider])
        await aggregator.fetch_price("BTC")

        quotes = await aggregator.fetch_multiple_prices(["BTC", "ETH", "btc"])

        assert [q.symbol for q in quotes] == ["BTC", "ETH"]
        assert provider.batch_calls == 1

    @pytest.mark.asyncio
    async def test_everything_cached(self) -> None:
        provider = FakeProvider("a", {"BTC": 50000.0})
        aggregator = make_aggregator([provider])
        await aggregator.fetch_multiple_prices(["BTC"])

        quotes = await aggregator.fetch_multiple_prices(["BTC"])

        assert [q.symbol for q in quotes] == ["BTC"]
        assert provider.batch_calls == 1

    @pytest.mark.asyncio
    async def test_nothing_resolved(self) -> None:
        aggregator = make_aggregator([FakeProvider("a")])
        assert await aggregator.fetch_multiple_prices(["BTC"]) == []

    @pytest.mark.asyncio
    async def test_batch_timeout_skips_provider(self) -> None:
        slow = FakeProvider("slow", {"BTC": 1.0}, delay=1.0)
        fast = FakeProvider("fast", {"BTC": 50000.0})
        aggregator = make_aggregator([slow, fast], fetch_timeout=0.05)

        quotes = await aggregator.fetch_multiple_prices(["BTC"])
        assert [q.price for q in quotes] == [50000.0]

    @pytest.mark.asyncio
    async def test_batch_throttling(self) -> None:
        throttled = FakeProvider("a", error=ProviderUnavailable("slow down", status_code=429))
        aggregator = make_aggregator([throttled], max_retries=1)

        with pytest.raises(RateLimitExceeded):
            await aggregator.fetch_multiple_prices(["BTC", "ETH"])

        assert throttled.batch_calls == 2


class TestProviderManagement:
    """Test provider list maintenance."""

    def test_add_provider_appends(self) -> None:
        a, b = FakeProvider("a"), FakeProvider("b")
        aggregator = make_aggregator([a])
        aggregator.add_provider(b)

        assert aggregator.providers == [a, b]

    def test_remove_provider(self) -> None:
        a, b = FakeProvider("a"), FakeProvider("b")
        aggregator = make_aggregator([a, b])
        aggregator.remove_provider(0)

        assert aggregator.providers == [b]

    def test_remove_provider_invalid_index(self) -> None:
        aggregator = make_aggregator([FakeProvider("a")])
        with pytest.raises(IndexError):
            aggregator.remove_provider(5)

    def test_providers_returns_copy(self) -> None:
        aggregator = make_aggregator([FakeProvider("a")])
        aggregator.providers.clear()
        assert len(aggregator.providers) == 1

    @pytest.mark.asyncio
    async def test_added_provider_used(self) -> None:
        aggregator = make_aggregator([FakeProvider("a")])
        aggregator.add_provider(FakeProvider("b", {"BTC": 50000.0}))

        quote = await aggregator.fetch_price("BTC")
        assert quote.price == 50000.0

    @pytest.mark.asyncio
    async def test_reset_rate_limiter(self) -> None:
        aggregator = make_aggregator([FakeProvider("a", {"BTC": 1.0})])
        await aggregator.fetch_price("BTC")
        assert aggregator.rate_limiter.get_recent_request_count() == 1

        aggregator.reset_rate_limiter()
        assert aggregator.rate_limiter.get_recent_request_count() == 0

    @pytest.mark.asyncio
    async def test_close(self, tmp_path) -> None:
        aggregator = make_aggregator(
            [FakeProvider("a", {"BTC": 1.0})],
            cache_storage="database",
            cache_dir=tmp_path,
        )
        await aggregator.fetch_price("BTC")
        await aggregator.close()

        assert (tmp_path / ConsensusAggregator.DATABASE_FILE).exists()
