"""
Price providers for multiple API sources.

This module provides a unified interface for fetching asset prices from
various aggregator APIs.

Usage:
    from valuator.src.providers import get_provider, get_available_providers

    # Get list of available providers
    available = get_available_providers()
    # ['coingecko', 'coinpaprika', 'static']

    # Create a provider instance
    provider = get_provider("coingecko")
    quote = await provider.fetch_price("BTC", "USD")

    # For providers with API keys
    provider = get_provider("coingecko", api_key="demo:CG-xxxxx")
"""

# Import base classes and utilities
from .base import (
    PROVIDER_REGISTRY,
    BaseProvider,
    PriceProvider,
    get_available_providers,
    get_provider,
    register_provider,
)

# Import all provider implementations to trigger registration
from .coingecko import CoinGeckoProvider
from .coinpaprika import CoinpaprikaProvider
from .static import StaticProvider

__all__ = [
    # Base classes
    "BaseProvider",
    "PriceProvider",
    # Registry functions
    "register_provider",
    "get_provider",
    "get_available_providers",
    "PROVIDER_REGISTRY",
    # Provider implementations
    "CoinGeckoProvider",
    "CoinpaprikaProvider",
    "StaticProvider",
]
