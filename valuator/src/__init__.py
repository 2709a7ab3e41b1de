"""
Asset Valuator - Multi-Source Price Aggregation Module

This module provides consensus prices from multiple off-chain sources:
- AssetValuator: Public facade for price lookup and conversion
- ConsensusAggregator: Multi-provider resolution with caching and throttling
- PriceConsensus: Median-based outlier filtering and averaging
- RateLimiter: Sliding-window throttling with exponential backoff
- TieredCache: TTL cache over memory, key-value and SQLite backends
- providers: Modular price provider implementations
"""

from .AssetValuator import AssetValuator
from .ConsensusAggregator import ConsensusAggregator
from .errors import (
    NoPriceData,
    PriceNotFound,
    ProviderUnavailable,
    RateLimitExceeded,
    ValuatorError,
)
from .PriceConsensus import ConsensusResult, PriceConsensus
from .Quote import AssetPrice, Quote
from .RateLimiter import RateLimiter
from .storage import JsonFileStore, StorageCapabilities, probe_storage_capabilities
from .TieredCache import TieredCache

__all__ = [
    "AssetPrice",
    "AssetValuator",
    "ConsensusAggregator",
    "ConsensusResult",
    "JsonFileStore",
    "NoPriceData",
    "PriceConsensus",
    "PriceNotFound",
    "ProviderUnavailable",
    "Quote",
    "RateLimitExceeded",
    "RateLimiter",
    "StorageCapabilities",
    "TieredCache",
    "ValuatorError",
    "probe_storage_capabilities",
]
