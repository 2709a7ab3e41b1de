#!/usr/bin/env python3
"""Asset Valuator.

Fetches asset prices from multiple off-chain sources, reconciles them into
consensus prices and optionally converts an amount between two assets.

Run via ``python -m valuator.main`` or the ``asset-valuator`` script. All
options can also be set through environment variables.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.AssetValuator import AssetValuator
from .src.ConsensusAggregator import ConsensusAggregator
from .src.errors import ValuatorError
from .src.providers import get_available_providers, get_provider
from .src.storage import probe_storage_capabilities
from .src.TieredCache import TieredCache

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: coingecko=demo:CG-abc123

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys() -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_COINGECKO, APIKEY_COINGECKO, etc.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in os.environ.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def parse_conversion(value: str) -> tuple[str, str, float]:
    """Parse a conversion argument "FROM:TO[:AMOUNT]".

    :param value: Conversion argument, e.g. "eth:btc:10".
    :returns: Tuple of (from_asset, to_asset, amount).
    :raises argparse.ArgumentTypeError: If the argument is malformed.
    """
    parts = [p.strip() for p in value.split(":")]
    if len(parts) not in (2, 3) or not all(parts):
        raise argparse.ArgumentTypeError(
            f"Invalid conversion '{value}'. Expected FROM:TO[:AMOUNT] (e.g., eth:btc:10)"
        )
    try:
        amount = float(parts[2]) if len(parts) == 3 else 1.0
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid amount in '{value}'") from e
    return parts[0], parts[1], amount


def build_parser(available_sources: list[str]) -> argparse.ArgumentParser:
    """Build the CLI parser; defaults come from environment variables."""
    parser = argparse.ArgumentParser(
        description="Asset Valuator: consensus prices from multiple sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # BTC and ETH in USD from the default sources
  python -m valuator.main --symbols btc,eth

  # Convert 10 ETH to BTC, caching results on disk
  python -m valuator.main --convert eth:btc:10 --cache-dir ~/.cache/asset-valuator

  # Offline demo
  python -m valuator.main --symbols btc,eth,sol --sources static

Environment variables (CLI args take precedence):
  SYMBOLS, CURRENCY, SOURCES, CACHE_STORAGE, CACHE_DIR, CACHE_TTL,
  MAX_REQUESTS, WINDOW_SECONDS, CONSENSUS_THRESHOLD, FETCH_TIMEOUT,
  API_KEYS, API_KEY_COINGECKO, etc.
""",
    )

    parser.add_argument(
        "--symbols",
        type=str,
        help="Comma-separated asset symbols (e.g., btc,eth,sol)",
        default=os.environ.get("SYMBOLS") or "btc",
    )

    parser.add_argument(
        "--currency",
        type=str,
        help="Quote currency (default: USD)",
        default=os.environ.get("CURRENCY") or "USD",
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources in priority order. Available: {', '.join(available_sources)}",
        default=os.environ.get("SOURCES") or "coingecko,coinpaprika",
    )

    parser.add_argument(
        "--convert",
        type=parse_conversion,
        help="Convert an amount, FROM:TO[:AMOUNT] (e.g., eth:btc:10)",
        default=None,
    )

    parser.add_argument(
        "--cache-storage",
        dest="cache_storage",
        choices=TieredCache.STORAGE_TYPES,
        help="Cache backend (default: best available for --cache-dir)",
        default=os.environ.get("CACHE_STORAGE") or None,
    )

    parser.add_argument(
        "--cache-dir",
        dest="cache_dir",
        type=str,
        help="Directory for persistent cache files (default: memory only)",
        default=os.environ.get("CACHE_DIR") or None,
    )

    parser.add_argument(
        "--cache-ttl",
        dest="cache_ttl",
        type=float,
        help="Seconds a resolved price stays cached (default: 60)",
        default=float(os.environ.get("CACHE_TTL") or "60"),
    )

    parser.add_argument(
        "--max-requests",
        dest="max_requests",
        type=int,
        help="Maximum provider rounds per window (default: 5)",
        default=int(os.environ.get("MAX_REQUESTS") or "5"),
    )

    parser.add_argument(
        "--window",
        dest="window_seconds",
        type=float,
        help="Rate limit window in seconds (default: 60)",
        default=float(os.environ.get("WINDOW_SECONDS") or "60"),
    )

    parser.add_argument(
        "--consensus-threshold",
        dest="consensus_threshold",
        type=float,
        help="Fraction of sources needed for consensus (default: 0.5)",
        default=float(os.environ.get("CONSENSUS_THRESHOLD") or "0.5"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual provider requests in seconds (default: 10.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "10.0"),
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., coingecko=demo:CG-abc)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


async def run(
    valuator: AssetValuator,
    symbols: list[str],
    currency: str,
    conversion: tuple[str, str, float] | None,
) -> None:
    """Print prices (and a conversion) using the given valuator."""
    try:
        prices = await valuator.get_prices(symbols, currency)
        for price in prices:
            print(f"{price.base}/{price.quote}: {price.price:.6f}")

        missing = {s.upper() for s in symbols} - {p.base for p in prices}
        if missing:
            logger.warning(f"No price available for: {', '.join(sorted(missing))}")

        if conversion:
            from_asset, to_asset, amount = conversion
            converted = await valuator.convert(from_asset, to_asset, amount)
            print(f"{amount} {from_asset.upper()} = {converted:.8f} {to_asset.upper()}")
    finally:
        await valuator.close()


def main() -> None:
    """Main entry point for the Asset Valuator CLI."""
    available_sources = get_available_providers()
    parser = build_parser(available_sources)
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.cache_ttl <= 0:
        parser.error("--cache-ttl must be positive")

    if args.max_requests < 1:
        parser.error("--max-requests must be at least 1")

    if not 0 < args.consensus_threshold <= 1:
        parser.error("--consensus-threshold must be in (0, 1]")

    if args.cache_storage not in (None, "memory") and not args.cache_dir:
        parser.error(f"--cache-storage {args.cache_storage} requires --cache-dir")

    symbols = [s.strip() for s in args.symbols.split(",") if s.strip()]
    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]

    if not symbols:
        parser.error("At least one symbol must be specified")

    if not sources:
        parser.error("At least one source must be specified")

    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    capabilities = probe_storage_capabilities(args.cache_dir)

    # Log configuration
    logger.info("=" * 60)
    logger.info("Asset Valuator - Multi-Source Consensus")
    logger.info("=" * 60)
    logger.info(f"Symbols:           {', '.join(s.upper() for s in symbols)}")
    logger.info(f"Currency:          {args.currency.upper()}")
    logger.info(f"Sources:           {', '.join(sources)}")
    logger.info(f"Cache:             {args.cache_storage or capabilities.select_storage()}")
    logger.info(f"Cache TTL:         {args.cache_ttl}s")
    logger.info(f"Rate Limit:        {args.max_requests}/{args.window_seconds}s")
    logger.info(f"Consensus:         {args.consensus_threshold}")
    logger.info(f"Fetch Timeout:     {args.fetch_timeout}s")
    if api_keys:
        logger.info(f"API Keys:          {', '.join(api_keys.keys())}")
    logger.info("=" * 60)

    try:
        providers = [
            get_provider(source, api_key=api_keys.get(source), timeout=args.fetch_timeout)
            for source in sources
        ]
        aggregator = ConsensusAggregator(
            providers,
            cache_storage=args.cache_storage,
            capabilities=capabilities,
            cache_dir=args.cache_dir,
            cache_ttl=args.cache_ttl,
            max_requests=args.max_requests,
            window_seconds=args.window_seconds,
            consensus_threshold=args.consensus_threshold,
            fetch_timeout=args.fetch_timeout,
        )
        valuator = AssetValuator(aggregator, cache_timeout=args.cache_ttl)
        asyncio.run(run(valuator, symbols, args.currency, args.convert))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except (ValuatorError, ValueError) as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
