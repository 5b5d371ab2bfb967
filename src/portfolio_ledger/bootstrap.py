"""Convenience bootstrapper wiring config, store, cache and pricing into a service."""

import logging
from typing import Optional

from portfolio_ledger.config import AppConfig, load_config
from portfolio_ledger.connection.cache import Cache, build_cache
from portfolio_ledger.connection.pricing import (
    CachedPricingGateway,
    CoinGeckoPricingGateway,
    PricingGateway,
    StaticPricingGateway,
)
from portfolio_ledger.ledger.manager import PortfolioService
from portfolio_ledger.ledger.store import SQLiteLedgerStore
from portfolio_ledger.metrics import LedgerMetrics

logger = logging.getLogger(__name__)


def build_pricing_gateway(config: AppConfig, cache: Cache) -> PricingGateway:
    """Construct the configured price source wrapped in the price cache."""

    pricing = config.pricing
    if pricing.provider == "coingecko":
        gateway: PricingGateway = CoinGeckoPricingGateway(
            api_url=pricing.api_url,
            vs_currency=pricing.vs_currency,
            asset_ids=pricing.asset_ids,
            fallback_prices=pricing.fallback_prices,
            request_timeout_seconds=pricing.request_timeout_seconds,
            calls_per_second=pricing.calls_per_second,
        )
    else:
        gateway = StaticPricingGateway(
            prices=pricing.fallback_prices or None,
            default_price=pricing.default_price,
        )

    return CachedPricingGateway(gateway, cache, ttl_seconds=config.cache.price_ttl_seconds)


def build_portfolio_service(config: Optional[AppConfig] = None) -> PortfolioService:
    """Load configuration (when not given) and return a ready :class:`PortfolioService`.

    Raises:
        StoreUnavailableError: If the SQLite database cannot be opened.
        LedgerSchemaError: If the stored schema is newer than this release or
            cannot be migrated.
    """

    config = config or load_config()

    store = SQLiteLedgerStore(
        db_path=config.store.db_path,
        busy_timeout_seconds=config.store.busy_timeout_seconds,
        auto_migrate_schema=config.store.auto_migrate_schema,
    )
    cache = build_cache(
        config.cache.backend,
        redis_url=config.cache.redis_url,
        key_prefix=config.cache.key_prefix,
    )
    metrics = LedgerMetrics()

    logger.info(
        "Portfolio service ready (store=%s, cache=%s, pricing=%s)",
        config.store.db_path,
        config.cache.backend,
        config.pricing.provider,
        extra={"event": "service_bootstrapped"},
    )

    return PortfolioService(
        store=store,
        pricing=build_pricing_gateway(config, cache),
        cache=cache,
        metrics=metrics,
        config=config,
    )


__all__ = [
    "build_portfolio_service",
    "build_pricing_gateway",
    "AppConfig",
    "PortfolioService",
]
