from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from portfolio_ledger.connection.pricing import COINGECKO_API_URL, DEFAULT_ASSET_IDS


@dataclass
class StoreConfig:
    db_path: str = "ledger.db"
    busy_timeout_seconds: float = 5.0
    auto_migrate_schema: bool = True


@dataclass
class CacheConfig:
    backend: str = "memory"  # redis | memory | none
    redis_url: Optional[str] = None
    key_prefix: str = ""
    balances_ttl_seconds: int = 60
    summary_ttl_seconds: int = 30
    price_ttl_seconds: int = 30


@dataclass
class PricingConfig:
    provider: str = "static"  # static | coingecko
    api_url: str = COINGECKO_API_URL
    vs_currency: str = "usd"
    asset_ids: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ASSET_IDS))
    # Empty means the built-in static table for the static provider.
    fallback_prices: Dict[str, str] = field(default_factory=dict)
    default_price: Optional[str] = "1"
    request_timeout_seconds: float = 10.0
    calls_per_second: float = 0.5
    missing_price_policy: str = "zero"  # zero | error


@dataclass
class AnalyticsConfig:
    risk_free_rate: str = "0.02"
    periods_per_year: int = 252
    returns_period: str = "day"
    returns_points: int = 30


@dataclass
class AppConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
