from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]

from portfolio_ledger.config_models import (
    AnalyticsConfig,
    AppConfig,
    CacheConfig,
    PricingConfig,
    StoreConfig,
)
from portfolio_ledger.ledger.models import PERIOD_DAYS
from portfolio_ledger.ledger.numeric import to_optional_decimal

ALLOWED_ENVS = {"dev", "staging", "prod"}
DEFAULT_ENV = "dev"

ENV_VAR = "PORTFOLIO_LEDGER_ENV"
DB_PATH_ENV_VAR = "PORTFOLIO_LEDGER_DB_PATH"
REDIS_URL_ENV_VAR = "PORTFOLIO_LEDGER_REDIS_URL"

CACHE_BACKENDS = {"redis", "memory", "none"}
PRICING_PROVIDERS = {"static", "coingecko"}


def get_config_dir() -> Path:
    """
    Returns the OS-specific configuration directory for the ledger using appdirs.
    """
    return Path(appdirs.user_config_dir("portfolio_ledger"))


def get_default_db_path() -> str:
    """
    Default SQLite location inside the user-specific data directory.
    """
    return str(Path(appdirs.user_data_dir("portfolio_ledger")) / "ledger.db")


def _deep_merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Any:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(
    config_path: Optional[Path] = None, env: Optional[str] = None
) -> AppConfig:
    """
    Loads the ledger configuration from the default location or a specified path.

    Layers, lowest first: ``config.yaml``, ``config.<env>.yaml`` next to it,
    then the ``PORTFOLIO_LEDGER_DB_PATH`` and ``PORTFOLIO_LEDGER_REDIS_URL``
    environment variables. Invalid sections or values fall back to defaults
    with a warning.
    """
    logger = logging.getLogger(__name__)

    if config_path is None:
        config_path = get_config_dir() / "config.yaml"

    config_path = Path(config_path).expanduser()

    def _warn(message: str, event: str, *args: Any) -> None:
        logger.warning(message, *args, extra={"event": event, "config_path": str(config_path)})

    def _section(name: str) -> Dict[str, Any]:
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            _warn(
                "%s config is not a mapping; using defaults",
                f"config_invalid_{name}",
                name.capitalize(),
            )
            return {}
        return data

    def _positive_number(data: Dict[str, Any], key: str, default: Any, field_name: str) -> Any:
        value = data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            _warn("%s is invalid; using default", f"config_invalid_{field_name}", field_name)
            return default
        return value

    def _choice(data: Dict[str, Any], key: str, default: str, allowed: set, field_name: str) -> str:
        value = data.get(key, default)
        if not isinstance(value, str) or value.lower() not in allowed:
            _warn(
                "%s must be one of %s; using %r",
                f"config_invalid_{field_name}",
                field_name,
                ", ".join(sorted(allowed)),
                default,
            )
            return default
        return value.lower()

    def _mapping(data: Dict[str, Any], key: str, default: Dict[str, Any], field_name: str) -> Dict[str, Any]:
        value = data.get(key, default)
        if not isinstance(value, dict):
            _warn("%s should be a mapping; using defaults", f"config_invalid_{field_name}", field_name)
            return dict(default)
        return value

    initial_env = env if env is not None else os.environ.get(ENV_VAR)
    if initial_env is None:
        effective_env = DEFAULT_ENV
    elif initial_env not in ALLOWED_ENVS:
        _warn("Invalid environment '%s'; defaulting to '%s'", "config_invalid_env", initial_env, DEFAULT_ENV)
        effective_env = DEFAULT_ENV
    else:
        effective_env = initial_env

    if not config_path.exists():
        logger.info(
            "Configuration file not found; using defaults",
            extra={"event": "config_missing_file", "config_path": str(config_path)},
        )
        raw_config: Dict[str, Any] = {}
    else:
        raw_config = _read_yaml(config_path)

    if not isinstance(raw_config, dict):
        _warn("Configuration file is not a mapping; falling back to defaults", "config_invalid_format")
        raw_config = {}

    env_config_path = config_path.parent / f"config.{effective_env}.yaml"
    if env_config_path.exists():
        env_config = _read_yaml(env_config_path)
        if not isinstance(env_config, dict):
            logger.warning(
                "Environment config is not a mapping; skipping env overlay",
                extra={"event": "config_invalid_env_file", "config_path": str(env_config_path)},
            )
            env_config = {}
        raw_config = _deep_merge_dicts(raw_config, env_config)

    # Store
    store_data = _section("store")
    default_store = StoreConfig()
    db_path = store_data.get("db_path") or get_default_db_path()
    store_config = StoreConfig(
        db_path=str(Path(os.environ.get(DB_PATH_ENV_VAR) or db_path).expanduser()),
        busy_timeout_seconds=_positive_number(
            store_data, "busy_timeout_seconds", default_store.busy_timeout_seconds, "busy_timeout_seconds"
        ),
        auto_migrate_schema=bool(store_data.get("auto_migrate_schema", default_store.auto_migrate_schema)),
    )

    # Cache
    cache_data = _section("cache")
    default_cache = CacheConfig()
    redis_url = os.environ.get(REDIS_URL_ENV_VAR) or cache_data.get("redis_url")
    backend = _choice(cache_data, "backend", default_cache.backend, CACHE_BACKENDS, "cache_backend")
    if backend == "redis" and not redis_url:
        _warn("Redis cache backend selected without a redis_url; using in-memory cache", "config_missing_redis_url")
        backend = "memory"
    cache_config = CacheConfig(
        backend=backend,
        redis_url=redis_url,
        key_prefix=str(cache_data.get("key_prefix", default_cache.key_prefix) or ""),
        balances_ttl_seconds=int(
            _positive_number(cache_data, "balances_ttl_seconds", default_cache.balances_ttl_seconds, "balances_ttl_seconds")
        ),
        summary_ttl_seconds=int(
            _positive_number(cache_data, "summary_ttl_seconds", default_cache.summary_ttl_seconds, "summary_ttl_seconds")
        ),
        price_ttl_seconds=int(
            _positive_number(cache_data, "price_ttl_seconds", default_cache.price_ttl_seconds, "price_ttl_seconds")
        ),
    )

    # Pricing
    pricing_data = _section("pricing")
    default_pricing = PricingConfig()
    fallback_prices = _mapping(pricing_data, "fallback_prices", {}, "fallback_prices")
    cleaned_fallbacks: Dict[str, str] = {}
    for asset, value in fallback_prices.items():
        price = to_optional_decimal(value)
        if price is None or price <= 0:
            _warn("Ignoring invalid fallback price for %s", "config_invalid_fallback_price", asset)
            continue
        cleaned_fallbacks[str(asset)] = str(price)

    default_price = pricing_data.get("default_price", default_pricing.default_price)
    if default_price is not None:
        parsed_default = to_optional_decimal(default_price)
        if parsed_default is None or parsed_default <= 0:
            _warn("default_price is invalid; using default", "config_invalid_default_price")
            default_price = default_pricing.default_price
        else:
            default_price = str(parsed_default)

    pricing_config = PricingConfig(
        provider=_choice(pricing_data, "provider", default_pricing.provider, PRICING_PROVIDERS, "pricing_provider"),
        api_url=str(pricing_data.get("api_url", default_pricing.api_url)),
        vs_currency=str(pricing_data.get("vs_currency", default_pricing.vs_currency)).lower(),
        asset_ids={
            str(k): str(v)
            for k, v in _mapping(pricing_data, "asset_ids", default_pricing.asset_ids, "asset_ids").items()
        },
        fallback_prices=cleaned_fallbacks,
        default_price=default_price,
        request_timeout_seconds=_positive_number(
            pricing_data, "request_timeout_seconds", default_pricing.request_timeout_seconds, "request_timeout_seconds"
        ),
        calls_per_second=_positive_number(
            pricing_data, "calls_per_second", default_pricing.calls_per_second, "calls_per_second"
        ),
        missing_price_policy=_choice(
            pricing_data,
            "missing_price_policy",
            default_pricing.missing_price_policy,
            {"zero", "error"},
            "missing_price_policy",
        ),
    )

    # Analytics
    analytics_data = _section("analytics")
    default_analytics = AnalyticsConfig()
    risk_free_rate = to_optional_decimal(analytics_data.get("risk_free_rate", default_analytics.risk_free_rate))
    if risk_free_rate is None or risk_free_rate < 0:
        _warn("risk_free_rate is invalid; using default", "config_invalid_risk_free_rate")
        risk_free_rate = to_optional_decimal(default_analytics.risk_free_rate)

    returns_points = analytics_data.get("returns_points", default_analytics.returns_points)
    if isinstance(returns_points, bool) or not isinstance(returns_points, int) or returns_points < 2:
        _warn("returns_points is invalid; using default", "config_invalid_returns_points")
        returns_points = default_analytics.returns_points

    periods_per_year = analytics_data.get("periods_per_year", default_analytics.periods_per_year)
    if isinstance(periods_per_year, bool) or not isinstance(periods_per_year, int) or periods_per_year < 1:
        _warn("periods_per_year is invalid; using default", "config_invalid_periods_per_year")
        periods_per_year = default_analytics.periods_per_year

    analytics_config = AnalyticsConfig(
        risk_free_rate=str(risk_free_rate),
        periods_per_year=periods_per_year,
        returns_period=_choice(
            analytics_data, "returns_period", default_analytics.returns_period, set(PERIOD_DAYS), "returns_period"
        ),
        returns_points=returns_points,
    )

    return AppConfig(
        store=store_config,
        cache=cache_config,
        pricing=pricing_config,
        analytics=analytics_config,
    )
