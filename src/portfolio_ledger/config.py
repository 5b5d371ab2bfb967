from __future__ import annotations

# Re-export loader helpers
from .config_loader import (
    ALLOWED_ENVS,
    DB_PATH_ENV_VAR,
    ENV_VAR,
    REDIS_URL_ENV_VAR,
    get_config_dir,
    get_default_db_path,
    load_config,
)

# Re-export config models
from .config_models import (
    AnalyticsConfig,
    AppConfig,
    CacheConfig,
    PricingConfig,
    StoreConfig,
)

__all__ = [
    # models
    "StoreConfig",
    "CacheConfig",
    "PricingConfig",
    "AnalyticsConfig",
    "AppConfig",
    # loader
    "ALLOWED_ENVS",
    "ENV_VAR",
    "DB_PATH_ENV_VAR",
    "REDIS_URL_ENV_VAR",
    "get_config_dir",
    "get_default_db_path",
    "load_config",
]
