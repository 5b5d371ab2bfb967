# src/portfolio_ledger/connection/pricing.py

import abc
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import requests

from portfolio_ledger.ledger.numeric import to_optional_decimal
from portfolio_ledger.logging_config import structured_log_extra

from .cache import Cache, price_key
from .exceptions import PriceNotFoundError, PricingUnavailableError
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

COINGECKO_API_URL = "https://api.coingecko.com/api/v3"

DEFAULT_ASSET_IDS: Dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "XLM": "stellar",
    "USDC": "usd-coin",
    "ADA": "cardano",
}

DEFAULT_STATIC_PRICES: Dict[str, Decimal] = {
    "XLM": Decimal("0.12"),
    "USDC": Decimal("1"),
    "BTC": Decimal("45000"),
    "ETH": Decimal("3000"),
}

MISSING_PRICE_POLICIES = ("zero", "error")


def _clean_prices(raw: Mapping[str, object]) -> Dict[str, Decimal]:
    prices: Dict[str, Decimal] = {}
    for asset, value in raw.items():
        price = to_optional_decimal(value)
        if price is not None and price > 0:
            prices[asset] = price
    return prices


class PricingGateway(abc.ABC):
    @abc.abstractmethod
    def get_prices(self, assets: Iterable[str]) -> Dict[str, Decimal]:
        """Return current prices for ``assets``.

        Assets the source does not know are omitted. Raises
        :class:`PricingUnavailableError` when the source cannot be reached.
        """
        pass


class StaticPricingGateway(PricingGateway):
    """Fixed price table with an optional default for unknown assets."""

    def __init__(
        self,
        prices: Optional[Mapping[str, object]] = None,
        default_price: Optional[object] = Decimal("1"),
    ):
        self.prices = _clean_prices(DEFAULT_STATIC_PRICES if prices is None else prices)
        self.default_price = to_optional_decimal(default_price)

    def get_prices(self, assets: Iterable[str]) -> Dict[str, Decimal]:
        result: Dict[str, Decimal] = {}
        for asset in assets:
            if asset in self.prices:
                result[asset] = self.prices[asset]
            elif self.default_price is not None and self.default_price > 0:
                result[asset] = self.default_price
        return result


class CoinGeckoPricingGateway(PricingGateway):
    """Spot prices from the CoinGecko ``simple/price`` endpoint."""

    def __init__(
        self,
        api_url: str = COINGECKO_API_URL,
        vs_currency: str = "usd",
        asset_ids: Optional[Mapping[str, str]] = None,
        fallback_prices: Optional[Mapping[str, object]] = None,
        request_timeout_seconds: float = 10.0,
        calls_per_second: float = 0.5,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.vs_currency = vs_currency.lower()
        self.asset_ids = dict(DEFAULT_ASSET_IDS if asset_ids is None else asset_ids)
        self.fallback_prices = _clean_prices(fallback_prices or {})
        self.request_timeout_seconds = request_timeout_seconds
        self.rate_limiter = rate_limiter or RateLimiter(calls_per_second)

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": "portfolio-ledger/0.1.0"})

    def _request(self, ids: List[str]) -> Dict[str, Dict[str, object]]:
        self.rate_limiter.wait()
        url = f"{self.api_url}/simple/price"
        params = {"ids": ",".join(ids), "vs_currencies": self.vs_currency}

        try:
            response = self.session.get(url, params=params, timeout=self.request_timeout_seconds)

            if response.status_code == 429:
                raise PricingUnavailableError("Price source rate limit exceeded")

            if 500 <= response.status_code < 600:
                raise PricingUnavailableError(f"Price source error: HTTP {response.status_code}")

            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.Timeout as e:
            raise PricingUnavailableError(f"Price request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PricingUnavailableError(f"Network Error: {e}") from e
        except ValueError as e:
            raise PricingUnavailableError(f"Malformed price response: {e}") from e

        if not isinstance(payload, dict):
            raise PricingUnavailableError("Malformed price response: expected an object")
        return payload

    def get_prices(self, assets: Iterable[str]) -> Dict[str, Decimal]:
        assets = list(dict.fromkeys(assets))
        id_to_asset = {self.asset_ids[a]: a for a in assets if a in self.asset_ids}

        prices: Dict[str, Decimal] = {}
        failure: Optional[PricingUnavailableError] = None
        if id_to_asset:
            try:
                payload = self._request(sorted(id_to_asset))
            except PricingUnavailableError as exc:
                failure = exc
                payload = {}
                logger.warning(
                    "Price source unavailable, using fallback prices: %s", exc,
                    extra=structured_log_extra(event="price_fetch_failed", assets=sorted(id_to_asset.values())),
                )
            for coin_id, asset in id_to_asset.items():
                quote = payload.get(coin_id) or {}
                price = to_optional_decimal(quote.get(self.vs_currency)) if isinstance(quote, dict) else None
                if price is not None and price > 0:
                    prices[asset] = price

        for asset in assets:
            if asset not in prices and asset in self.fallback_prices:
                prices[asset] = self.fallback_prices[asset]

        if failure is not None and not prices:
            raise failure
        return prices


class CachedPricingGateway(PricingGateway):
    """Serves prices from ``price:{asset}`` cache entries, fetching the rest from ``inner``."""

    def __init__(self, inner: PricingGateway, cache: Cache, ttl_seconds: int = 30):
        self.inner = inner
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def get_prices(self, assets: Iterable[str]) -> Dict[str, Decimal]:
        prices: Dict[str, Decimal] = {}
        pending: List[str] = []
        for asset in dict.fromkeys(assets):
            cached = to_optional_decimal(self.cache.get(price_key(asset)))
            if cached is not None and cached > 0:
                prices[asset] = cached
            else:
                pending.append(asset)

        if not pending:
            return prices

        try:
            fetched = self.inner.get_prices(pending)
        except PricingUnavailableError as exc:
            logger.warning(
                "Price source unavailable for %s: %s", ", ".join(pending), exc,
                extra=structured_log_extra(event="price_fetch_failed", assets=pending),
            )
            if not prices:
                raise
            return prices

        for asset, price in fetched.items():
            prices[asset] = price
            self.cache.set_with_ttl(price_key(asset), str(price), self.ttl_seconds)
        return prices


def resolve_prices(
    gateway: PricingGateway, assets: Iterable[str], policy: str = "zero"
) -> Tuple[Dict[str, Decimal], List[str]]:
    """Fetch prices and apply the missing-price policy.

    Returns ``(prices, missing_assets)``. Under the ``"error"`` policy any
    missing asset raises :class:`PriceNotFoundError` instead.
    """

    if policy not in MISSING_PRICE_POLICIES:
        raise ValueError(f"Unknown missing price policy: {policy}")

    assets = list(dict.fromkeys(assets))
    if not assets:
        return {}, []

    prices = gateway.get_prices(assets)
    missing = [asset for asset in assets if asset not in prices]
    if missing:
        logger.warning(
            "No price for %s", ", ".join(missing),
            extra=structured_log_extra(event="price_missing", assets=missing, policy=policy),
        )
        if policy == "error":
            raise PriceNotFoundError(missing)
    return prices, missing
