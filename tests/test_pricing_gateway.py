# tests/test_pricing_gateway.py

import logging
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from portfolio_ledger.connection.cache import InMemoryCache, price_key
from portfolio_ledger.connection.exceptions import PriceNotFoundError, PricingUnavailableError
from portfolio_ledger.connection.pricing import (
    CachedPricingGateway,
    CoinGeckoPricingGateway,
    PricingGateway,
    StaticPricingGateway,
    resolve_prices,
)
from portfolio_ledger.connection.rate_limiter import RateLimiter


@pytest.fixture
def gateway():
    return CoinGeckoPricingGateway(
        api_url="https://prices.test/api/v3/",
        calls_per_second=100,  # High limit for tests
        fallback_prices={"XLM": "0.10"},
    )


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.raise_for_status.return_value = None
    return response


def test_static_gateway_uses_table_and_default():
    gateway = StaticPricingGateway(prices={"BTC": "60000", "BAD": "-1"}, default_price="2")

    prices = gateway.get_prices(["BTC", "BAD", "DOGE"])

    assert prices == {"BTC": Decimal("60000"), "BAD": Decimal("2"), "DOGE": Decimal("2")}


def test_static_gateway_without_default_omits_unknown_assets():
    gateway = StaticPricingGateway(default_price=None)

    prices = gateway.get_prices(["BTC", "DOGE"])

    assert prices == {"BTC": Decimal("45000")}


def test_coingecko_request_maps_assets_to_ids(gateway):
    with patch.object(gateway.session, "get") as mock_get:
        mock_get.return_value = _response(
            payload={"bitcoin": {"usd": 60000.5}, "ethereum": {"usd": "3000"}}
        )

        prices = gateway.get_prices(["ETH", "BTC", "BTC"])

        assert prices == {"BTC": Decimal("60000.5"), "ETH": Decimal("3000")}
        mock_get.assert_called_once()
        args, kwargs = mock_get.call_args
        assert args[0] == "https://prices.test/api/v3/simple/price"
        assert kwargs["params"] == {"ids": "bitcoin,ethereum", "vs_currencies": "usd"}
        assert kwargs["timeout"] == gateway.request_timeout_seconds


def test_coingecko_unknown_assets_use_fallbacks(gateway):
    with patch.object(gateway.session, "get") as mock_get:
        mock_get.return_value = _response(payload={"bitcoin": {"usd": 0}})

        prices = gateway.get_prices(["BTC", "XLM", "DOGE"])

        # zero prices are not prices; XLM is only served from the fallback table
        assert prices == {"XLM": Decimal("0.10")}


def test_coingecko_skips_request_when_no_asset_is_mapped(gateway):
    with patch.object(gateway.session, "get") as mock_get:
        assert gateway.get_prices(["DOGE"]) == {}
        mock_get.assert_not_called()


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_coingecko_http_errors_are_unavailable(gateway, status_code):
    with patch.object(gateway.session, "get") as mock_get:
        mock_get.return_value = _response(status_code=status_code)

        with pytest.raises(PricingUnavailableError):
            gateway.get_prices(["BTC"])


@pytest.mark.parametrize(
    "error",
    [requests.exceptions.Timeout("slow"), requests.exceptions.ConnectionError("refused")],
)
def test_coingecko_network_errors_are_unavailable(gateway, error):
    with patch.object(gateway.session, "get", side_effect=error):
        with pytest.raises(PricingUnavailableError):
            gateway.get_prices(["BTC"])


def test_coingecko_outage_falls_back_to_configured_prices(gateway, caplog):
    caplog.set_level(logging.WARNING)
    with patch.object(gateway.session, "get", side_effect=requests.exceptions.ConnectionError("down")):
        prices = gateway.get_prices(["BTC", "XLM"])

    assert prices == {"XLM": Decimal("0.10")}
    assert "price_fetch_failed" in [getattr(r, "event", None) for r in caplog.records]


def test_coingecko_outage_through_empty_cache_serves_fallbacks():
    source = CoinGeckoPricingGateway(
        calls_per_second=100,
        fallback_prices={"USDC": "1", "BTC": "50000"},
    )
    gateway = CachedPricingGateway(source, InMemoryCache())

    with patch.object(source.session, "get", side_effect=requests.exceptions.ConnectionError("down")):
        prices = gateway.get_prices(["USDC", "BTC", "ETH"])

    assert prices == {"USDC": Decimal("1"), "BTC": Decimal("50000")}


def test_coingecko_malformed_payload_is_unavailable(gateway):
    with patch.object(gateway.session, "get") as mock_get:
        bad_json = _response()
        bad_json.json.side_effect = ValueError("no json")
        mock_get.return_value = bad_json
        with pytest.raises(PricingUnavailableError):
            gateway.get_prices(["BTC"])

        mock_get.return_value = _response(payload=["not", "an", "object"])
        with pytest.raises(PricingUnavailableError):
            gateway.get_prices(["BTC"])


def test_coingecko_waits_on_rate_limiter():
    limiter = MagicMock(spec=RateLimiter)
    gateway = CoinGeckoPricingGateway(rate_limiter=limiter)

    with patch.object(gateway.session, "get") as mock_get:
        mock_get.return_value = _response(payload={"bitcoin": {"usd": 1}})
        gateway.get_prices(["BTC"])

    limiter.wait.assert_called_once()


def test_cached_gateway_serves_hits_and_stores_misses():
    inner = MagicMock(spec=PricingGateway)
    inner.get_prices.return_value = {"ETH": Decimal("3000")}
    cache = InMemoryCache()
    cache.set_with_ttl(price_key("BTC"), "60000", 30)

    prices = CachedPricingGateway(inner, cache).get_prices(["BTC", "ETH"])

    assert prices == {"BTC": Decimal("60000"), "ETH": Decimal("3000")}
    inner.get_prices.assert_called_once_with(["ETH"])
    assert cache.get(price_key("ETH")) == "3000"


def test_cached_gateway_returns_partial_prices_when_source_fails(caplog):
    caplog.set_level(logging.WARNING)
    inner = MagicMock(spec=PricingGateway)
    inner.get_prices.side_effect = PricingUnavailableError("down")
    cache = InMemoryCache()
    cache.set_with_ttl(price_key("BTC"), "60000", 30)
    gateway = CachedPricingGateway(inner, cache)

    assert gateway.get_prices(["BTC", "ETH"]) == {"BTC": Decimal("60000")}
    assert "price_fetch_failed" in [getattr(r, "event", None) for r in caplog.records]

    with pytest.raises(PricingUnavailableError):
        gateway.get_prices(["ETH"])


def test_resolve_prices_zero_policy_reports_missing(caplog):
    caplog.set_level(logging.WARNING)
    gateway = StaticPricingGateway(prices={"BTC": "60000"}, default_price=None)

    prices, missing = resolve_prices(gateway, ["BTC", "DOGE"], "zero")

    assert prices == {"BTC": Decimal("60000")}
    assert missing == ["DOGE"]
    assert "price_missing" in [getattr(r, "event", None) for r in caplog.records]


def test_resolve_prices_error_policy_raises():
    gateway = StaticPricingGateway(prices={"BTC": "60000"}, default_price=None)

    with pytest.raises(PriceNotFoundError) as excinfo:
        resolve_prices(gateway, ["DOGE", "BTC", "ADA"], "error")

    assert excinfo.value.assets == ["ADA", "DOGE"]


def test_resolve_prices_short_circuits_and_validates_policy():
    gateway = MagicMock(spec=PricingGateway)

    assert resolve_prices(gateway, [], "zero") == ({}, [])
    gateway.get_prices.assert_not_called()

    with pytest.raises(ValueError):
        resolve_prices(gateway, ["BTC"], "ignore")
