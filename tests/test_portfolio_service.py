# tests/test_portfolio_service.py

import logging
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import BASE_TIME, make_tx
from portfolio_ledger.config_models import AppConfig
from portfolio_ledger.connection.cache import balances_key, summary_key
from portfolio_ledger.connection.exceptions import PriceNotFoundError, PricingUnavailableError
from portfolio_ledger.connection.pricing import CachedPricingGateway, CoinGeckoPricingGateway, PricingGateway
from portfolio_ledger.ledger.exceptions import (
    BalanceNotFoundError,
    InvalidTransactionError,
    TransactionNotFoundError,
)
from portfolio_ledger.ledger.manager import PortfolioService
from portfolio_ledger.ledger.models import TransactionFilters, TransactionKind

CENT = Decimal("0.01")


def _seed_two_assets(service):
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 40000))
    service.record_completed_transaction("user-1", make_tx("BUY", 10, 2500, asset="ETH", minutes=1))


def test_record_and_read_back_balance(service):
    tx = make_tx("DEPOSIT", 250, 1, asset="USDC")
    service.record_completed_transaction("user-1", tx)

    balance = service.get_balance("user-1", "USDC")
    assert balance.available == Decimal("250")
    assert balance.average_cost == Decimal("1")
    assert service.get_transaction(tx.id).kind is TransactionKind.DEPOSIT


def test_record_rejects_transaction_for_another_user(service, store):
    with pytest.raises(InvalidTransactionError):
        service.record_completed_transaction("user-2", make_tx("BUY", 1, 100))

    assert store.count_transactions("user-1") == 0


def test_missing_lookups_raise_not_found(service):
    with pytest.raises(BalanceNotFoundError):
        service.get_balance("user-1", "BTC")
    with pytest.raises(TransactionNotFoundError):
        service.get_transaction("does-not-exist")


def test_empty_portfolio_summary(service):
    summary = service.get_portfolio_summary("user-1")

    assert summary.total_value == 0
    assert summary.total_pnl == 0
    assert summary.allocation == []
    assert summary.diversification_score == 0
    assert summary.sharpe_ratio is None
    assert summary.holdings.best_performer is None
    assert summary.holdings.total_assets == 0


def test_portfolio_summary_values_holdings(service):
    _seed_two_assets(service)

    summary = service.get_portfolio_summary("user-1")

    assert summary.total_value == Decimal("90000")
    assert summary.total_pnl == Decimal("25000")
    assert summary.total_pnl_percentage.quantize(CENT) == Decimal("38.46")
    assert [item.asset for item in summary.allocation] == ["BTC", "ETH"]
    assert summary.allocation[0].percentage.quantize(CENT) == Decimal("66.67")
    assert summary.allocation[1].color == "#8b5cf6"
    assert summary.diversification_score.quantize(CENT) == Decimal("88.89")
    # Both trades fall on the same day, so there are no returns to score.
    assert summary.sharpe_ratio is None
    assert summary.holdings.best_performer == "BTC"
    assert summary.holdings.worst_performer == "ETH"
    assert summary.holdings.profitable_assets == 2
    assert summary.unvalued_assets == []


def test_summary_lists_unpriced_assets(service, caplog):
    caplog.set_level(logging.WARNING)
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 40000))
    service.record_completed_transaction("user-1", make_tx("REWARD", 100, asset="DOGE", minutes=1))

    summary = service.get_portfolio_summary("user-1")

    assert summary.total_value == Decimal("60000")
    assert summary.unvalued_assets == ["DOGE"]
    assert [item.asset for item in summary.allocation] == ["BTC"]
    assert "price_missing" in [getattr(r, "event", None) for r in caplog.records]


def test_error_policy_rejects_unpriced_assets(store, pricing, cache, metrics):
    config = AppConfig()
    config.pricing.missing_price_policy = "error"
    service = PortfolioService(store=store, pricing=pricing, cache=cache, metrics=metrics, config=config)
    service.record_completed_transaction("user-1", make_tx("REWARD", 100, asset="DOGE"))

    with pytest.raises(PriceNotFoundError) as excinfo:
        service.get_portfolio_summary("user-1")

    assert excinfo.value.assets == ["DOGE"]


def test_summary_is_cached_until_the_next_update(service, cache):
    _seed_two_assets(service)
    first = service.get_portfolio_summary("user-1")
    assert isinstance(cache.get(summary_key("user-1")), dict)

    real_pricing = service.pricing
    service.pricing = MagicMock(spec=PricingGateway)
    cached = service.get_portfolio_summary("user-1")

    service.pricing.get_prices.assert_not_called()
    assert cached.total_value == first.total_value
    assert cached.generated_at == first.generated_at
    assert [item.asset for item in cached.allocation] == ["BTC", "ETH"]

    service.pricing = real_pricing
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 50000, minutes=2))
    assert cache.get(summary_key("user-1")) is None
    assert service.get_portfolio_summary("user-1").total_value == Decimal("150000")


def test_asset_balances_include_pnl(service, cache):
    _seed_two_assets(service)

    views = {view.asset: view for view in service.get_asset_balances("user-1")}

    btc = views["BTC"]
    assert btc.current_price == Decimal("60000")
    assert btc.current_value == Decimal("60000")
    assert btc.unrealized_pnl == Decimal("20000")
    assert btc.unrealized_pnl_percentage == Decimal("50")
    assert btc.valuation_status == "valued"
    assert views["ETH"].unrealized_pnl == Decimal("5000")
    assert isinstance(cache.get(balances_key("user-1")), list)


def test_pricing_outage_is_counted_and_raised(store, cache, metrics, caplog):
    caplog.set_level(logging.ERROR)
    pricing = MagicMock(spec=PricingGateway)
    pricing.get_prices.side_effect = PricingUnavailableError("price source down")
    service = PortfolioService(store=store, pricing=pricing, cache=cache, metrics=metrics)
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 40000))

    with pytest.raises(PricingUnavailableError):
        service.get_asset_balances("user-1")

    assert metrics.snapshot()["pricing_errors"] == 1
    assert "price_fetch_failed" in [getattr(r, "event", None) for r in caplog.records]


def test_summary_uses_fallback_prices_during_source_outage(store, cache, metrics):
    source = CoinGeckoPricingGateway(calls_per_second=100, fallback_prices={"USDC": "1", "BTC": "50000"})
    pricing = CachedPricingGateway(source, cache)
    service = PortfolioService(store=store, pricing=pricing, cache=cache, metrics=metrics)
    service.record_completed_transaction("user-1", make_tx("DEPOSIT", 1000, 1, asset="USDC"))
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 40000, minutes=1))

    with patch.object(source.session, "get", side_effect=requests.exceptions.ConnectionError("down")):
        summary = service.get_portfolio_summary("user-1")

    assert summary.total_value == Decimal("51000")
    assert summary.unvalued_assets == []
    assert metrics.snapshot()["pricing_errors"] == 0


def test_transaction_history_pages_newest_first(service):
    txs = [make_tx("BUY", 1, 100 + i, minutes=i) for i in range(5)]
    for tx in txs:
        service.record_completed_transaction("user-1", tx)

    page = service.get_transaction_history("user-1", TransactionFilters(limit=2, offset=1))

    assert page.total == 5
    assert page.limit == 2
    assert page.offset == 1
    assert [tx.id for tx in page.items] == [txs[3].id, txs[2].id]


def test_transaction_history_filters_and_clamps(service):
    service.record_completed_transaction("user-1", make_tx("BUY", 2, 100))
    service.record_completed_transaction("user-1", make_tx("SELL", 1, 120, minutes=1))
    service.record_completed_transaction("user-1", make_tx("DEPOSIT", 5, 1, asset="USDC", minutes=2))

    sells = service.get_transaction_history("user-1", TransactionFilters(kind=TransactionKind.SELL))
    assert sells.total == 1
    assert sells.items[0].kind is TransactionKind.SELL

    window = service.get_transaction_history(
        "user-1",
        TransactionFilters(start=BASE_TIME + timedelta(minutes=1), end=BASE_TIME + timedelta(minutes=2)),
    )
    assert window.total == 2

    assert service.get_transaction_history("user-1", TransactionFilters(limit=500)).limit == 100
    assert service.get_transaction_history("user-1", TransactionFilters(limit=0)).limit == 1


def test_portfolio_history_buckets_by_day(service):
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 100))
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 200, minutes=24 * 60))
    service.record_completed_transaction("user-1", make_tx("SELL", 1, 300, minutes=48 * 60))

    history = service.get_portfolio_history("user-1", "day", 30)

    assert history.values == [Decimal("100"), Decimal("300"), Decimal("0")]
    assert history.timestamps[0] == BASE_TIME.replace(hour=0)
    assert history.total_return == Decimal("-100")

    assert service.get_portfolio_history("user-1", "day", 2).values == [Decimal("300"), Decimal("0")]


def test_portfolio_history_rejects_unknown_period(service):
    with pytest.raises(ValueError):
        service.get_portfolio_history("user-1", "fortnight")


def test_portfolio_performance_compares_against_cutoff(store, pricing, cache, metrics):
    now = BASE_TIME + timedelta(days=2)
    service = PortfolioService(
        store=store, pricing=pricing, cache=cache, metrics=metrics, clock=lambda: now
    )
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 40000))
    service.record_completed_transaction("user-1", make_tx("BUY", 1, 50000, minutes=47 * 60))

    performance = service.get_portfolio_performance("user-1", "day")

    assert performance.current_value == Decimal("120000")
    assert performance.previous_value == Decimal("40000")
    assert performance.absolute_change == Decimal("80000")
    assert performance.percentage_change == Decimal("200")
    assert performance.period == "day"
