"""Shared fixtures for ledger tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from portfolio_ledger.connection.cache import InMemoryCache
from portfolio_ledger.connection.pricing import StaticPricingGateway
from portfolio_ledger.ledger.manager import PortfolioService
from portfolio_ledger.ledger.models import Transaction, TransactionKind, TransactionStatus
from portfolio_ledger.ledger.store import SQLiteLedgerStore
from portfolio_ledger.metrics import LedgerMetrics

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_tx(
    kind: str,
    amount,
    price=None,
    *,
    asset: str = "BTC",
    user_id: str = "user-1",
    minutes: int = 0,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    **kwargs,
) -> Transaction:
    return Transaction(
        user_id=user_id,
        asset=asset,
        kind=TransactionKind(kind),
        amount=Decimal(str(amount)),
        price=Decimal(str(price)) if price is not None else None,
        status=status,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture
def store(tmp_path):
    return SQLiteLedgerStore(str(tmp_path / "ledger.db"))


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def metrics():
    return LedgerMetrics(max_errors=10)


@pytest.fixture
def pricing():
    return StaticPricingGateway(
        prices={"BTC": "60000", "ETH": "3000", "USDC": "1"},
        default_price=None,
    )


@pytest.fixture
def service(store, pricing, cache, metrics):
    return PortfolioService(store=store, pricing=pricing, cache=cache, metrics=metrics)
