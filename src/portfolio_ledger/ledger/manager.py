# src/portfolio_ledger/ledger/manager.py

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from portfolio_ledger.analytics.aggregator import build_asset_view, calculate_totals, summarize_holdings
from portfolio_ledger.analytics.history import build_portfolio_history, value_delta
from portfolio_ledger.analytics.performance import (
    calculate_diversification_score,
    calculate_performance_metrics,
    calculate_sharpe_ratio,
    returns_from_values,
)
from portfolio_ledger.config_models import AppConfig
from portfolio_ledger.connection.cache import Cache, NullCache, balances_key, summary_key
from portfolio_ledger.connection.exceptions import PricingUnavailableError
from portfolio_ledger.connection.pricing import PricingGateway, resolve_prices
from portfolio_ledger.logging_config import structured_log_extra
from portfolio_ledger.metrics import LedgerMetrics

from .exceptions import BalanceNotFoundError, InvalidTransactionError, TransactionNotFoundError
from .models import (
    PERIOD_DAYS,
    AssetBalanceView,
    Balance,
    PortfolioHistory,
    PortfolioPerformance,
    PortfolioSummary,
    Transaction,
    TransactionFilters,
    TransactionPage,
    TransactionStatus,
    utc_now,
)
from .numeric import ZERO, ledger_context, to_decimal
from .store import LedgerStore
from .updater import BalanceUpdater

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
HISTORY_SAMPLE_FACTOR = 10


def _check_period(period: str) -> str:
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(PERIOD_DAYS)}")
    return period


class PortfolioService:
    """Public read and write operations over one ledger store.

    Writes go through :class:`BalanceUpdater`; reads are served from the
    cache when possible and otherwise recomputed from the store and the
    pricing gateway.
    """

    def __init__(
        self,
        store: LedgerStore,
        pricing: PricingGateway,
        cache: Optional[Cache] = None,
        metrics: Optional[LedgerMetrics] = None,
        config: Optional[AppConfig] = None,
        updater: Optional[BalanceUpdater] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or AppConfig()
        self.store = store
        self.pricing = pricing
        self.cache = cache or NullCache()
        self.metrics = metrics or LedgerMetrics()
        self.updater = updater or BalanceUpdater(store, cache=self.cache, metrics=self.metrics)
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes

    def record_completed_transaction(self, user_id: str, transaction: Transaction) -> Balance:
        """Apply a completed transaction to the user's balance for its asset."""

        if transaction.user_id != user_id:
            raise InvalidTransactionError(
                f"Transaction {transaction.id} belongs to user {transaction.user_id}, not {user_id}"
            )
        return self.updater.apply(transaction)

    # ------------------------------------------------------------------
    # Point lookups

    def get_balance(self, user_id: str, asset: str) -> Balance:
        balance = self.store.get_balance(user_id, asset)
        if balance is None:
            raise BalanceNotFoundError(user_id, asset)
        return balance

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    # ------------------------------------------------------------------
    # Balances and valuation

    def _load_balances(self, user_id: str) -> List[Balance]:
        cached = self.cache.get(balances_key(user_id))
        if isinstance(cached, list):
            return [Balance.from_dict(item) for item in cached]

        balances = self.store.get_balances(user_id)
        self.cache.set_with_ttl(
            balances_key(user_id),
            [balance.to_dict() for balance in balances],
            self.config.cache.balances_ttl_seconds,
        )
        return balances

    def _prices(self, user_id: str, assets: Iterable[str]) -> Tuple[Dict[str, Decimal], List[str]]:
        try:
            return resolve_prices(self.pricing, assets, self.config.pricing.missing_price_policy)
        except PricingUnavailableError as exc:
            self.metrics.record_pricing_error(str(exc))
            logger.error(
                "Pricing unavailable for every held asset: %s", exc,
                extra=structured_log_extra(event="price_fetch_failed", user_id=user_id),
            )
            raise

    def get_asset_balances(self, user_id: str) -> List[AssetBalanceView]:
        balances = self._load_balances(user_id)
        prices, _ = self._prices(user_id, [b.asset for b in balances if b.total > 0])
        return [build_asset_view(balance, prices) for balance in balances]

    def get_portfolio_summary(self, user_id: str) -> PortfolioSummary:
        cached = self.cache.get(summary_key(user_id))
        if isinstance(cached, dict):
            return PortfolioSummary.from_dict(cached)

        held = [b for b in self._load_balances(user_id) if b.total > 0]
        prices, _ = self._prices(user_id, [b.asset for b in held])

        totals = calculate_totals(held, prices)
        views = [build_asset_view(balance, prices) for balance in held]

        analytics = self.config.analytics
        history = self.get_portfolio_history(
            user_id, analytics.returns_period, analytics.returns_points
        )
        returns = returns_from_values(history.values)
        sharpe = (
            calculate_sharpe_ratio(
                returns,
                risk_free_rate=to_decimal(analytics.risk_free_rate),
                periods_per_year=analytics.periods_per_year,
            )
            if returns
            else None
        )

        summary = PortfolioSummary(
            total_value=totals.total_value,
            total_pnl=totals.total_pnl,
            total_pnl_percentage=totals.total_pnl_percentage,
            allocation=totals.allocation,
            diversification_score=calculate_diversification_score(totals.allocation),
            sharpe_ratio=sharpe,
            holdings=summarize_holdings(views),
            unvalued_assets=totals.unvalued_assets,
            generated_at=self._clock(),
        )

        self.cache.set_with_ttl(
            summary_key(user_id), summary.to_dict(), self.config.cache.summary_ttl_seconds
        )
        return summary

    # ------------------------------------------------------------------
    # History and performance

    def get_transaction_history(
        self, user_id: str, filters: Optional[TransactionFilters] = None
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        limit = min(max(int(filters.limit), 1), MAX_PAGE_SIZE)
        offset = max(int(filters.offset), 0)

        query = dict(
            asset=filters.asset,
            kind=filters.kind,
            status=filters.status,
            since=filters.start,
            until=filters.end,
        )
        items = self.store.get_transactions(user_id, limit=limit, offset=offset, **query)
        total = self.store.count_transactions(user_id, **query)
        return TransactionPage(items=items, total=total, limit=limit, offset=offset)

    def get_portfolio_history(
        self, user_id: str, period: str = "day", points: int = 30
    ) -> PortfolioHistory:
        _check_period(period)
        points = max(int(points), 1)

        recent = self.store.get_transactions(
            user_id,
            status=TransactionStatus.COMPLETED,
            limit=points * HISTORY_SAMPLE_FACTOR,
        )
        recent.reverse()
        return build_portfolio_history(
            recent, period, points, periods_per_year=self.config.analytics.periods_per_year
        )

    def get_portfolio_performance(self, user_id: str, period: str = "day") -> PortfolioPerformance:
        _check_period(period)
        current_value = self.get_portfolio_summary(user_id).total_value

        cutoff = self._clock() - timedelta(days=PERIOD_DAYS[period])
        past = self.store.get_transactions(
            user_id, status=TransactionStatus.COMPLETED, until=cutoff, ascending=True
        )
        with ledger_context():
            previous_value = sum((value_delta(tx) for tx in past), ZERO)

        change = calculate_performance_metrics(current_value, previous_value)
        return PortfolioPerformance(
            current_value=current_value,
            previous_value=previous_value,
            absolute_change=change.absolute_change,
            percentage_change=change.percentage_change,
            period=period,
        )
