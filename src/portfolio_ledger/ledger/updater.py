# src/portfolio_ledger/ledger/updater.py

import logging
from dataclasses import replace
from typing import Callable, Iterable, Optional

from portfolio_ledger.connection.cache import Cache, balances_key, summary_key
from portfolio_ledger.logging_config import structured_log_extra
from portfolio_ledger.metrics import LedgerMetrics

from .cost_basis import average_cost_or_none, calculate_fifo_cost_basis
from .exceptions import (
    ConcurrencyConflictError,
    InvalidTransactionError,
    NegativeBalanceError,
    TransactionAlreadyAppliedError,
)
from .models import Balance, CostBasisResult, Transaction, TransactionStatus, utc_now
from .numeric import ledger_context
from .store import LedgerStore

logger = logging.getLogger(__name__)

CostBasisCalculator = Callable[[Iterable[Transaction]], CostBasisResult]

_REJECTED_STATUSES = {TransactionStatus.FAILED, TransactionStatus.CANCELLED}


class BalanceUpdater:
    """
    Applies completed transactions to balances as one atomic unit.

    Each call loads (or creates) the balance, records the transaction as
    COMPLETED, adjusts the available quantity, replays the full completed
    history through the cost basis calculator and persists the result. The
    store's write transaction is the only lock; a failure at any step rolls
    the whole update back. Cache invalidation happens after commit and is
    best-effort.
    """

    def __init__(
        self,
        store: LedgerStore,
        cache: Optional[Cache] = None,
        metrics: Optional[LedgerMetrics] = None,
        calculator: CostBasisCalculator = calculate_fifo_cost_basis,
    ):
        self.store = store
        self.cache = cache
        self.metrics = metrics
        self.calculator = calculator

    def _validate(self, transaction: Transaction) -> None:
        if not transaction.user_id:
            raise InvalidTransactionError("Transaction is missing a user id")
        if not transaction.asset:
            raise InvalidTransactionError("Transaction is missing an asset")
        if transaction.amount <= 0:
            raise InvalidTransactionError(
                f"Transaction amount must be positive, got {transaction.amount}"
            )
        if transaction.status in _REJECTED_STATUSES:
            raise InvalidTransactionError(
                f"Transaction {transaction.id} has status {transaction.status.value} and cannot be applied"
            )

    def apply(self, transaction: Transaction) -> Balance:
        """Apply ``transaction`` and return the committed balance."""

        self._validate(transaction)
        user_id, asset = transaction.user_id, transaction.asset

        try:
            balance, result, applied = self._apply_in_unit_of_work(transaction)
        except Exception as exc:
            conflict = isinstance(exc, ConcurrencyConflictError)
            if self.metrics is not None:
                self.metrics.record_update_failure(str(exc), conflict=conflict)
            logger.warning(
                "Balance update rolled back: %s", exc,
                extra=structured_log_extra(
                    event="balance_update_failed",
                    user_id=user_id,
                    asset=asset,
                    transaction_id=transaction.id,
                    error_type=type(exc).__name__,
                ),
            )
            raise

        if self.metrics is not None:
            self.metrics.record_update()

        unmatched = result.unmatched_by_transaction.get(applied.id)
        if unmatched is not None and applied.kind.is_outflow:
            if self.metrics is not None:
                self.metrics.record_unmatched_outflow()
            logger.warning(
                "Outflow exceeds queued cost basis lots by %s", unmatched,
                extra=structured_log_extra(
                    event="cost_basis_unmatched_outflow",
                    user_id=user_id,
                    asset=asset,
                    transaction_id=applied.id,
                    unmatched_quantity=str(unmatched),
                ),
            )

        logger.info(
            "Applied %s %s %s", applied.kind.value, applied.amount, asset,
            extra=structured_log_extra(
                event="balance_updated",
                user_id=user_id,
                asset=asset,
                transaction_id=applied.id,
                total=str(balance.total),
            ),
        )

        self._invalidate(user_id)
        return balance

    def _apply_in_unit_of_work(self, transaction: Transaction):
        with self.store.unit_of_work() as uow:
            balance = uow.get_balance(transaction.user_id, transaction.asset)
            if balance is None:
                balance = Balance.zeroed(transaction.user_id, transaction.asset)

            existing = uow.get_transaction(transaction.id)
            if existing is None:
                applied = replace(transaction, status=TransactionStatus.COMPLETED)
                uow.insert_transaction(applied)
            elif existing.status is TransactionStatus.PENDING:
                if existing.user_id != transaction.user_id or existing.asset != transaction.asset:
                    raise InvalidTransactionError(
                        f"Transaction {transaction.id} belongs to a different user or asset"
                    )
                applied = replace(existing, status=TransactionStatus.COMPLETED)
                uow.update_transaction_status(applied.id, TransactionStatus.COMPLETED)
            else:
                raise TransactionAlreadyAppliedError(existing.id, existing.status.value)

            with ledger_context():
                available = balance.available + applied.signed_amount
                resulting_total = available + balance.locked
            if resulting_total < 0:
                raise NegativeBalanceError(balance.user_id, balance.asset, resulting_total)

            history = uow.get_completed_transactions(balance.user_id, balance.asset)
            result = self.calculator(history)

            updated = replace(
                balance,
                available=available,
                average_cost=average_cost_or_none(result),
                realized_pnl=result.realized_pnl,
                updated_at=utc_now(),
            )
            uow.save_balance(updated)

        return updated, result, applied

    def _invalidate(self, user_id: str) -> None:
        if self.cache is None:
            return

        for key in (balances_key(user_id), summary_key(user_id)):
            try:
                self.cache.delete(key)
            except Exception as exc:  # noqa: BLE001
                if self.metrics is not None:
                    self.metrics.record_cache_invalidation_failure(str(exc))
                logger.warning(
                    "Failed to invalidate cache key %s: %s", key, exc,
                    extra=structured_log_extra(
                        event="cache_invalidation_failed", user_id=user_id, cache_key=key
                    ),
                )
