"""Ledger state and the balance update path.

This package exposes the :class:`PortfolioService` facade alongside the
balance updater and store abstractions. Balances are mutated only through
:class:`~portfolio_ledger.ledger.updater.BalanceUpdater`, which replays the
FIFO cost basis and persists via
:class:`~portfolio_ledger.ledger.store.LedgerStore`.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manager import PortfolioService
    from .updater import BalanceUpdater

__all__ = ["PortfolioService", "BalanceUpdater"]


def __getattr__(name):  # pragma: no cover - lightweight lazy import helper
    if name == "PortfolioService":
        from .manager import PortfolioService

        return PortfolioService
    if name == "BalanceUpdater":
        from .updater import BalanceUpdater

        return BalanceUpdater
    raise AttributeError(name)
