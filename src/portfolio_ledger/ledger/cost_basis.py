# src/portfolio_ledger/ledger/cost_basis.py
"""FIFO cost basis replay over a single (user, asset) transaction history."""

from __future__ import annotations

from collections import deque
from decimal import Decimal
from typing import Deque, Dict, Iterable

from .models import CostBasisResult, Lot, Transaction, TransactionKind
from .numeric import ZERO, ledger_context


def calculate_fifo_cost_basis(transactions: Iterable[Transaction]) -> CostBasisResult:
    """Replay ``transactions`` in order and return cost basis and realized PnL.

    Inflows with a price open a lot; outflows consume lots oldest-first and
    realize ``quantity * (outflow price - lot price)`` when the outflow itself
    carries a price. Outflow quantity left over once the queue is empty still
    reduces the remaining quantity but realizes nothing; it is reported as
    ``unmatched_quantity`` so callers can flag the history, and per transaction
    id in ``unmatched_by_transaction``.

    The function performs no I/O and never mutates its input.
    """

    lots: Deque[Lot] = deque()
    realized = ZERO
    remaining = ZERO
    cost_total = ZERO
    unmatched = ZERO
    unmatched_by_tx: Dict[str, Decimal] = {}
    has_priced_inflow = False

    with ledger_context():
        for tx in transactions:
            amount = tx.amount

            if tx.kind.is_inflow:
                if tx.has_price:
                    lots.append(Lot(quantity=amount, price=tx.price))
                    cost_total += amount * tx.price
                    has_priced_inflow = True
                remaining += amount

            elif tx.kind.is_outflow:
                to_consume = amount
                while to_consume > 0 and lots:
                    oldest = lots[0]
                    consumed = min(to_consume, oldest.quantity)

                    if tx.has_price:
                        realized += consumed * (tx.price - oldest.price)

                    cost_total -= consumed * oldest.price
                    oldest.quantity -= consumed
                    to_consume -= consumed

                    if oldest.quantity == 0:
                        lots.popleft()

                if to_consume > 0:
                    unmatched += to_consume
                    unmatched_by_tx[tx.id] = to_consume
                remaining -= amount

            elif tx.kind is TransactionKind.FEE:
                remaining -= amount

        average_cost = cost_total / remaining if remaining > 0 else ZERO

    return CostBasisResult(
        average_cost=average_cost,
        realized_pnl=realized,
        remaining_quantity=remaining,
        unmatched_quantity=unmatched,
        unmatched_by_transaction=unmatched_by_tx,
        has_priced_inflow=has_priced_inflow,
    )


def average_cost_or_none(result: CostBasisResult) -> Decimal | None:
    """Average cost suitable for a balance row: unknown until a priced inflow exists."""

    if not result.has_priced_inflow:
        return None
    return result.average_cost
