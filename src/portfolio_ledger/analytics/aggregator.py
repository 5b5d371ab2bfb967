# src/portfolio_ledger/analytics/aggregator.py
"""Portfolio totals, per-asset PnL and allocation from balances and prices."""

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from portfolio_ledger.ledger.models import (
    AllocationItem,
    AssetBalanceView,
    AssetPnL,
    Balance,
    HoldingsStats,
    PortfolioTotals,
)
from portfolio_ledger.ledger.numeric import HUNDRED, ZERO, ledger_context

ASSET_COLORS: Dict[str, str] = {
    "XLM": "#14b8a6",
    "USDC": "#3b82f6",
    "BTC": "#f59e0b",
    "ETH": "#8b5cf6",
    "ADA": "#06b6d4",
}
DEFAULT_ASSET_COLOR = "#6b7280"


def asset_color(asset: str) -> str:
    return ASSET_COLORS.get(asset, DEFAULT_ASSET_COLOR)


def _price_for(asset: str, prices: Mapping[str, Decimal]) -> Optional[Decimal]:
    price = prices.get(asset)
    if price is None or price <= 0:
        return None
    return price


def calculate_totals(
    balances: Iterable[Balance], prices: Mapping[str, Decimal]
) -> PortfolioTotals:
    """Value every held balance and roll the results up into portfolio totals.

    Balances with a non-positive total are skipped. An asset without a price
    is valued at zero and listed in ``unvalued_assets``; only its realized PnL
    counts toward the totals, since its unrealized PnL is unknown. Allocation
    keeps the input order and drops zero-value entries.
    """

    total_value = ZERO
    total_pnl = ZERO
    values: List[tuple] = []
    unvalued: List[str] = []

    with ledger_context():
        for balance in balances:
            total = balance.total
            if total <= 0:
                continue

            price = _price_for(balance.asset, prices)
            if price is None:
                unvalued.append(balance.asset)

            value = total * price if price is not None else ZERO
            total_value += value

            if price is not None and balance.average_cost is not None:
                total_pnl += value - total * balance.average_cost
            if balance.realized_pnl is not None:
                total_pnl += balance.realized_pnl

            values.append((balance.asset, value))

        allocation = [
            AllocationItem(
                asset=asset,
                value=value,
                percentage=(value / total_value * HUNDRED) if total_value > 0 else ZERO,
                color=asset_color(asset),
            )
            for asset, value in values
            if value > 0
        ]

        cost_basis = total_value - total_pnl
        total_pnl_percentage = total_pnl / cost_basis * HUNDRED if cost_basis > 0 else ZERO

    return PortfolioTotals(
        total_value=total_value,
        total_pnl=total_pnl,
        total_pnl_percentage=total_pnl_percentage,
        allocation=allocation,
        unvalued_assets=unvalued,
    )


def calculate_asset_pnl(balance: Balance, price: Optional[Decimal]) -> AssetPnL:
    """Current value and PnL for one balance; each PnL is ``None`` when its inputs are unknown."""

    with ledger_context():
        current_value = balance.total * (price if price is not None and price > 0 else ZERO)

        unrealized: Optional[Decimal] = None
        if price is not None and price > 0 and balance.average_cost is not None:
            unrealized = current_value - balance.total * balance.average_cost

        realized = balance.realized_pnl
        if unrealized is not None and realized is not None:
            total_pnl: Optional[Decimal] = unrealized + realized
        elif unrealized is not None:
            total_pnl = unrealized
        else:
            total_pnl = realized

    return AssetPnL(
        current_value=current_value,
        unrealized_pnl=unrealized,
        realized_pnl=realized,
        total_pnl=total_pnl,
    )


def build_asset_view(balance: Balance, prices: Mapping[str, Decimal]) -> AssetBalanceView:
    price = _price_for(balance.asset, prices)
    pnl = calculate_asset_pnl(balance, price)

    with ledger_context():
        percentage = ZERO
        if pnl.unrealized_pnl is not None and balance.average_cost is not None:
            cost_basis = balance.total * balance.average_cost
            if cost_basis > 0:
                percentage = pnl.unrealized_pnl / cost_basis * HUNDRED

    return AssetBalanceView(
        asset=balance.asset,
        available=balance.available,
        locked=balance.locked,
        total=balance.total,
        current_price=price if price is not None else ZERO,
        current_value=pnl.current_value,
        average_cost=balance.average_cost,
        unrealized_pnl=pnl.unrealized_pnl,
        realized_pnl=pnl.realized_pnl,
        total_pnl=pnl.total_pnl,
        unrealized_pnl_percentage=percentage,
        color=asset_color(balance.asset),
        valuation_status="valued" if price is not None else "unvalued",
    )


def summarize_holdings(views: Sequence[AssetBalanceView]) -> HoldingsStats:
    """Best and worst performer by unrealized PnL percentage over held assets."""

    held = [view for view in views if view.total > 0]
    best: Optional[AssetBalanceView] = None
    worst: Optional[AssetBalanceView] = None
    profitable = 0

    for view in held:
        if (view.unrealized_pnl or ZERO) > 0:
            profitable += 1
        # Ties keep the earlier asset.
        if best is None or view.unrealized_pnl_percentage > best.unrealized_pnl_percentage:
            best = view
        if worst is None or view.unrealized_pnl_percentage < worst.unrealized_pnl_percentage:
            worst = view

    return HoldingsStats(
        best_performer=best.asset if best else None,
        worst_performer=worst.asset if worst else None,
        total_assets=len(held),
        profitable_assets=profitable,
    )
