# src/portfolio_ledger/analytics/history.py
"""Approximate portfolio value history reconstructed from the transaction log.

There are no stored snapshots: each bucket's value is the running sum of the
priced value moved by completed transactions up to that bucket. This tracks
invested capital rather than marked-to-market value.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List

from portfolio_ledger.ledger.models import PERIOD_DAYS, PortfolioHistory, Transaction
from portfolio_ledger.ledger.numeric import HUNDRED, ZERO, ledger_context

from .performance import TRADING_DAYS_PER_YEAR, calculate_volatility, returns_from_values


def round_to_period(ts: datetime, period: str) -> datetime:
    """Floor ``ts`` to the start of its day, week (Sunday), month or year in UTC."""

    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period: {period}")

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    day = ts.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    if period == "week":
        return day - timedelta(days=(day.weekday() + 1) % 7)
    if period == "month":
        return day.replace(day=1)
    if period == "year":
        return day.replace(month=1, day=1)
    return day


def value_delta(tx: Transaction) -> Decimal:
    return tx.total_value if tx.kind.is_inflow else -tx.total_value


def build_portfolio_history(
    transactions: Iterable[Transaction],
    period: str,
    points: int,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> PortfolioHistory:
    ordered = sorted(transactions, key=lambda tx: tx.created_at)

    buckets: Dict[datetime, List[Transaction]] = OrderedDict()
    for tx in ordered:
        buckets.setdefault(round_to_period(tx.created_at, period), []).append(tx)

    timestamps: List[datetime] = []
    values: List[Decimal] = []
    running = ZERO
    with ledger_context():
        for bucket, group in buckets.items():
            running += sum((value_delta(tx) for tx in group), ZERO)
            timestamps.append(bucket)
            values.append(running)

    if points > 0:
        timestamps = timestamps[-points:]
        values = values[-points:]

    total_return = ZERO
    if len(values) > 1 and values[0] != 0:
        with ledger_context():
            total_return = (values[-1] - values[0]) / values[0] * HUNDRED

    volatility = calculate_volatility(returns_from_values(values), periods_per_year)

    return PortfolioHistory(
        timestamps=timestamps,
        values=values,
        period=period,
        total_return=total_return,
        volatility=volatility,
    )
