# src/portfolio_ledger/analytics/performance.py
"""Performance, risk and concentration metrics. Every function here is total."""

from decimal import Decimal
from typing import Iterable, List, Sequence

from portfolio_ledger.ledger.models import AllocationItem, PerformanceMetrics
from portfolio_ledger.ledger.numeric import HUNDRED, ONE, ZERO, ledger_context, to_decimal

DEFAULT_RISK_FREE_RATE = Decimal("0.02")
TRADING_DAYS_PER_YEAR = 252


def calculate_performance_metrics(current: Decimal, previous: Decimal) -> PerformanceMetrics:
    current = to_decimal(current)
    previous = to_decimal(previous)
    with ledger_context():
        absolute_change = current - previous
        percentage_change = absolute_change / previous * HUNDRED if previous > 0 else ZERO
    return PerformanceMetrics(absolute_change=absolute_change, percentage_change=percentage_change)


def _sample_stdev(values: Sequence[Decimal]) -> Decimal:
    """Sample standard deviation (n - 1). Callers guarantee at least two values."""

    mean = sum(values, ZERO) / len(values)
    variance = sum(((v - mean) ** 2 for v in values), ZERO) / (len(values) - 1)
    return variance.sqrt()


def calculate_sharpe_ratio(
    returns: Sequence[Decimal],
    risk_free_rate: Decimal = DEFAULT_RISK_FREE_RATE,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> Decimal:
    """Annualised Sharpe ratio of per-period ``returns``.

    Returns zero for fewer than two observations or a zero standard deviation.
    """

    values = [to_decimal(r) for r in returns]
    if len(values) < 2:
        return ZERO

    with ledger_context():
        stdev = _sample_stdev(values)
        if stdev == 0:
            return ZERO
        mean = sum(values, ZERO) / len(values)
        periodic_risk_free = to_decimal(risk_free_rate) / periods_per_year
        return (mean - periodic_risk_free) / stdev * Decimal(periods_per_year).sqrt()


def calculate_volatility(
    returns: Sequence[Decimal], periods_per_year: int = TRADING_DAYS_PER_YEAR
) -> Decimal:
    values = [to_decimal(r) for r in returns]
    if len(values) < 2:
        return ZERO
    with ledger_context():
        return _sample_stdev(values) * Decimal(periods_per_year).sqrt()


def calculate_diversification_score(allocation: Iterable[AllocationItem]) -> Decimal:
    """Map the Herfindahl-Hirschman index of non-zero weights onto 0..100.

    A perfectly even split across N assets scores 100; a single holding, or
    no holdings at all, scores 0.
    """

    weights = [item.percentage for item in allocation if item.percentage > 0]
    if len(weights) <= 1:
        return ZERO

    with ledger_context():
        hhi = sum(((w / HUNDRED) ** 2 for w in weights), ZERO)
        min_hhi = ONE / len(weights)
        score = (ONE - (hhi - min_hhi) / (ONE - min_hhi)) * HUNDRED

    return max(ZERO, min(HUNDRED, score))


def returns_from_values(values: Sequence[Decimal]) -> List[Decimal]:
    """Period-over-period returns, skipping steps whose predecessor is zero."""

    returns: List[Decimal] = []
    with ledger_context():
        for previous, current in zip(values, values[1:]):
            if previous != 0:
                returns.append((current - previous) / previous)
    return returns
