# src/portfolio_ledger/ledger/numeric.py
"""Decimal context shared by every ledger and analytics computation."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Any, ContextManager, Optional

LEDGER_PRECISION = 28
LEDGER_CONTEXT = Context(prec=LEDGER_PRECISION, rounding=ROUND_HALF_UP)

ZERO = Decimal(0)
ONE = Decimal(1)
HUNDRED = Decimal(100)


def ledger_context() -> ContextManager[Context]:
    """Enter the fixed 28-digit, half-up decimal context."""

    return localcontext(LEDGER_CONTEXT)


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Coerce ``value`` into a :class:`Decimal` without passing through binary floats.

    Floats are converted through ``repr`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion. ``None`` and unparsable values yield
    ``default``.
    """

    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not result.is_finite():
        return default
    return result


def to_optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        result = Decimal(value if not isinstance(value, float) else repr(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return result if result.is_finite() else None


def decimal_str(value: Optional[Decimal]) -> Optional[str]:
    """Serialise a decimal for storage or JSON, keeping ``None`` as ``None``."""

    if value is None:
        return None
    return str(value)
