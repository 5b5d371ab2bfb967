"""Pure portfolio analytics over balances, prices and transaction history."""

from .aggregator import (
    asset_color,
    build_asset_view,
    calculate_asset_pnl,
    calculate_totals,
    summarize_holdings,
)
from .history import build_portfolio_history, round_to_period
from .performance import (
    calculate_diversification_score,
    calculate_performance_metrics,
    calculate_sharpe_ratio,
    calculate_volatility,
    returns_from_values,
)

__all__ = [
    "asset_color",
    "build_asset_view",
    "build_portfolio_history",
    "calculate_asset_pnl",
    "calculate_diversification_score",
    "calculate_performance_metrics",
    "calculate_sharpe_ratio",
    "calculate_totals",
    "calculate_volatility",
    "returns_from_values",
    "round_to_period",
    "summarize_holdings",
]
