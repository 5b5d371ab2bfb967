# src/portfolio_ledger/ledger/models.py

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from .numeric import ZERO, decimal_str, to_decimal, to_optional_decimal

Period = Literal["day", "week", "month", "year"]

PERIOD_DAYS: Dict[str, int] = {"day": 1, "week": 7, "month": 30, "year": 365}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TransactionKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    FEE = "FEE"
    REWARD = "REWARD"

    @property
    def is_inflow(self) -> bool:
        return self in INFLOW_KINDS

    @property
    def is_outflow(self) -> bool:
        return self in OUTFLOW_KINDS


INFLOW_KINDS = frozenset(
    {TransactionKind.BUY, TransactionKind.DEPOSIT, TransactionKind.TRANSFER_IN, TransactionKind.REWARD}
)
# FEE reduces quantity without consuming lots, so it is in neither set.
OUTFLOW_KINDS = frozenset(
    {TransactionKind.SELL, TransactionKind.WITHDRAWAL, TransactionKind.TRANSFER_OUT}
)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class Transaction:
    user_id: str
    asset: str
    kind: TransactionKind
    amount: Decimal
    price: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    status: TransactionStatus = TransactionStatus.PENDING
    external_ref: Optional[str] = None  # e.g. chain tx hash
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.kind = TransactionKind(self.kind)
        self.status = TransactionStatus(self.status)
        self.amount = to_decimal(self.amount)
        self.price = to_optional_decimal(self.price)
        self.fee = to_optional_decimal(self.fee)

    @property
    def has_price(self) -> bool:
        return self.price is not None and self.price > 0

    @property
    def total_value(self) -> Decimal:
        if not self.has_price:
            return ZERO
        return self.amount * self.price

    @property
    def signed_amount(self) -> Decimal:
        """Quantity effect on the owning balance: inflows add, everything else subtracts."""

        return self.amount if self.kind.is_inflow else -self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset": self.asset,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "price": decimal_str(self.price),
            "fee": decimal_str(self.fee),
            "total_value": str(self.total_value),
            "status": self.status.value,
            "external_ref": self.external_ref,
            "description": self.description,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Balance:
    user_id: str
    asset: str
    available: Decimal = ZERO
    locked: Decimal = ZERO
    average_cost: Optional[Decimal] = None  # unknown until a priced inflow exists
    realized_pnl: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total(self) -> Decimal:
        return self.available + self.locked

    @classmethod
    def zeroed(cls, user_id: str, asset: str) -> "Balance":
        now = utc_now()
        return cls(user_id=user_id, asset=asset, created_at=now, updated_at=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "asset": self.asset,
            "available": str(self.available),
            "locked": str(self.locked),
            "total": str(self.total),
            "average_cost": decimal_str(self.average_cost),
            "realized_pnl": decimal_str(self.realized_pnl),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Balance":
        return cls(
            user_id=data["user_id"],
            asset=data["asset"],
            available=to_decimal(data.get("available")),
            locked=to_decimal(data.get("locked")),
            average_cost=to_optional_decimal(data.get("average_cost")),
            realized_pnl=to_optional_decimal(data.get("realized_pnl")),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class Lot:
    quantity: Decimal
    price: Decimal


@dataclass
class CostBasisResult:
    average_cost: Decimal
    realized_pnl: Decimal
    remaining_quantity: Decimal
    unmatched_quantity: Decimal = ZERO  # outflow quantity that found no lot to consume
    has_priced_inflow: bool = False
    unmatched_by_transaction: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class AllocationItem:
    asset: str
    value: Decimal
    percentage: Decimal
    color: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "value": str(self.value),
            "percentage": str(self.percentage),
            "color": self.color,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationItem":
        return cls(
            asset=data["asset"],
            value=to_decimal(data.get("value")),
            percentage=to_decimal(data.get("percentage")),
            color=data.get("color", ""),
        )


@dataclass
class PortfolioTotals:
    total_value: Decimal
    total_pnl: Decimal
    total_pnl_percentage: Decimal
    allocation: List[AllocationItem] = field(default_factory=list)
    unvalued_assets: List[str] = field(default_factory=list)


@dataclass
class AssetPnL:
    current_value: Decimal
    unrealized_pnl: Optional[Decimal]
    realized_pnl: Optional[Decimal]
    total_pnl: Optional[Decimal]


@dataclass
class AssetBalanceView:
    asset: str
    available: Decimal
    locked: Decimal
    total: Decimal
    current_price: Decimal
    current_value: Decimal
    average_cost: Optional[Decimal]
    unrealized_pnl: Optional[Decimal]
    realized_pnl: Optional[Decimal]
    total_pnl: Optional[Decimal]
    unrealized_pnl_percentage: Decimal
    color: str
    valuation_status: str = "valued"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "available": str(self.available),
            "locked": str(self.locked),
            "total": str(self.total),
            "current_price": str(self.current_price),
            "current_value": str(self.current_value),
            "average_cost": decimal_str(self.average_cost),
            "unrealized_pnl": decimal_str(self.unrealized_pnl),
            "realized_pnl": decimal_str(self.realized_pnl),
            "total_pnl": decimal_str(self.total_pnl),
            "unrealized_pnl_percentage": str(self.unrealized_pnl_percentage),
            "color": self.color,
            "valuation_status": self.valuation_status,
        }


@dataclass
class HoldingsStats:
    best_performer: Optional[str]
    worst_performer: Optional[str]
    total_assets: int
    profitable_assets: int


@dataclass
class PerformanceMetrics:
    absolute_change: Decimal
    percentage_change: Decimal


@dataclass
class PortfolioSummary:
    total_value: Decimal
    total_pnl: Decimal
    total_pnl_percentage: Decimal
    allocation: List[AllocationItem]
    diversification_score: Decimal
    sharpe_ratio: Optional[Decimal]
    holdings: HoldingsStats
    unvalued_assets: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": str(self.total_value),
            "total_pnl": str(self.total_pnl),
            "total_pnl_percentage": str(self.total_pnl_percentage),
            "allocation": [item.to_dict() for item in self.allocation],
            "diversification_score": str(self.diversification_score),
            "sharpe_ratio": decimal_str(self.sharpe_ratio),
            "holdings": {
                "best_performer": self.holdings.best_performer,
                "worst_performer": self.holdings.worst_performer,
                "total_assets": self.holdings.total_assets,
                "profitable_assets": self.holdings.profitable_assets,
            },
            "unvalued_assets": list(self.unvalued_assets),
            "generated_at": self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioSummary":
        holdings = data.get("holdings") or {}
        return cls(
            total_value=to_decimal(data.get("total_value")),
            total_pnl=to_decimal(data.get("total_pnl")),
            total_pnl_percentage=to_decimal(data.get("total_pnl_percentage")),
            allocation=[AllocationItem.from_dict(item) for item in data.get("allocation", [])],
            diversification_score=to_decimal(data.get("diversification_score")),
            sharpe_ratio=to_optional_decimal(data.get("sharpe_ratio")),
            holdings=HoldingsStats(
                best_performer=holdings.get("best_performer"),
                worst_performer=holdings.get("worst_performer"),
                total_assets=int(holdings.get("total_assets", 0)),
                profitable_assets=int(holdings.get("profitable_assets", 0)),
            ),
            unvalued_assets=list(data.get("unvalued_assets", [])),
            generated_at=_parse_datetime(data.get("generated_at")) or utc_now(),
        )


@dataclass
class PortfolioPerformance:
    current_value: Decimal
    previous_value: Decimal
    absolute_change: Decimal
    percentage_change: Decimal
    period: str


@dataclass
class PortfolioHistory:
    timestamps: List[datetime]
    values: List[Decimal]
    period: str
    total_return: Decimal
    volatility: Decimal


@dataclass
class TransactionFilters:
    asset: Optional[str] = None
    kind: Optional[TransactionKind] = None
    status: Optional[TransactionStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


@dataclass
class TransactionPage:
    items: List[Transaction]
    total: int
    limit: int
    offset: int
