import datetime as dt
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Mapping, Optional

from periods import is_month_key, month_key

UNCATEGORIZED = "Uncategorized"
UNRANKED = math.inf


def parse_transaction_date(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    text = value.strip()
    try:
        return dt.datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return dt.date.fromisoformat(text[:10])
    except ValueError:
        return None


class Bucket(str, Enum):
    income = "income"
    savings = "savings"
    non_cashflow = "non_cashflow"
    expense = "expense"


def bucket_amount(bucket: Bucket, amount: float) -> float:
    # Income counts inflows; every other bucket counts outflows as positive.
    if bucket == Bucket.income:
        return amount if amount > 0 else 0.0
    return -amount if amount < 0 else 0.0


class TargetSource(str, Enum):
    explicit = "explicit"
    shared = "shared"
    suggested = "suggested"
    none = "none"


class ItemKind(str, Enum):
    category = "category"
    group = "group"


@dataclass(frozen=True)
class ScopeKey:
    cash_flow_id: str
    data_source: str


@dataclass(frozen=True)
class CashFlow:
    id: str
    name: str = ""
    is_default: bool = False
    currency: Optional[str] = None


@dataclass(frozen=True, eq=False)
class Transaction:
    """Immutable transaction record; identity and equality are the ``id``."""

    id: str
    effective_category_name: str = ""
    is_income: bool = False
    normalized_amount: float = 0.0
    category_name: Optional[str] = None
    date: Optional[str] = None
    payment_date: Optional[str] = None
    flow_month: Optional[str] = None
    excluded_from_flow: bool = False
    business_name: Optional[str] = None
    payment_method: Optional[str] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None

    def __post_init__(self) -> None:
        name = (self.effective_category_name or "").strip()
        if not name:
            name = (self.category_name or "").strip() or UNCATEGORIZED
        object.__setattr__(self, "effective_category_name", name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Transaction):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def parsed_date(self) -> Optional[dt.date]:
        return parse_transaction_date(self.payment_date) or parse_transaction_date(
            self.date
        )

    @property
    def flow_month_key(self) -> Optional[str]:
        if self.flow_month and is_month_key(self.flow_month.strip()):
            return self.flow_month.strip()
        parsed = self.parsed_date
        return month_key(parsed) if parsed else None

    @property
    def sort_date(self) -> dt.date:
        return self.parsed_date or dt.date.min

    def replace(self, **changes: object) -> "Transaction":
        return replace(self, **changes)


def sorted_by_date(transactions: Iterable[Transaction]) -> tuple[Transaction, ...]:
    return tuple(sorted(transactions, key=lambda tx: (tx.sort_date, tx.id)))


@dataclass(frozen=True)
class CategoryOrder:
    category_name: str
    display_order: Optional[int] = None
    weekly_display: bool = False
    monthly_target: Optional[str] = None  # stored as text upstream
    shared_category: Optional[str] = None
    use_shared_target: bool = False
    id: Optional[str] = None

    @property
    def explicit_target(self) -> Optional[float]:
        if self.monthly_target is None:
            return None
        try:
            value = float(str(self.monthly_target).replace(",", "").strip())
        except ValueError:
            return None
        if math.isnan(value) or value <= 0:
            return None
        return value

    @property
    def rank(self) -> float:
        return UNRANKED if self.display_order is None else self.display_order

    @property
    def group(self) -> Optional[str]:
        name = (self.shared_category or "").strip()
        return name or None


class CategoryConfig:
    """Read-only category metadata keyed by name; the last entry for a name wins."""

    def __init__(
        self,
        orders: Iterable[CategoryOrder] = (),
        shared_targets: Optional[Mapping[str, float]] = None,
    ) -> None:
        self._orders: dict[str, CategoryOrder] = {}
        for order in orders:
            self._orders[order.category_name] = order
        self._shared_targets: dict[str, float] = dict(shared_targets or {})

    def __contains__(self, name: object) -> bool:
        return name in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def get(self, name: str) -> Optional[CategoryOrder]:
        return self._orders.get(name)

    def orders(self) -> list[CategoryOrder]:
        return list(self._orders.values())

    def names(self) -> list[str]:
        return list(self._orders)

    def rank(self, name: str) -> float:
        order = self._orders.get(name)
        return order.rank if order else UNRANKED

    def shared_category(self, name: str) -> Optional[str]:
        order = self._orders.get(name)
        return order.group if order else None

    def is_weekly(self, name: str) -> bool:
        order = self._orders.get(name)
        return bool(order and order.weekly_display)

    def explicit_target(self, name: str) -> Optional[float]:
        order = self._orders.get(name)
        return order.explicit_target if order else None

    def shared_target(self, name: str) -> Optional[float]:
        order = self._orders.get(name)
        if not order or not order.use_shared_target or not order.group:
            return None
        value = self._shared_targets.get(order.group)
        if value is None or value <= 0:
            return None
        return value

    def groups_using_shared_targets(self) -> set[str]:
        return {
            order.group
            for order in self._orders.values()
            if order.use_shared_target and order.group
        }

    def with_target(self, name: str, amount: Optional[float]) -> "CategoryConfig":
        existing = self._orders.get(name) or CategoryOrder(category_name=name)
        target = None if amount is None else str(amount)
        updated = replace(existing, monthly_target=target)
        return CategoryConfig([*self._orders.values(), updated], self._shared_targets)

    def with_shared_targets(self, targets: Mapping[str, float]) -> "CategoryConfig":
        return CategoryConfig(self._orders.values(), targets)


@dataclass(frozen=True)
class EmptyCategory:
    category_name: str
    month_key: Optional[str] = None
    display: bool = True
    cash_flow_id: Optional[str] = None


@dataclass(frozen=True)
class MonthlyGoal:
    month_key: str
    target_amount: float
    cash_flow_id: Optional[str] = None


@dataclass(frozen=True)
class TargetResolution:
    amount: Optional[float]
    source: TargetSource = TargetSource.none

    @property
    def is_suggested(self) -> bool:
        return self.source == TargetSource.suggested

    def weekly_expected(self, weeks: int) -> float:
        return (self.amount or 0.0) / max(weeks, 1)


NO_TARGET = TargetResolution(None, TargetSource.none)


@dataclass(frozen=True)
class CategorySummary:
    name: str
    bucket: Bucket
    target: Optional[float]
    is_target_suggested: bool
    total_spent: float
    weeks_in_month: int
    weekly: Mapping[int, float] = field(default_factory=dict)
    weekly_expected: float = 0.0
    transactions: tuple[Transaction, ...] = ()
    target_source: TargetSource = TargetSource.none

    @property
    def is_fixed(self) -> bool:
        return bool(self.target and self.target > 0)


@dataclass(frozen=True)
class GroupSummary:
    title: str
    target: float
    total_spent: float
    weeks_in_month: int
    weekly: Mapping[int, float]
    weekly_expected: float
    transactions: tuple[Transaction, ...]
    members: tuple[CategorySummary, ...]
    rank: float = UNRANKED


@dataclass(frozen=True)
class DashboardItem:
    kind: ItemKind
    rank: float
    category: Optional[CategorySummary] = None
    group: Optional[GroupSummary] = None

    @property
    def title(self) -> str:
        if self.group is not None:
            return self.group.title
        return self.category.name if self.category else ""

    @property
    def id(self) -> str:
        return f"{self.kind.value}:{self.title}"
