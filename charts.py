from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from aggregation import DEFAULT_RULES, BucketRules
from models import CategoryConfig, MonthlyGoal, Transaction
from periods import month_label

TOP_SLICES = 10


@dataclass(frozen=True)
class ChartSeries:
    month_keys: list[str] = field(default_factory=list)
    monthly_labels: list[str] = field(default_factory=list)
    income_series: list[float] = field(default_factory=list)
    expenses_series: list[float] = field(default_factory=list)
    net_series: list[float] = field(default_factory=list)
    cumulative_series: list[float] = field(default_factory=list)
    goal_series: list[float] = field(default_factory=list)
    expense_category_slices: list[tuple[str, float]] = field(default_factory=list)


def build_chart_series(
    transactions: Iterable[Transaction],
    config: CategoryConfig,
    goals: Iterable[MonthlyGoal] = (),
    month_keys: Optional[Iterable[str]] = None,
    rules: BucketRules = DEFAULT_RULES,
) -> ChartSeries:
    """Per-month flow series over the months that have flow activity.

    When ``month_keys`` is given, transactions outside those months are
    ignored.
    """
    window = set(month_keys) if month_keys is not None else None
    goal_by_month = {goal.month_key: goal.target_amount for goal in goals}
    income: dict[str, float] = defaultdict(float)
    expenses: dict[str, float] = defaultdict(float)
    by_category: dict[str, float] = defaultdict(float)
    active: set[str] = set()

    for tx in transactions:
        key = tx.flow_month_key
        if key is None or (window is not None and key not in window):
            continue
        if rules.is_excluded(tx, config):
            continue
        active.add(key)
        amount = tx.normalized_amount
        if amount > 0:
            income[key] += amount
        elif amount < 0:
            expenses[key] += -amount
            by_category[tx.effective_category_name] += -amount

    keys = sorted(active)
    income_series = [income[key] for key in keys]
    expenses_series = [expenses[key] for key in keys]
    net_series = [inc - exp for inc, exp in zip(income_series, expenses_series)]
    cumulative: list[float] = []
    running = 0.0
    for net in net_series:
        running += net
        cumulative.append(running)

    slices = sorted(
        ((name, total) for name, total in by_category.items() if total > 0),
        key=lambda item: (-item[1], item[0]),
    )[:TOP_SLICES]

    return ChartSeries(
        month_keys=keys,
        monthly_labels=[month_label(key) for key in keys],
        income_series=income_series,
        expenses_series=expenses_series,
        net_series=net_series,
        cumulative_series=cumulative,
        goal_series=[goal_by_month.get(key, 0.0) for key in keys],
        expense_category_slices=slices,
    )
