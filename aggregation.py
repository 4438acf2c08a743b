from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, Optional, TypeVar

from config import Settings
from models import (
    UNRANKED,
    Bucket,
    CategoryConfig,
    CategorySummary,
    DashboardItem,
    EmptyCategory,
    GroupSummary,
    ItemKind,
    TargetSource,
    Transaction,
    bucket_amount,
    sorted_by_date,
)
from periods import week_of_month, weeks_in_month
from targets import TargetResolver

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


@dataclass(frozen=True)
class BucketRules:
    """Category labels the backend uses to mark income, savings and off-flow money."""

    income_label: str = "הכנסות"
    savings_marker: str = "חיסכון"
    non_cashflow_label: str = "לא בתזרים"
    non_cashflow_marker: str = "לא תזרימיות"

    @classmethod
    def from_settings(cls, settings: Settings) -> "BucketRules":
        return cls(
            income_label=settings.income_label,
            savings_marker=settings.savings_marker,
            non_cashflow_label=settings.non_cashflow_label,
            non_cashflow_marker=settings.non_cashflow_marker,
        )

    def is_excluded(self, tx: Transaction, config: CategoryConfig) -> bool:
        if tx.excluded_from_flow:
            return True
        if config.shared_category(tx.effective_category_name) == self.non_cashflow_label:
            return True
        raw = tx.category_name or tx.effective_category_name
        return self.non_cashflow_marker in raw

    def is_savings(self, tx: Transaction, config: CategoryConfig) -> bool:
        shared = config.shared_category(tx.effective_category_name) or ""
        return (
            self.savings_marker in shared
            or self.savings_marker in tx.effective_category_name
        )

    def classify(self, tx: Transaction, config: CategoryConfig) -> Bucket:
        if self.is_excluded(tx, config):
            return Bucket.non_cashflow
        if tx.is_income or tx.normalized_amount > 0:
            return Bucket.income
        if tx.normalized_amount < 0 and self.is_savings(tx, config):
            return Bucket.savings
        return Bucket.expense

    def is_relevant_empty(self, name: str, config: CategoryConfig, bucket: Bucket) -> bool:
        shared = config.shared_category(name) or ""
        if bucket == Bucket.income:
            return shared == self.income_label or self.income_label in name
        if bucket == Bucket.savings:
            return self.savings_marker in shared or self.savings_marker in name
        if bucket == Bucket.non_cashflow:
            return shared == self.non_cashflow_label or self.non_cashflow_marker in name
        return False


DEFAULT_RULES = BucketRules()


def group_by(items: Iterable[T], key: Callable[[T], K]) -> dict[K, list[T]]:
    groups: dict[K, list[T]] = defaultdict(list)
    for item in items:
        groups[key(item)].append(item)
    return dict(groups)


def split_by_bucket(
    transactions: Iterable[Transaction],
    config: CategoryConfig,
    rules: BucketRules = DEFAULT_RULES,
) -> dict[Bucket, list[Transaction]]:
    split: dict[Bucket, list[Transaction]] = {bucket: [] for bucket in Bucket}
    for tx in transactions:
        split[rules.classify(tx, config)].append(tx)
    return split


def weekly_breakdown(
    transactions: Iterable[Transaction], bucket: Bucket, week_start: str = "SUN"
) -> dict[int, float]:
    weekly: dict[int, float] = defaultdict(float)
    for tx in transactions:
        parsed = tx.parsed_date
        # Undated rows only count toward the total.
        if parsed is None:
            continue
        weekly[week_of_month(parsed, week_start)] += bucket_amount(bucket, tx.normalized_amount)
    return dict(weekly)


def _summary_sort_key(config: CategoryConfig) -> Callable[[CategorySummary], tuple]:
    return lambda summary: (config.rank(summary.name), summary.name)


def _wants_empty(
    empty: EmptyCategory,
    month_key: str,
    bucket: Bucket,
    config: CategoryConfig,
    rules: BucketRules,
) -> bool:
    if not empty.display or empty.category_name not in config:
        return False
    if empty.month_key and empty.month_key != month_key:
        return False
    return rules.is_relevant_empty(empty.category_name, config, bucket)


def build_category_summaries(
    transactions: Iterable[Transaction],
    bucket: Bucket,
    month_key: str,
    config: CategoryConfig,
    resolver: TargetResolver,
    empty_categories: Iterable[EmptyCategory] = (),
    rules: BucketRules = DEFAULT_RULES,
    week_start: str = "SUN",
) -> list[CategorySummary]:
    """Summaries for one bucket's transactions in ``month_key``.

    Expense categories that add up to zero are hidden. Empty categories
    flagged for display are synthesized with their explicit target only.
    """
    weeks = weeks_in_month(month_key, week_start)
    grouped = group_by(transactions, lambda tx: tx.effective_category_name)
    summaries: list[CategorySummary] = []
    for name, txs in grouped.items():
        total = sum(bucket_amount(bucket, tx.normalized_amount) for tx in txs)
        if bucket == Bucket.expense and total == 0:
            continue
        resolution = resolver.resolve(name, month_key, bucket)
        summaries.append(
            CategorySummary(
                name=name,
                bucket=bucket,
                target=resolution.amount,
                is_target_suggested=resolution.is_suggested,
                total_spent=total,
                weeks_in_month=weeks,
                weekly=weekly_breakdown(txs, bucket, week_start),
                weekly_expected=resolution.weekly_expected(weeks),
                transactions=sorted_by_date(txs),
                target_source=resolution.source,
            )
        )

    seen = set(grouped)
    for empty in empty_categories:
        name = empty.category_name
        if name in seen or not _wants_empty(empty, month_key, bucket, config, rules):
            continue
        seen.add(name)
        target = config.explicit_target(name)
        summaries.append(
            CategorySummary(
                name=name,
                bucket=bucket,
                target=target,
                is_target_suggested=False,
                total_spent=0.0,
                weeks_in_month=weeks,
                weekly_expected=(target or 0.0) / max(weeks, 1),
                target_source=TargetSource.explicit if target else TargetSource.none,
            )
        )

    summaries.sort(key=_summary_sort_key(config))
    return summaries


def _group_target(members: Iterable[CategorySummary]) -> float:
    return sum(member.target or 0.0 for member in members)


def build_group_summary(
    title: str,
    members: list[CategorySummary],
    config: CategoryConfig,
    weeks: int,
) -> Optional[GroupSummary]:
    if not members:
        return None
    members = sorted(members, key=_summary_sort_key(config))
    weekly: dict[int, float] = defaultdict(float)
    for member in members:
        for week, amount in member.weekly.items():
            weekly[week] += amount
    target = _group_target(members)
    return GroupSummary(
        title=title,
        target=target,
        total_spent=sum(member.total_spent for member in members),
        weeks_in_month=weeks,
        weekly=dict(weekly),
        weekly_expected=target / max(weeks, 1),
        transactions=sorted_by_date(tx for member in members for tx in member.transactions),
        members=tuple(members),
        rank=min((config.rank(member.name) for member in members), default=UNRANKED),
    )


def partition_shared(
    summaries: Iterable[CategorySummary], config: CategoryConfig
) -> tuple[list[CategorySummary], dict[str, list[CategorySummary]]]:
    # A category's config names at most one shared group.
    standalone: list[CategorySummary] = []
    grouped: dict[str, list[CategorySummary]] = defaultdict(list)
    for summary in summaries:
        group = config.shared_category(summary.name)
        if group:
            grouped[group].append(summary)
        else:
            standalone.append(summary)
    return standalone, dict(grouped)


def build_group_summaries(
    summaries: Iterable[CategorySummary], config: CategoryConfig, weeks: int
) -> list[GroupSummary]:
    _, grouped = partition_shared(summaries, config)
    groups: list[GroupSummary] = []
    for title, members in grouped.items():
        group = build_group_summary(title, members, config, weeks)
        if group is not None:
            groups.append(group)
    groups.sort(key=lambda group: (group.rank, group.title))
    return groups


def build_ordered_items(
    summaries: Iterable[CategorySummary], config: CategoryConfig, weeks: int
) -> list[DashboardItem]:
    """Standalone categories and shared groups merged by rank, ties by title."""
    summaries = list(summaries)
    standalone, _ = partition_shared(summaries, config)
    items = [
        DashboardItem(ItemKind.category, config.rank(summary.name), category=summary)
        for summary in standalone
    ]
    items.extend(
        DashboardItem(ItemKind.group, group.rank, group=group)
        for group in build_group_summaries(summaries, config, weeks)
    )
    items.sort(key=lambda item: (item.rank, item.title))
    return items


@dataclass(frozen=True)
class BucketTotals:
    income: float = 0.0
    savings: float = 0.0
    excluded_income: float = 0.0
    excluded_expense: float = 0.0


def flow_totals(
    transactions: Iterable[Transaction],
    config: CategoryConfig,
    rules: BucketRules = DEFAULT_RULES,
) -> tuple[float, float]:
    """Income and expense totals over transactions that are part of the flow."""
    income = 0.0
    expenses = 0.0
    for tx in transactions:
        if rules.is_excluded(tx, config):
            continue
        amount = tx.normalized_amount
        if amount > 0:
            income += amount
        elif amount < 0:
            expenses += -amount
    return income, expenses


@dataclass(frozen=True)
class MonthCards:
    month_key: str
    weeks_in_month: int
    summaries: dict[Bucket, list[CategorySummary]] = field(default_factory=dict)
    ordered_items: list[DashboardItem] = field(default_factory=list)
    shared_groups: dict[str, GroupSummary] = field(default_factory=dict)
    totals: BucketTotals = field(default_factory=BucketTotals)


def build_month_cards(
    transactions: Iterable[Transaction],
    month_key: str,
    config: CategoryConfig,
    history: Iterable[Transaction] = (),
    empty_categories: Iterable[EmptyCategory] = (),
    rules: BucketRules = DEFAULT_RULES,
    week_start: str = "SUN",
) -> MonthCards:
    """Cards for ``month_key`` from the transactions whose flow month matches."""
    month_tx = [tx for tx in transactions if tx.flow_month_key == month_key]
    empty_categories = list(empty_categories)
    resolver = TargetResolver(config, history)
    weeks = weeks_in_month(month_key, week_start)
    split = split_by_bucket(month_tx, config, rules)
    summaries = {
        bucket: build_category_summaries(
            split[bucket],
            bucket,
            month_key,
            config,
            resolver,
            empty_categories,
            rules,
            week_start,
        )
        for bucket in Bucket
    }
    every_summary = [summary for bucket in Bucket for summary in summaries[bucket]]
    groups = build_group_summaries(every_summary, config, weeks)
    excluded = split[Bucket.non_cashflow]
    totals = BucketTotals(
        income=sum(summary.total_spent for summary in summaries[Bucket.income]),
        savings=sum(summary.total_spent for summary in summaries[Bucket.savings]),
        excluded_income=sum(tx.normalized_amount for tx in excluded if tx.normalized_amount > 0),
        excluded_expense=sum(-tx.normalized_amount for tx in excluded if tx.normalized_amount < 0),
    )
    return MonthCards(
        month_key=month_key,
        weeks_in_month=weeks,
        summaries=summaries,
        ordered_items=build_ordered_items(every_summary, config, weeks),
        shared_groups={group.title: group for group in groups},
        totals=totals,
    )
