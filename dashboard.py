import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from time import perf_counter
from typing import Any, Callable, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

from aggregation import BucketRules, BucketTotals, build_month_cards, flow_totals
from backend import BackendClient, BackendError, ConfigUnavailable
from charts import ChartSeries, build_chart_series
from config import Settings, get_settings
import diffs
from diffs import Change
from models import (
    CashFlow,
    CategoryConfig,
    CategorySummary,
    DashboardItem,
    EmptyCategory,
    GroupSummary,
    MonthlyGoal,
    ScopeKey,
    Transaction,
)
from periods import (
    TimeRange,
    chart_window,
    month_key,
    month_keys_between,
    month_period,
    preceding_month_keys,
    shift_month_key,
)
from store import TransactionStore

logger = logging.getLogger(__name__)

CARDS_PER_PAGE = 750


class ScopeMismatch(RuntimeError):
    """A load finished after the active scope changed; its result is dropped."""


def chart_page_size(months: int) -> int:
    return max(250, min(5000, 300 * months))


@dataclass(frozen=True)
class MonthlyTotals:
    income: float = 0.0
    expenses: float = 0.0

    @property
    def net(self) -> float:
        return self.income - self.expenses


@dataclass(frozen=True)
class RefreshDiagnostics:
    cards_network_secs: float = 0.0
    cards_build_secs: float = 0.0
    cards_cache_hit: bool = False
    charts_network_secs: float = 0.0
    charts_build_secs: float = 0.0
    charts_cache_hit: bool = False
    total_secs: float = 0.0


@dataclass(frozen=True)
class LoadStats:
    network_secs: float
    build_secs: float
    cache_hit: bool


@dataclass(frozen=True)
class DashboardState:
    cash_flows: tuple[CashFlow, ...] = ()
    selected_cash_flow: Optional[CashFlow] = None
    month_key: str = ""
    time_range: TimeRange = TimeRange.months6
    ordered_items: tuple[DashboardItem, ...] = ()
    shared_groups: Mapping[str, GroupSummary] = field(default_factory=dict)
    totals: BucketTotals = field(default_factory=BucketTotals)
    transactions: tuple[Transaction, ...] = ()
    total_income: float = 0.0
    total_expenses: float = 0.0
    monthly_totals: MonthlyTotals = field(default_factory=MonthlyTotals)
    charts: ChartSeries = field(default_factory=ChartSeries)
    cards_loading: bool = False
    charts_loading: bool = False
    cards_error: Optional[str] = None
    charts_error: Optional[str] = None
    diagnostics: Optional[RefreshDiagnostics] = None

    @property
    def loading(self) -> bool:
        return self.cards_loading or self.charts_loading

    @property
    def error_message(self) -> Optional[str]:
        return self.cards_error or self.charts_error


Subscriber = Callable[[DashboardState], None]


class DashboardOrchestrator:
    """Owns the cache and the published dashboard state for one active scope.

    Cards (the reference month) and charts (a sliding window) load
    independently; both read from the same store and publish a new
    immutable ``DashboardState`` whenever something changes.
    """

    def __init__(
        self,
        client: BackendClient,
        store: Optional[TransactionStore] = None,
        settings: Optional[Settings] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        settings = settings or get_settings()
        self.client = client
        self.store = store or TransactionStore()
        self.rules = BucketRules.from_settings(settings)
        self.week_start = settings.week_start
        zone = ZoneInfo(settings.timezone)
        self._today = today or (lambda: datetime.now(zone).date())
        try:
            self.time_range = TimeRange(settings.default_time_range)
        except ValueError:
            logger.warning(f"dashboard_init: unknown time range {settings.default_time_range!r}")
            self.time_range = TimeRange.months6
        self.month_key = month_key(self._today())
        self.config = CategoryConfig()
        self.cash_flows: list[CashFlow] = []
        self.selected_cash_flow: Optional[CashFlow] = None
        self._snapshot: list[Transaction] = []
        self._chart_keys: list[str] = []
        self._empty_by_month: dict[str, list[EmptyCategory]] = {}
        self._goals_by_window: dict[tuple[str, str], list[MonthlyGoal]] = {}
        self._goals: list[MonthlyGoal] = []
        self._subscribers: list[Subscriber] = []
        self._state = self._empty_state()

    @property
    def state(self) -> DashboardState:
        return self._state

    @property
    def scope(self) -> Optional[ScopeKey]:
        if self.selected_cash_flow is None:
            return None
        return self.client.scope(self.selected_cash_flow.id)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _empty_state(self) -> DashboardState:
        return DashboardState(
            cash_flows=tuple(self.cash_flows),
            selected_cash_flow=self.selected_cash_flow,
            month_key=self.month_key,
            time_range=self.time_range,
        )

    def _publish(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        for callback in list(self._subscribers):
            try:
                callback(self._state)
            except Exception:
                logger.exception("dashboard_publish: subscriber failed")

    def _ensure_scope(self, scope: ScopeKey) -> None:
        if self.scope != scope:
            raise ScopeMismatch(f"scope changed from {scope.cash_flow_id}")

    async def load_initial(self) -> None:
        try:
            flows = await self.client.fetch_cash_flows()
        except BackendError as exc:
            logger.error(f"load_initial_failed: source={self.client.data_source} error={exc}")
            self._publish(cards_error=str(exc))
            return
        self.cash_flows = flows
        self.selected_cash_flow = next(
            (flow for flow in flows if flow.is_default), flows[0] if flows else None
        )
        self._publish(
            cash_flows=tuple(flows), selected_cash_flow=self.selected_cash_flow
        )
        if self.selected_cash_flow is None:
            logger.warning(f"load_initial: no cash flows at {self.client.data_source}")
            return
        await self.refresh_category_orders(rebuild=False)
        await self.refresh()

    async def refresh(self) -> Optional[RefreshDiagnostics]:
        scope = self.scope
        if scope is None:
            return None
        started = perf_counter()
        cards, charts = await asyncio.gather(
            self._load_cards(scope), self._load_charts(scope)
        )
        if self.scope != scope:
            return None
        diagnostics = RefreshDiagnostics(
            cards_network_secs=cards.network_secs if cards else 0.0,
            cards_build_secs=cards.build_secs if cards else 0.0,
            cards_cache_hit=bool(cards and cards.cache_hit),
            charts_network_secs=charts.network_secs if charts else 0.0,
            charts_build_secs=charts.build_secs if charts else 0.0,
            charts_cache_hit=bool(charts and charts.cache_hit),
            total_secs=perf_counter() - started,
        )
        self._publish(diagnostics=diagnostics)
        logger.info(
            f"refresh: cash_flow={scope.cash_flow_id} month={self.month_key} "
            f"range={self.time_range.value} total={diagnostics.total_secs:.2f}"
        )
        return diagnostics

    async def _load_cards(self, scope: ScopeKey) -> Optional[LoadStats]:
        key = self.month_key
        self._publish(cards_loading=True, cards_error=None)
        cache_hit = self.store.has_months(scope, [key])
        network = 0.0
        try:
            if not cache_hit:
                period = month_period(key)
                fetch_started = perf_counter()
                transactions = await self.client.fetch_transactions(
                    scope, period.start, period.end, per_page=CARDS_PER_PAGE
                )
                network = perf_counter() - fetch_started
                self._ensure_scope(scope)
                self.store.cache(transactions, scope)
                self.store.mark(scope, [key])
            await self._load_empty_categories(scope, key)
            self._ensure_scope(scope)
        except ScopeMismatch as exc:
            logger.debug(f"cards_load_discarded: month={key} reason={exc}")
            return None
        except BackendError as exc:
            logger.error(f"cards_load_failed: cash_flow={scope.cash_flow_id} month={key} error={exc}")
            if self.scope == scope:
                self._publish(cards_loading=False, cards_error=str(exc))
            return None

        build_started = perf_counter()
        self._rebuild_snapshot(scope)
        self._rebuild_cards()
        build = perf_counter() - build_started
        self._publish(cards_loading=False)
        logger.info(
            f"cards_load: month={key} network={network:.2f} build={build:.2f} cache={cache_hit}"
        )
        return LoadStats(network, build, cache_hit)

    async def _load_charts(self, scope: ScopeKey) -> Optional[LoadStats]:
        window = chart_window(self.time_range, self._today())
        keys = month_keys_between(window.start, window.end)
        self._chart_keys = keys
        self._publish(charts_loading=True, charts_error=None)
        missing = self.store.missing_months(scope, keys)
        network = 0.0
        try:
            if missing:
                start = month_period(missing[0]).start
                end = month_period(missing[-1]).end
                fetch_started = perf_counter()
                transactions = await self.client.fetch_transactions(
                    scope, start, end, per_page=chart_page_size(self.time_range.months)
                )
                network = perf_counter() - fetch_started
                self._ensure_scope(scope)
                self.store.cache(transactions, scope)
                self.store.mark(scope, month_keys_between(start, end))
            goals = await self._load_goals(scope, window.start, window.end)
            self._ensure_scope(scope)
        except ScopeMismatch as exc:
            logger.debug(f"charts_load_discarded: range={self.time_range.value} reason={exc}")
            return None
        except BackendError as exc:
            logger.error(
                f"charts_load_failed: cash_flow={scope.cash_flow_id} range={self.time_range.value} error={exc}"
            )
            if self.scope == scope and keys == self._chart_keys:
                self._publish(charts_loading=False, charts_error=str(exc))
            return None
        # A newer window owns the charts; this load only warmed the cache.
        if keys != self._chart_keys:
            logger.debug(f"charts_load_superseded: months={len(keys)} missing={len(missing)}")
            return None
        if goals is not None:
            self._goals = goals

        build_started = perf_counter()
        self._rebuild_snapshot(scope)
        self._rebuild_charts(scope)
        # New history months can change suggested targets on the cards.
        if self.store.has_months(scope, [self.month_key]):
            self._rebuild_cards()
        build = perf_counter() - build_started
        self._publish(charts_loading=False)
        logger.info(
            f"charts_load: months={len(keys)} missing={len(missing)} network={network:.2f} build={build:.2f}"
        )
        return LoadStats(network, build, not missing)

    async def _load_empty_categories(self, scope: ScopeKey, key: str) -> None:
        if key in self._empty_by_month:
            return
        period = month_period(key)
        try:
            empty = await self.client.get_empty_categories(scope, period.start, period.end)
        except ConfigUnavailable as exc:
            logger.warning(f"empty_categories_unavailable: month={key} error={exc}")
            return
        self._ensure_scope(scope)
        self._empty_by_month[key] = empty

    async def _load_goals(
        self, scope: ScopeKey, start: date, end: date
    ) -> Optional[list[MonthlyGoal]]:
        window_key = (month_key(start), month_key(end))
        cached = self._goals_by_window.get(window_key)
        if cached is not None:
            return cached
        try:
            goals = await self.client.get_monthly_goals(scope, start, end)
        except ConfigUnavailable as exc:
            logger.warning(f"monthly_goals_unavailable: window={window_key} error={exc}")
            return None
        self._ensure_scope(scope)
        self._goals_by_window[window_key] = goals
        return goals

    def _combined_month_keys(self) -> list[str]:
        keys = dict.fromkeys(self._chart_keys)
        keys[self.month_key] = None
        for key in preceding_month_keys(self.month_key):
            keys[key] = None
        return list(keys)

    def _rebuild_snapshot(self, scope: ScopeKey) -> None:
        self._snapshot = self.store.collect(scope, self._combined_month_keys())
        total_income, total_expenses = flow_totals(self._snapshot, self.config, self.rules)
        self._publish(
            transactions=tuple(self._snapshot),
            total_income=total_income,
            total_expenses=total_expenses,
        )

    def _rebuild_cards(self) -> None:
        key = self.month_key
        cards = build_month_cards(
            self._snapshot,
            key,
            self.config,
            history=self._snapshot,
            empty_categories=self._empty_by_month.get(key, []),
            rules=self.rules,
            week_start=self.week_start,
        )
        month_tx = [tx for tx in self._snapshot if tx.flow_month_key == key]
        income, expenses = flow_totals(month_tx, self.config, self.rules)
        self._publish(
            month_key=key,
            ordered_items=tuple(cards.ordered_items),
            shared_groups=cards.shared_groups,
            totals=cards.totals,
            monthly_totals=MonthlyTotals(income, expenses),
        )

    def _rebuild_charts(self, scope: ScopeKey) -> None:
        keys = self._chart_keys
        transactions = self.store.collect(scope, keys)
        series = build_chart_series(transactions, self.config, self._goals, keys, self.rules)
        self._publish(charts=series)

    def _rebuild_local(self) -> None:
        scope = self.scope
        if scope is None:
            return
        self._rebuild_snapshot(scope)
        self._rebuild_charts(scope)
        self._rebuild_cards()

    async def previous_month(self) -> None:
        await self._move_month(-1)

    async def next_month(self) -> None:
        await self._move_month(1)

    async def _move_month(self, offset: int) -> None:
        self.month_key = shift_month_key(self.month_key, offset)
        self._publish(month_key=self.month_key)
        scope = self.scope
        if scope is not None:
            await self._load_cards(scope)

    async def set_time_range(self, time_range: TimeRange) -> None:
        if time_range == self.time_range:
            return
        self.time_range = time_range
        self._publish(time_range=time_range)
        scope = self.scope
        if scope is not None:
            await self._load_charts(scope)

    def _clear_scope(self) -> None:
        scope = self.scope
        if scope is not None:
            self.store.reset(scope)
        self._snapshot = []
        self._chart_keys = []
        self._empty_by_month = {}
        self._goals_by_window = {}
        self._goals = []

    async def select_cash_flow(self, cash_flow_id: str) -> None:
        selected = next((flow for flow in self.cash_flows if flow.id == cash_flow_id), None)
        if selected is None:
            raise ValueError(f"Unknown cash flow: {cash_flow_id}")
        if self.selected_cash_flow is not None and selected.id == self.selected_cash_flow.id:
            return
        self._clear_scope()
        self.selected_cash_flow = selected
        self._state = self._empty_state()
        self._publish()
        logger.info(f"select_cash_flow: cash_flow={selected.id}")
        await self.refresh()

    async def switch_data_source(self, client: BackendClient) -> None:
        self._clear_scope()
        self.client = client
        self.cash_flows = []
        self.selected_cash_flow = None
        self._state = self._empty_state()
        self._publish()
        logger.info(f"switch_data_source: source={client.data_source}")
        await self.load_initial()

    def apply_diff(self, changes: Iterable[Change]) -> set[str]:
        scope = self.scope
        if scope is None:
            return set()
        touched = diffs.apply_diff(self.store, scope, changes)
        self._rebuild_local()
        return touched

    async def refresh_category_orders(self, rebuild: bool = True) -> CategoryConfig:
        try:
            orders = await self.client.get_category_orders()
        except ConfigUnavailable as exc:
            logger.warning(f"category_orders_unavailable: error={exc}")
            return self.config
        config = CategoryConfig(orders)
        shared_targets: dict[str, float] = {}
        for group in sorted(config.groups_using_shared_targets()):
            try:
                target = await self.client.get_shared_target(group)
            except ConfigUnavailable as exc:
                logger.warning(f"shared_target_unavailable: group={group} error={exc}")
                continue
            if target is not None:
                shared_targets[group] = target
        self.config = config.with_shared_targets(shared_targets)
        logger.info(f"category_orders: count={len(self.config)} shared={len(shared_targets)}")
        if rebuild:
            self._rebuild_local()
        return self.config

    def set_category_target(self, name: str, amount: Optional[float]) -> None:
        self.config = self.config.with_target(name, amount)
        self._rebuild_local()


def _transaction_dict(tx: Transaction) -> dict:
    return {
        "id": tx.id,
        "category": tx.effective_category_name,
        "amount": tx.normalized_amount,
        "is_income": tx.is_income,
        "date": tx.parsed_date.isoformat() if tx.parsed_date else None,
        "flow_month": tx.flow_month_key,
        "excluded_from_flow": tx.excluded_from_flow,
        "business_name": tx.business_name,
    }


def _summary_dict(summary: CategorySummary) -> dict:
    return {
        "name": summary.name,
        "bucket": summary.bucket.value,
        "target": summary.target,
        "is_target_suggested": summary.is_target_suggested,
        "target_source": summary.target_source.value,
        "is_fixed": summary.is_fixed,
        "total_spent": summary.total_spent,
        "weeks_in_month": summary.weeks_in_month,
        "weekly": {str(week): amount for week, amount in sorted(summary.weekly.items())},
        "weekly_expected": summary.weekly_expected,
        "transactions": [_transaction_dict(tx) for tx in summary.transactions],
    }


def _group_dict(group: GroupSummary) -> dict:
    return {
        "title": group.title,
        "target": group.target,
        "total_spent": group.total_spent,
        "weeks_in_month": group.weeks_in_month,
        "weekly": {str(week): amount for week, amount in sorted(group.weekly.items())},
        "weekly_expected": group.weekly_expected,
        "members": [_summary_dict(member) for member in group.members],
    }


def _rank(value: float) -> Optional[float]:
    return None if value == float("inf") else value


def serialize_state(state: DashboardState) -> dict:
    charts = state.charts
    return {
        "cash_flows": [
            {"id": flow.id, "name": flow.name, "is_default": flow.is_default, "currency": flow.currency}
            for flow in state.cash_flows
        ],
        "selected_cash_flow": state.selected_cash_flow.id if state.selected_cash_flow else None,
        "month_key": state.month_key,
        "time_range": state.time_range.value,
        "items": [
            {
                "id": item.id,
                "kind": item.kind.value,
                "rank": _rank(item.rank),
                "category": _summary_dict(item.category) if item.category else None,
                "group": _group_dict(item.group) if item.group else None,
            }
            for item in state.ordered_items
        ],
        "totals": {
            "income": state.totals.income,
            "savings": state.totals.savings,
            "excluded_income": state.totals.excluded_income,
            "excluded_expense": state.totals.excluded_expense,
            "total_income": state.total_income,
            "total_expenses": state.total_expenses,
        },
        "monthly_totals": {
            "income": state.monthly_totals.income,
            "expenses": state.monthly_totals.expenses,
            "net": state.monthly_totals.net,
        },
        "charts": {
            "month_keys": charts.month_keys,
            "labels": charts.monthly_labels,
            "income": charts.income_series,
            "expenses": charts.expenses_series,
            "net": charts.net_series,
            "cumulative": charts.cumulative_series,
            "goals": charts.goal_series,
            "expense_categories": [
                {"name": name, "amount": amount} for name, amount in charts.expense_category_slices
            ],
        },
        "transaction_count": len(state.transactions),
        "loading": state.loading,
        "cards_loading": state.cards_loading,
        "charts_loading": state.charts_loading,
        "error": state.error_message,
        "cards_error": state.cards_error,
        "charts_error": state.charts_error,
        "diagnostics": (
            {
                "cards_network_secs": state.diagnostics.cards_network_secs,
                "cards_build_secs": state.diagnostics.cards_build_secs,
                "cards_cache_hit": state.diagnostics.cards_cache_hit,
                "charts_network_secs": state.diagnostics.charts_network_secs,
                "charts_build_secs": state.diagnostics.charts_build_secs,
                "charts_cache_hit": state.diagnostics.charts_cache_hit,
                "total_secs": state.diagnostics.total_secs,
            }
            if state.diagnostics
            else None
        ),
    }
