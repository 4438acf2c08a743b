import asyncio
from datetime import date

import pytest
from fakes import FakeBackend, down, make_settings, tx

from dashboard import DashboardOrchestrator, chart_page_size
from diffs import Insertion, Update
from models import CashFlow, CategoryOrder, EmptyCategory, ItemKind, MonthlyGoal
from periods import TimeRange, chart_window, month_keys_between

TODAY = date(2025, 6, 15)

JUNE = [
    tx("1", -50, "Food", "2025-06-05"),
    tx("2", 200, "Salary", "2025-06-01", is_income=True),
]
HISTORY = [
    tx("h1", -100, "Food", "2025-05-10"),
    tx("h2", -200, "Food", "2025-03-10"),
]


def _backend(**kwargs) -> FakeBackend:
    kwargs.setdefault("transactions", {"cf1": JUNE + HISTORY, "cf2": [tx("x", -9, "Fees", "2025-06-02")]})
    kwargs.setdefault(
        "cash_flows",
        [CashFlow("cf1", "Main", is_default=True), CashFlow("cf2", "Side")],
    )
    return FakeBackend(**kwargs)


def _dashboard(fake: FakeBackend) -> DashboardOrchestrator:
    return DashboardOrchestrator(fake, settings=make_settings(), today=lambda: TODAY)


def _loaded(fake: FakeBackend) -> DashboardOrchestrator:
    dashboard = _dashboard(fake)
    asyncio.run(dashboard.load_initial())
    return dashboard


def _summary(dashboard: DashboardOrchestrator, name: str):
    for item in dashboard.state.ordered_items:
        if item.kind == ItemKind.category and item.category.name == name:
            return item.category
        if item.kind == ItemKind.group:
            for member in item.group.members:
                if member.name == name:
                    return member
    return None


def test_initial_load_builds_cards_and_charts() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    state = dashboard.state

    assert state.selected_cash_flow.id == "cf1"
    assert state.month_key == "2025-06"
    assert _summary(dashboard, "Food").total_spent == 50
    assert _summary(dashboard, "Salary").total_spent == 200
    assert state.monthly_totals.income == 200
    assert state.monthly_totals.expenses == 50
    assert state.monthly_totals.net == 150
    assert state.charts.month_keys == ["2025-03", "2025-05", "2025-06"]
    assert not state.loading
    assert state.error_message is None

    cards_call = ("transactions", "cf1", date(2025, 6, 1), date(2025, 6, 30), 750)
    assert cards_call in fake.transaction_calls()
    assert all(call[4] in (750, chart_page_size(6)) for call in fake.transaction_calls())


def test_suggested_target_uses_cached_history() -> None:
    dashboard = _loaded(_backend())
    food = _summary(dashboard, "Food")
    assert food.target == 150
    assert food.is_target_suggested


def test_second_refresh_is_served_from_cache() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    calls = len(fake.transaction_calls())

    diagnostics = asyncio.run(dashboard.refresh())

    assert len(fake.transaction_calls()) == calls
    assert diagnostics.cards_cache_hit
    assert diagnostics.charts_cache_hit
    assert dashboard.state.diagnostics == diagnostics


def test_month_navigation_reuses_chart_months() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    calls = len(fake.transaction_calls())

    asyncio.run(dashboard.previous_month())

    assert dashboard.state.month_key == "2025-05"
    assert len(fake.transaction_calls()) == calls
    assert _summary(dashboard, "Food").total_spent == 100


def test_failed_cards_fetch_keeps_previous_items() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    before = dashboard.state.ordered_items
    fake.fail_fetch = down()

    asyncio.run(dashboard.next_month())

    assert dashboard.state.cards_error == "backend down"
    assert dashboard.state.ordered_items == before
    assert not dashboard.store.has_months(dashboard.scope, ["2025-07"])


def test_config_failures_degrade_quietly() -> None:
    fake = _backend(orders=[CategoryOrder("Food", monthly_target="80")])
    fake.fail_config = True
    dashboard = _loaded(fake)

    assert dashboard.state.error_message is None
    assert len(dashboard.config) == 0
    assert _summary(dashboard, "Food").total_spent == 50

    fake.fail_config = False
    asyncio.run(dashboard.refresh_category_orders())
    assert _summary(dashboard, "Food").target == 80

    fake.fail_config = True
    asyncio.run(dashboard.refresh_category_orders())
    assert _summary(dashboard, "Food").target == 80


def test_shared_targets_are_loaded_with_config() -> None:
    fake = _backend(
        orders=[CategoryOrder("Food", shared_category="Home", use_shared_target=True)],
        shared_targets={"Home": 640.0},
    )
    dashboard = _loaded(fake)
    (group,) = dashboard.state.shared_groups.values()
    assert group.title == "Home"
    assert group.target == 640


def test_empty_categories_and_goals_are_published() -> None:
    fake = _backend(
        orders=[CategoryOrder("Bonus", shared_category="הכנסות", monthly_target="300")],
        empty_categories=[EmptyCategory("Bonus", month_key="2025-06")],
        goals=[MonthlyGoal("2025-06", 120.0)],
    )
    dashboard = _loaded(fake)
    bonus = _summary(dashboard, "Bonus")
    assert bonus.total_spent == 0
    assert bonus.target == 300
    assert dashboard.state.charts.goal_series[-1] == 120


def test_stale_scope_results_are_discarded() -> None:
    fake = _backend()
    dashboard = _dashboard(fake)
    asyncio.run(dashboard.load_initial())
    old_scope = dashboard.scope
    dashboard.store.reset(old_scope)
    side = dashboard.cash_flows[1]

    def switch() -> None:
        dashboard.selected_cash_flow = side

    fake.on_fetch = switch
    assert asyncio.run(dashboard.refresh()) is None
    assert dashboard.store.loaded_months(old_scope) == []


def test_select_cash_flow_resets_the_old_scope() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    old_scope = dashboard.scope
    seen = []
    dashboard.subscribe(seen.append)

    asyncio.run(dashboard.select_cash_flow("cf2"))

    assert dashboard.store.loaded_months(old_scope) == []
    assert seen[0].ordered_items == ()
    assert _summary(dashboard, "Food") is None
    assert _summary(dashboard, "Fees").total_spent == 9

    with pytest.raises(ValueError):
        asyncio.run(dashboard.select_cash_flow("nope"))


def test_switch_data_source_reloads_everything() -> None:
    dashboard = _loaded(_backend())
    old_scope = dashboard.scope
    other = _backend(data_source="https://other.test/api")

    asyncio.run(dashboard.switch_data_source(other))

    assert dashboard.store.loaded_months(old_scope) == []
    assert dashboard.scope.data_source == "https://other.test/api"
    assert _summary(dashboard, "Food").total_spent == 50


def test_apply_diff_rebuilds_without_network() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    calls = len(fake.calls)

    touched = dashboard.apply_diff([Insertion(tx("3", -30, "Food", "2025-06-20"))])
    assert touched == {"2025-06"}
    assert _summary(dashboard, "Food").total_spent == 80

    moved = tx("3", -30, "Food", "2025-06-20", flow_month="2025-05")
    touched = dashboard.apply_diff([Update(tx("3", -30, "Food", "2025-06-20"), moved)])
    assert touched == {"2025-05", "2025-06"}
    assert _summary(dashboard, "Food").total_spent == 50
    assert len(fake.calls) == calls


def test_set_category_target_overrides_suggestion() -> None:
    dashboard = _loaded(_backend())

    dashboard.set_category_target("Food", 400.0)
    food = _summary(dashboard, "Food")
    assert food.target == 400
    assert not food.is_target_suggested

    dashboard.set_category_target("Food", None)
    assert _summary(dashboard, "Food").is_target_suggested


def test_time_range_change_loads_only_missing_months() -> None:
    fake = _backend()
    dashboard = _loaded(fake)
    calls = len(fake.transaction_calls())

    asyncio.run(dashboard.set_time_range(TimeRange.months6))
    assert len(fake.transaction_calls()) == calls

    asyncio.run(dashboard.set_time_range(TimeRange.year1))
    new_calls = fake.transaction_calls()[calls:]
    assert new_calls == [
        ("transactions", "cf1", date(2024, 6, 1), date(2024, 11, 30), chart_page_size(12))
    ]
    assert dashboard.state.time_range == TimeRange.year1


async def _wait_for_fetches(fake: FakeBackend, count: int) -> None:
    for _ in range(50):
        if len(fake.transaction_calls()) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} fetches, saw {len(fake.transaction_calls())}")


def test_concurrent_loads_keep_one_copy_per_transaction() -> None:
    fake = _backend()
    dashboard = _dashboard(fake)
    window = chart_window(TimeRange.months6, TODAY)
    keys = month_keys_between(window.start, window.end)

    async def run() -> None:
        fake.gate = asyncio.Event()
        task = asyncio.create_task(dashboard.load_initial())
        await _wait_for_fetches(fake, 2)
        scope = dashboard.scope
        # Both loads are parked inside their fetch with nothing cached yet.
        assert not dashboard.store.has_months(scope, ["2025-06"])
        assert dashboard.store.collect(scope, keys) == []
        fake.gate.set()
        await task

    asyncio.run(run())
    scope = dashboard.scope

    fetched = {(call[2], call[3]) for call in fake.transaction_calls()}
    assert fetched == {
        (date(2025, 6, 1), date(2025, 6, 30)),
        (date(2024, 12, 1), date(2025, 6, 30)),
    }
    assert dashboard.store.has_months(scope, keys)
    ids = [row.id for row in dashboard.store.collect(scope, keys)]
    assert len(ids) == len(set(ids))
    assert set(ids) == {"1", "2", "h1", "h2"}
    published = [row.id for row in dashboard.state.transactions]
    assert len(published) == len(set(published))
    assert _summary(dashboard, "Food").total_spent == 50
    assert not dashboard.state.loading


def test_older_chart_load_does_not_overwrite_newer_window() -> None:
    fake = _backend()
    fake.transactions["cf1"].append(tx("old", -40, "Food", "2024-08-10"))
    dashboard = _loaded(fake)
    calls = len(fake.transaction_calls())

    async def run():
        fake.gate = asyncio.Event()
        wide = asyncio.create_task(dashboard.set_time_range(TimeRange.year1))
        await _wait_for_fetches(fake, calls + 1)
        await dashboard.set_time_range(TimeRange.months3)
        narrow = dashboard.state.charts
        assert not dashboard.state.charts_loading
        fake.gate.set()
        await wide
        return narrow

    narrow = asyncio.run(run())
    state = dashboard.state

    assert state.time_range == TimeRange.months3
    assert state.charts is narrow
    assert min(state.charts.month_keys) >= "2025-03"
    assert not state.charts_loading
    assert dashboard.store.has_months(dashboard.scope, ["2024-08"])


def test_unsubscribe_stops_notifications() -> None:
    dashboard = _dashboard(_backend())
    seen = []
    unsubscribe = dashboard.subscribe(seen.append)
    asyncio.run(dashboard.load_initial())
    assert seen
    count = len(seen)

    unsubscribe()
    dashboard.set_category_target("Food", 10.0)
    assert len(seen) == count
