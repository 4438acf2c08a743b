import asyncio
from datetime import date

import pytest
from fakes import FakeBackend, make_settings, tx
from fastapi.testclient import TestClient

from dashboard import DashboardOrchestrator
from main import app, get_dashboard
from models import CashFlow


@pytest.fixture
def client():
    fake = FakeBackend(
        transactions={
            "cf1": [
                tx("1", -50, "Food", "2025-06-05"),
                tx("2", 200, "Salary", "2025-06-01", is_income=True),
                tx("3", -80, "Food", "2025-05-07"),
            ]
        },
        cash_flows=[CashFlow("cf1", "Main", is_default=True)],
    )
    dashboard = DashboardOrchestrator(fake, settings=make_settings(), today=lambda: date(2025, 6, 15))
    asyncio.run(dashboard.load_initial())
    app.dependency_overrides[get_dashboard] = lambda: dashboard
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _titles(body: dict) -> list[str]:
    return [item["category"]["name"] for item in body["items"] if item["category"]]


def _item(body: dict, name: str) -> dict:
    for item in body["items"]:
        if item["category"] and item["category"]["name"] == name:
            return item["category"]
    raise AssertionError(f"{name} not in items")


def test_get_dashboard(client) -> None:
    resp = client.get("/api/dashboard")
    assert resp.status_code == 200
    body = resp.json()
    assert body["month_key"] == "2025-06"
    assert body["selected_cash_flow"] == "cf1"
    assert _titles(body) == ["Food", "Salary"]
    assert _item(body, "Food")["total_spent"] == 50
    assert body["monthly_totals"] == {"income": 200, "expenses": 50, "net": 150}
    assert body["charts"]["labels"] == ["May 25", "Jun 25"]
    assert body["error"] is None


def test_month_navigation(client) -> None:
    body = client.post("/api/dashboard/previous-month").json()
    assert body["month_key"] == "2025-05"
    assert _item(body, "Food")["total_spent"] == 80

    body = client.post("/api/dashboard/next-month").json()
    assert body["month_key"] == "2025-06"


def test_time_range_validation(client) -> None:
    assert client.post("/api/dashboard/time-range", json={"time_range": "decade"}).status_code == 422
    resp = client.post("/api/dashboard/time-range", json={"time_range": "months3"})
    assert resp.status_code == 200
    assert resp.json()["time_range"] == "months3"


def test_unknown_cash_flow_is_rejected(client) -> None:
    resp = client.post("/api/dashboard/cash-flow", json={"cash_flow_id": "nope"})
    assert resp.status_code == 400


def test_diff_endpoint(client) -> None:
    resp = client.post(
        "/api/dashboard/diff",
        json={
            "changes": [
                {
                    "kind": "insert",
                    "transaction": {
                        "id": "9",
                        "effective_category_name": "Food",
                        "amount": -25,
                        "date": "2025-06-20",
                    },
                }
            ]
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["touched_months"] == ["2025-06"]
    assert _item(body["state"], "Food")["total_spent"] == 75

    bad = client.post(
        "/api/dashboard/diff",
        json={"changes": [{"kind": "insert", "transaction": {"id": "10", "flow_month": "2025-6"}}]},
    )
    assert bad.status_code == 422


def test_set_category_target(client) -> None:
    resp = client.post("/api/categories/Food/target", json={"amount": 400})
    assert resp.status_code == 200
    food = _item(resp.json(), "Food")
    assert food["target"] == 400
    assert food["target_source"] == "explicit"

    assert client.post("/api/categories/Food/target", json={"amount": -1}).status_code == 422
