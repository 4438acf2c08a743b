import asyncio
import json
from datetime import date
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit

import pytest

import backend
from backend import BackendClient, ConfigUnavailable, DecodeFailure, FetchFailure
from models import ScopeKey

BASE = "https://fake.test/api"
SCOPE = ScopeKey("cf1", BASE)


class _FakeResponse:
    def __init__(self, body: bytes, status: int = 200) -> None:
        self.body = body
        self.status = status

    def read(self) -> bytes:
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> bool:
        return False


def _serve(monkeypatch, payload=None, body: bytes = None, error: Exception = None):
    requests = []

    def fake_urlopen(req, timeout=None):
        requests.append((req, timeout))
        if error is not None:
            raise error
        data = body if body is not None else json.dumps(payload).encode("utf-8")
        return _FakeResponse(data)

    monkeypatch.setattr(backend, "urlopen", fake_urlopen)
    return requests


def _client() -> BackendClient:
    return BackendClient(base_url=BASE + "/", auth_token="secret", timeout=3)


def test_fetch_transactions_builds_the_query(monkeypatch) -> None:
    requests = _serve(
        monkeypatch,
        payload={"transactions": [{"id": 7, "category_name": "Food", "amount": "-12.5", "date": "2025-06-05"}]},
    )

    rows = asyncio.run(
        _client().fetch_transactions(SCOPE, date(2025, 6, 1), date(2025, 6, 30), per_page=750)
    )

    assert [row.id for row in rows] == ["7"]
    assert rows[0].normalized_amount == -12.5
    (req, timeout), = requests
    assert timeout == 3
    parts = urlsplit(req.full_url)
    assert parts.path == "/api/transactions"
    query = parse_qs(parts.query)
    assert query == {
        "cash_flow_id": ["cf1"],
        "show_all": ["true"],
        "per_page": ["750"],
        "start_date": ["2025-06-01"],
        "end_date": ["2025-06-30"],
        "sort": ["payment_date"],
    }
    assert req.get_header("Authorization") == "Bearer secret"
    assert req.get_header("Accept") == "application/json"


def test_http_errors_are_fetch_failures(monkeypatch) -> None:
    _serve(monkeypatch, error=HTTPError(BASE, 502, "bad gateway", None, None))
    with pytest.raises(FetchFailure) as info:
        asyncio.run(_client().fetch_cash_flows())
    assert info.value.status == 502

    _serve(monkeypatch, error=URLError("offline"))
    with pytest.raises(FetchFailure):
        asyncio.run(_client().fetch_cash_flows())


def test_bad_bodies_are_decode_failures(monkeypatch) -> None:
    _serve(monkeypatch, body=b"<html>oops</html>")
    with pytest.raises(DecodeFailure):
        asyncio.run(_client().fetch_cash_flows())

    _serve(monkeypatch, payload=[{"amount": -5}])
    with pytest.raises(DecodeFailure):
        asyncio.run(
            _client().fetch_transactions(SCOPE, date(2025, 6, 1), date(2025, 6, 30), per_page=1)
        )


def test_config_failures_are_config_unavailable(monkeypatch) -> None:
    _serve(monkeypatch, error=HTTPError(BASE, 500, "boom", None, None))
    with pytest.raises(ConfigUnavailable):
        asyncio.run(_client().get_category_orders())

    _serve(monkeypatch, payload={"categories": "nope"})
    with pytest.raises(ConfigUnavailable):
        asyncio.run(_client().get_category_orders())


def test_category_orders_and_shared_target(monkeypatch) -> None:
    _serve(monkeypatch, payload={"categories": [{"category_name": "Food", "display_order": 1}]})
    (order,) = asyncio.run(_client().get_category_orders())
    assert order.category_name == "Food"
    assert order.display_order == 1

    requests = _serve(monkeypatch, payload={"target": 900})
    assert asyncio.run(_client().get_shared_target("בית ומשפחה")) == 900
    (req, _), = requests
    assert "/categories/shared-target/%D7%91" in req.full_url


def test_scope_uses_the_base_url() -> None:
    client = _client()
    assert client.data_source == BASE
    assert client.scope("cf9") == ScopeKey("cf9", BASE)
