import asyncio
import json
import logging
from datetime import date
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from config import get_settings
from models import CashFlow, CategoryOrder, EmptyCategory, MonthlyGoal, ScopeKey, Transaction
from schemas import (
    decode_cash_flows,
    decode_category_orders,
    decode_empty_categories,
    decode_monthly_goals,
    decode_shared_target,
    decode_transactions,
)

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    pass


class FetchFailure(BackendError):
    """Transport error or a non-2xx response."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class DecodeFailure(BackendError):
    """The response body was not the JSON shape we expect."""


class ConfigUnavailable(BackendError):
    """A non-critical config endpoint failed; callers fall back to stale data."""


class BackendClient:
    """JSON client for the cash-flow backend.

    ``urlopen`` blocks, so every public coroutine runs it in a worker thread.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.auth_token = settings.auth_token if auth_token is None else auth_token
        self.timeout = settings.fetch_timeout_secs if timeout is None else timeout

    @property
    def data_source(self) -> str:
        return self.base_url

    def scope(self, cash_flow_id: str) -> ScopeKey:
        return ScopeKey(cash_flow_id=cash_flow_id, data_source=self.base_url)

    def _request(self, path: str, params: Optional[dict[str, Any]] = None) -> Request:
        url = f"{self.base_url}/{path.lstrip('/')}"
        if params:
            url = f"{url}?{urlencode(params)}"
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return Request(url, headers=headers)

    def get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        req = self._request(path, params)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                body = resp.read()
        except HTTPError as exc:
            raise FetchFailure(f"GET {path} returned HTTP {exc.code}", status=exc.code) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise FetchFailure(f"GET {path} failed: {exc}") from exc
        if not 200 <= status < 300:
            raise FetchFailure(f"GET {path} returned HTTP {status}", status=status)
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeFailure(f"GET {path} returned a non-JSON body") from exc

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self.get_json, path, params)

    async def fetch_transactions(
        self, scope: ScopeKey, start: date, end: date, *, per_page: int
    ) -> list[Transaction]:
        params = {
            "cash_flow_id": scope.cash_flow_id,
            "show_all": "true",
            "per_page": per_page,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "sort": "payment_date",
        }
        payload = await self._get("transactions", params)
        try:
            transactions = decode_transactions(payload)
        except ValueError as exc:
            raise DecodeFailure(f"Malformed transactions page for {scope.cash_flow_id}") from exc
        logger.debug(
            f"fetch_transactions: cash_flow={scope.cash_flow_id} start={start} end={end} rows={len(transactions)}"
        )
        return transactions

    async def fetch_cash_flows(self) -> list[CashFlow]:
        payload = await self._get("cashflows")
        try:
            return decode_cash_flows(payload)
        except ValueError as exc:
            raise DecodeFailure("Malformed cash flows payload") from exc

    async def _config(self, what: str, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            return await self._get(path, params)
        except BackendError as exc:
            raise ConfigUnavailable(f"{what} unavailable: {exc}") from exc

    async def get_category_orders(self) -> list[CategoryOrder]:
        payload = await self._config("category order", "categories/order")
        try:
            return decode_category_orders(payload)
        except ValueError as exc:
            raise ConfigUnavailable("Malformed category order payload") from exc

    async def get_empty_categories(
        self, scope: ScopeKey, start: date, end: date
    ) -> list[EmptyCategory]:
        params = {
            "cash_flow_id": scope.cash_flow_id,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        }
        payload = await self._config("empty categories", "categories/empty", params)
        try:
            return decode_empty_categories(payload)
        except ValueError as exc:
            raise ConfigUnavailable("Malformed empty categories payload") from exc

    async def get_monthly_goals(
        self, scope: ScopeKey, start: date, end: date
    ) -> list[MonthlyGoal]:
        params = {
            "cash_flow_id": scope.cash_flow_id,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        }
        payload = await self._config("monthly goals", "monthly-goals", params)
        try:
            return decode_monthly_goals(payload)
        except ValueError as exc:
            raise ConfigUnavailable("Malformed monthly goals payload") from exc

    async def get_shared_target(self, shared_category: str) -> Optional[float]:
        path = f"categories/shared-target/{quote(shared_category, safe='')}"
        payload = await self._config("shared target", path)
        try:
            return decode_shared_target(payload)
        except ValueError as exc:
            raise ConfigUnavailable(f"Malformed shared target for {shared_category}") from exc
