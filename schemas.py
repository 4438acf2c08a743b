from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from diffs import Change, Insertion, Removal, Update
from models import CashFlow, CategoryOrder, EmptyCategory, MonthlyGoal, Transaction
from periods import TimeRange, is_valid_flow_month, sanitize_flow_month


def _stringify_id(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("id must be a string or a number")
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


def _parse_amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return 0.0


class TransactionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    effective_category_name: Optional[str] = None
    category_name: Optional[str] = None
    is_income: Optional[bool] = None
    amount: float = 0.0
    date: Optional[str] = None
    payment_date: Optional[str] = None
    flow_month: Optional[str] = None
    excluded_from_flow: bool = False
    business_name: Optional[str] = None
    payment_method: Optional[str] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_text(cls, v: Any) -> Any:
        return _stringify_id(v)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_from_text(cls, v: Any) -> float:
        return _parse_amount(v)

    @field_validator("excluded_from_flow", mode="before")
    @classmethod
    def _null_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    def to_transaction(self) -> Transaction:
        is_income = self.is_income if self.is_income is not None else self.amount > 0
        return Transaction(
            id=self.id,
            effective_category_name=self.effective_category_name or "",
            is_income=is_income,
            normalized_amount=self.amount,
            category_name=self.category_name,
            date=self.date,
            payment_date=self.payment_date,
            flow_month=self.flow_month,
            excluded_from_flow=self.excluded_from_flow,
            business_name=self.business_name,
            payment_method=self.payment_method,
            currency=self.currency,
            notes=self.notes,
            status=self.status,
        )


class CategoryOrderPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category_name: str = Field(..., min_length=1)
    display_order: Optional[int] = None
    weekly_display: Optional[bool] = None
    monthly_target: Optional[str] = None
    shared_category: Optional[str] = None
    use_shared_target: Optional[bool] = None
    id: Optional[str] = None

    @field_validator("id", "monthly_target", mode="before")
    @classmethod
    def _numbers_to_text(cls, v: Any) -> Any:
        return _stringify_id(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else v

    def to_order(self) -> CategoryOrder:
        return CategoryOrder(
            category_name=self.category_name,
            display_order=self.display_order,
            weekly_display=bool(self.weekly_display),
            monthly_target=self.monthly_target,
            shared_category=self.shared_category,
            use_shared_target=bool(self.use_shared_target),
            id=self.id,
        )


class EmptyCategoryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category_name: str = Field(..., min_length=1)
    month_key: Optional[str] = None
    display: bool = True
    cash_flow_id: Optional[str] = None

    @field_validator("cash_flow_id", mode="before")
    @classmethod
    def _id_to_text(cls, v: Any) -> Any:
        return None if v is None else _stringify_id(v)

    def to_empty_category(self) -> EmptyCategory:
        return EmptyCategory(
            category_name=self.category_name,
            month_key=self.month_key,
            display=self.display,
            cash_flow_id=self.cash_flow_id,
        )


class MonthlyGoalPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    month_key: str
    target_amount: float = 0.0
    cash_flow_id: Optional[str] = None

    @field_validator("target_amount", mode="before")
    @classmethod
    def _amount_from_text(cls, v: Any) -> float:
        return _parse_amount(v)

    @field_validator("cash_flow_id", mode="before")
    @classmethod
    def _id_to_text(cls, v: Any) -> Any:
        return None if v is None else _stringify_id(v)

    def to_goal(self) -> MonthlyGoal:
        return MonthlyGoal(
            month_key=self.month_key,
            target_amount=self.target_amount,
            cash_flow_id=self.cash_flow_id,
        )


class CashFlowPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = ""
    is_default: bool = False
    currency: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_text(cls, v: Any) -> Any:
        return _stringify_id(v)

    def to_cash_flow(self) -> CashFlow:
        return CashFlow(
            id=self.id, name=self.name, is_default=self.is_default, currency=self.currency
        )


class SharedTargetPayload(BaseModel):
    target: Optional[float] = None


def _unwrap(payload: Any, *keys: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            rows = payload.get(key)
            if isinstance(rows, list):
                return rows
    raise ValueError(f"Expected a list or an object with one of {keys}")


_transactions_adapter = TypeAdapter(list[TransactionPayload])
_orders_adapter = TypeAdapter(list[CategoryOrderPayload])
_empty_adapter = TypeAdapter(list[EmptyCategoryPayload])
_goals_adapter = TypeAdapter(list[MonthlyGoalPayload])
_cash_flows_adapter = TypeAdapter(list[CashFlowPayload])


def decode_transactions(payload: Any) -> list[Transaction]:
    """Decode a transactions page; any malformed row fails the whole page."""
    rows = _transactions_adapter.validate_python(_unwrap(payload, "transactions", "data"))
    return [row.to_transaction() for row in rows]


def decode_category_orders(payload: Any) -> list[CategoryOrder]:
    rows = _orders_adapter.validate_python(_unwrap(payload, "categories", "data"))
    return [row.to_order() for row in rows]


def decode_empty_categories(payload: Any) -> list[EmptyCategory]:
    rows = _empty_adapter.validate_python(_unwrap(payload, "empty_categories", "data"))
    return [row.to_empty_category() for row in rows]


def decode_monthly_goals(payload: Any) -> list[MonthlyGoal]:
    rows = _goals_adapter.validate_python(_unwrap(payload, "goals", "data"))
    return [row.to_goal() for row in rows]


def decode_cash_flows(payload: Any) -> list[CashFlow]:
    rows = _cash_flows_adapter.validate_python(_unwrap(payload, "cash_flows", "data"))
    return [row.to_cash_flow() for row in rows]


def decode_shared_target(payload: Any) -> Optional[float]:
    return SharedTargetPayload.model_validate(payload).target


class TransactionIn(TransactionPayload):
    model_config = ConfigDict(extra="forbid")

    @field_validator("flow_month")
    @classmethod
    def _valid_flow_month(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not is_valid_flow_month(v):
            raise ValueError("flow_month must be YYYY-MM")
        return sanitize_flow_month(v)


class ChangeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["insert", "remove", "update"]
    transaction: TransactionIn
    previous: Optional[TransactionIn] = None

    @model_validator(mode="after")
    def _update_needs_previous(self) -> "ChangeIn":
        if self.kind == "update" and self.previous is None:
            raise ValueError("update requires the previous transaction")
        return self

    def to_change(self) -> Change:
        tx = self.transaction.to_transaction()
        if self.kind == "insert":
            return Insertion(tx)
        if self.kind == "remove":
            return Removal(tx)
        return Update(self.previous.to_transaction(), tx)


class DiffIn(BaseModel):
    changes: list[ChangeIn] = Field(..., min_length=1)


class TimeRangeIn(BaseModel):
    time_range: TimeRange


class CashFlowSelectIn(BaseModel):
    cash_flow_id: str = Field(..., min_length=1)


class TargetIn(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
