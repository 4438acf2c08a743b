import pytest
from pydantic import ValidationError

from diffs import Insertion, Removal, Update
from schemas import (
    ChangeIn,
    TransactionIn,
    decode_category_orders,
    decode_shared_target,
    decode_transactions,
)


def test_decode_transactions_accepts_bare_and_wrapped_pages() -> None:
    row = {"id": 1, "category_name": "Food", "amount": -50, "date": "2025-06-05"}
    for payload in ([row], {"transactions": [row]}, {"data": [row]}):
        (decoded,) = decode_transactions(payload)
        assert decoded.id == "1"
        assert decoded.effective_category_name == "Food"
        assert decoded.normalized_amount == -50.0
        assert decoded.is_income is False


def test_decode_transactions_normalizes_amounts_and_income_flag() -> None:
    rows = decode_transactions(
        [
            {"id": "a", "effective_category_name": "Salary", "amount": "1,250.50"},
            {"id": "b", "effective_category_name": "Refund", "amount": 20, "is_income": False},
            {"id": "c", "amount": None, "excluded_from_flow": None},
        ]
    )
    assert rows[0].normalized_amount == 1250.5
    assert rows[0].is_income is True
    assert rows[1].is_income is False
    assert rows[2].normalized_amount == 0.0
    assert rows[2].excluded_from_flow is False
    assert rows[2].effective_category_name == "Uncategorized"


def test_malformed_row_fails_the_whole_page() -> None:
    with pytest.raises(ValueError):
        decode_transactions([{"id": "1", "amount": -5}, {"amount": -7}])
    with pytest.raises(ValueError):
        decode_transactions("not a page")


def test_decode_category_orders() -> None:
    (order,) = decode_category_orders(
        {
            "categories": [
                {
                    "category_name": "Food",
                    "display_order": 2,
                    "monthly_target": 150,
                    "shared_category": "Home",
                    "use_shared_target": None,
                }
            ]
        }
    )
    assert order.monthly_target == "150"
    assert order.explicit_target == 150.0
    assert order.use_shared_target is False
    assert order.weekly_display is False


def test_decode_shared_target() -> None:
    assert decode_shared_target({"target": 420.5}) == 420.5
    assert decode_shared_target({}) is None


def test_transaction_in_validates_flow_month() -> None:
    assert TransactionIn(id="1", flow_month="202506").flow_month == "2025-06"
    assert TransactionIn(id="1", flow_month="").flow_month is None
    with pytest.raises(ValidationError):
        TransactionIn(id="1", flow_month="2025-6")
    with pytest.raises(ValidationError):
        TransactionIn(id="1", unexpected=True)


def test_change_in_builds_diff_changes() -> None:
    row = {"id": "1", "amount": -5, "date": "2025-06-01"}
    assert isinstance(ChangeIn(kind="insert", transaction=row).to_change(), Insertion)
    assert isinstance(ChangeIn(kind="remove", transaction=row).to_change(), Removal)
    update = ChangeIn(kind="update", transaction=row, previous=row).to_change()
    assert isinstance(update, Update)
    with pytest.raises(ValidationError):
        ChangeIn(kind="update", transaction=row)
