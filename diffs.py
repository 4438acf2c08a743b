import logging
from dataclasses import dataclass
from typing import Iterable, Union

from models import ScopeKey, Transaction
from store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Removal:
    transaction: Transaction


@dataclass(frozen=True)
class Insertion:
    transaction: Transaction


@dataclass(frozen=True)
class Update:
    old: Transaction
    new: Transaction


Change = Union[Removal, Insertion, Update]


def apply_diff(
    store: TransactionStore, scope: ScopeKey, changes: Iterable[Change]
) -> set[str]:
    """Apply changes in order and return the month keys they touched."""
    touched: set[str] = set()
    for change in changes:
        if isinstance(change, Removal):
            touched.update(store.remove(change.transaction, scope))
        elif isinstance(change, Insertion):
            touched.update(store.upsert(change.transaction, scope))
        elif isinstance(change, Update):
            touched.update(store.remove(change.old, scope))
            touched.update(store.upsert(change.new, scope))
        else:
            raise TypeError(f"Unsupported change: {change!r}")
    logger.debug("apply_diff: scope=%s touched=%s", scope.cash_flow_id, sorted(touched))
    return touched
