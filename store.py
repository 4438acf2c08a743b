import logging
import threading
from typing import Iterable

from models import ScopeKey, Transaction

logger = logging.getLogger(__name__)


class TransactionStore:
    """Month-partitioned transaction cache keyed by scope.

    A partition holds id -> transaction for one month key. The loaded marker
    is tracked separately so an empty month that was fetched still counts as
    a cache hit. Every transaction lives in exactly one partition per scope.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._partitions: dict[ScopeKey, dict[str, dict[str, Transaction]]] = {}
        self._loaded: dict[ScopeKey, set[str]] = {}
        self._index: dict[ScopeKey, dict[str, str]] = {}

    def has_months(self, scope: ScopeKey, month_keys: Iterable[str]) -> bool:
        with self._lock:
            loaded = self._loaded.get(scope, set())
            return all(key in loaded for key in month_keys)

    def missing_months(self, scope: ScopeKey, month_keys: Iterable[str]) -> list[str]:
        with self._lock:
            loaded = self._loaded.get(scope, set())
            return [key for key in month_keys if key not in loaded]

    def cache(self, transactions: Iterable[Transaction], scope: ScopeKey) -> None:
        skipped = 0
        with self._lock:
            for tx in transactions:
                if not self._put(tx, scope):
                    skipped += 1
        if skipped:
            logger.debug("store_cache: scope=%s skipped_undated=%s", scope.cash_flow_id, skipped)

    def mark(self, scope: ScopeKey, month_keys: Iterable[str]) -> None:
        with self._lock:
            self._loaded.setdefault(scope, set()).update(month_keys)

    def collect(self, scope: ScopeKey, month_keys: Iterable[str]) -> list[Transaction]:
        with self._lock:
            loaded = self._loaded.get(scope, set())
            partitions = self._partitions.get(scope, {})
            result: list[Transaction] = []
            for key in dict.fromkeys(month_keys):
                if key in loaded:
                    result.extend(partitions.get(key, {}).values())
        result.sort(key=lambda tx: (tx.sort_date, tx.id), reverse=True)
        return result

    def upsert(self, transaction: Transaction, scope: ScopeKey) -> set[str]:
        """Insert or replace by id; returns the month keys that changed."""
        with self._lock:
            previous = self._index.get(scope, {}).get(transaction.id)
            if not self._put(transaction, scope):
                return self.remove(transaction, scope)
            touched = {transaction.flow_month_key}
            if previous:
                touched.add(previous)
            return touched

    def remove(self, transaction: Transaction, scope: ScopeKey) -> set[str]:
        with self._lock:
            key = self._index.get(scope, {}).pop(transaction.id, None)
            if key is None:
                return set()
            self._partitions.get(scope, {}).get(key, {}).pop(transaction.id, None)
            return {key}

    def reset(self, scope: ScopeKey) -> None:
        with self._lock:
            self._partitions.pop(scope, None)
            self._loaded.pop(scope, None)
            self._index.pop(scope, None)
        logger.info("store_reset: scope=%s source=%s", scope.cash_flow_id, scope.data_source)

    def loaded_months(self, scope: ScopeKey) -> list[str]:
        with self._lock:
            return sorted(self._loaded.get(scope, set()))

    def _put(self, tx: Transaction, scope: ScopeKey) -> bool:
        key = tx.flow_month_key
        if key is None:
            return False
        index = self._index.setdefault(scope, {})
        partitions = self._partitions.setdefault(scope, {})
        stale = index.get(tx.id)
        if stale is not None and stale != key:
            partitions.get(stale, {}).pop(tx.id, None)
        partitions.setdefault(key, {})[tx.id] = tx
        index[tx.id] = key
        return True
