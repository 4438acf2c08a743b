from collections import defaultdict
from typing import Iterable

from models import (
    NO_TARGET,
    Bucket,
    CategoryConfig,
    TargetResolution,
    TargetSource,
    Transaction,
    bucket_amount,
)
from periods import preceding_month_keys

HISTORY_MONTHS = 3


class TargetResolver:
    """Resolves a category's monthly target for one aggregation pass.

    Order: explicit positive target, then the shared group target, then the
    mean of the positive monthly sums over the preceding months.
    """

    def __init__(
        self,
        config: CategoryConfig,
        history: Iterable[Transaction],
        history_months: int = HISTORY_MONTHS,
    ) -> None:
        self.config = config
        self.history_months = history_months
        self._by_category_month: dict[tuple[str, str], list[float]] = defaultdict(list)
        for tx in history:
            key = tx.flow_month_key
            if key:
                self._by_category_month[(tx.effective_category_name, key)].append(
                    tx.normalized_amount
                )
        self._memo: dict[tuple[str, str, Bucket], TargetResolution] = {}

    def resolve(self, category: str, month_key: str, bucket: Bucket) -> TargetResolution:
        memo_key = (category, month_key, bucket)
        if memo_key not in self._memo:
            self._memo[memo_key] = self._resolve(category, month_key, bucket)
        return self._memo[memo_key]

    def suggested(self, category: str, month_key: str, bucket: Bucket) -> TargetResolution:
        sums = []
        for key in preceding_month_keys(month_key, self.history_months):
            amounts = self._by_category_month.get((category, key), [])
            total = sum(bucket_amount(bucket, amount) for amount in amounts)
            if total > 0:
                sums.append(total)
        if not sums:
            return NO_TARGET
        return TargetResolution(sum(sums) / len(sums), TargetSource.suggested)

    def _resolve(self, category: str, month_key: str, bucket: Bucket) -> TargetResolution:
        explicit = self.config.explicit_target(category)
        if explicit is not None:
            return TargetResolution(explicit, TargetSource.explicit)
        shared = self.config.shared_target(category)
        if shared is not None:
            return TargetResolution(shared, TargetSource.shared)
        return self.suggested(category, month_key, bucket)
