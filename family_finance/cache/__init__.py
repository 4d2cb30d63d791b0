"""Local cache and merge helpers."""

from family_finance.cache.merge import (
    merge_by_identifier,
    merge_transactions,
    record_id,
    transaction_sort_key,
)
from family_finance.cache.local import (
    LOANS_KEY,
    TRANSACTIONS_KEY,
    LocalCache,
)

__all__ = [
    "LOANS_KEY",
    "TRANSACTIONS_KEY",
    "LocalCache",
    "merge_by_identifier",
    "merge_transactions",
    "record_id",
    "transaction_sort_key",
]
