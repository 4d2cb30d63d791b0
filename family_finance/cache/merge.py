"""
Merge-by-identifier for cached and fetched records.

DESIGN DECISION: The same record can reach the client through several
paths (two differently-scoped queries, the offline cache, an optimistic
insert). All of them are combined here and nowhere else, so a record is
never shown twice.

Rules:
1. Records are keyed by "id"; records without one are dropped
2. When both sides hold the same id, the incoming record wins
3. Without a sort key, order is first-seen: existing records, then new ones
4. Applying the same incoming set twice gives the same result as once
"""

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from family_finance.models.finance import parse_timestamp


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def record_id(record: dict) -> Optional[str]:
    """Identifier of a record as a string, or None if it has none."""
    value = record.get("id")
    if value is None or value == "":
        return None
    return str(value)


def merge_by_identifier(
    existing: Iterable[dict],
    incoming: Iterable[dict],
    sort_key: Optional[Callable[[dict], Any]] = None,
    reverse: bool = False,
) -> list[dict]:
    """
    Merge two record lists keyed by id.

    Args:
        existing: Records already held (e.g. the cache)
        incoming: Newer records (e.g. a fresh server page)
        sort_key: Optional ordering applied to the merged result
        reverse: Sort descending

    Returns:
        A new list; input records are copied, never mutated.
    """
    merged: dict[str, dict] = {}

    for record in existing:
        rid = record_id(record)
        if rid is not None:
            merged[rid] = dict(record)

    # Re-assigning an existing key keeps its position
    for record in incoming:
        rid = record_id(record)
        if rid is not None:
            merged[rid] = dict(record)

    result = list(merged.values())
    if sort_key is not None:
        result.sort(key=sort_key, reverse=reverse)
    return result


def transaction_sort_key(record: dict) -> tuple[datetime, str]:
    """
    Sort key for transactions: occurrence date, then id.

    Use with reverse=True for newest first. Missing or unparseable dates
    sort as the epoch.
    """
    occurred = parse_timestamp(record.get("date")) or EPOCH
    return occurred, record_id(record) or ""


def merge_transactions(existing: Iterable[dict], incoming: Iterable[dict]) -> list[dict]:
    """Merge transaction records, newest first."""
    return merge_by_identifier(existing, incoming, sort_key=transaction_sort_key, reverse=True)
