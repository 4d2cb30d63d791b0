"""
Local Cache

Keyed snapshots of collections, stored through the persistence service's
string cache as JSON envelopes:

    {"data": [...records...], "timestamp": <epoch ms>, "version": "1.0"}

Keys:
    finance_accounts_<scope>   accounts visible in one scope
    finance_transactions       every cached transaction
    finance_loans              the actor's loans

DESIGN DECISION: A corrupt or unreadable cache value is logged and
treated as empty. The cache is a convenience for offline reads; the
remote store stays authoritative, so losing a cache entry is never fatal.
"""

import json
from datetime import timedelta
from typing import Optional

import structlog
from pydantic import ValidationError

from family_finance.cache.merge import merge_by_identifier, record_id, transaction_sort_key
from family_finance.config import CacheSettings, get_settings
from family_finance.models.finance import Collection, Scope
from family_finance.models.sync import LocalCacheEntry
from family_finance.services.persistence import PersistenceService


logger = structlog.get_logger(__name__)


TRANSACTIONS_KEY = Collection.TRANSACTIONS.value
LOANS_KEY = Collection.LOANS.value
ACCOUNTS_KEY_PREFIX = f"{Collection.ACCOUNTS.value}_"


class LocalCache:
    """Typed access to cached record lists."""

    TRANSACTIONS_KEY = TRANSACTIONS_KEY
    LOANS_KEY = LOANS_KEY

    def __init__(
        self,
        persistence: PersistenceService,
        settings: Optional[CacheSettings] = None,
    ):
        self._persistence = persistence
        self._settings = settings or get_settings().cache

    # =========================================================================
    # KEYS
    # =========================================================================

    @staticmethod
    def accounts_key(scope: Scope) -> str:
        return f"{ACCOUNTS_KEY_PREFIX}{Scope(scope).value}"

    @classmethod
    def account_keys(cls) -> list[str]:
        return [cls.accounts_key(scope) for scope in Scope]

    @classmethod
    def all_keys(cls) -> list[str]:
        return cls.account_keys() + [TRANSACTIONS_KEY, LOANS_KEY]

    @staticmethod
    def _sort_for(key: str):
        if key == TRANSACTIONS_KEY:
            return transaction_sort_key, True
        return None, False

    # =========================================================================
    # ENTRIES
    # =========================================================================

    async def get_entry(self, key: str) -> Optional[LocalCacheEntry]:
        """Read and parse an entry. Returns None if absent or corrupt."""
        raw = await self._persistence.cache_get(key)
        if raw is None:
            return None

        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("cache_entry_corrupt", key=key, error=str(e))
            return None

        # Entries written before the envelope existed are bare lists
        if isinstance(parsed, list):
            parsed = {"data": parsed, "timestamp": 0}

        if not isinstance(parsed, dict):
            logger.warning("cache_entry_corrupt", key=key, error="not an object")
            return None

        try:
            return LocalCacheEntry(
                key=key,
                data=[r for r in parsed.get("data") or [] if isinstance(r, dict)],
                timestamp=parsed.get("timestamp") or 0,
                version=str(parsed.get("version") or self._settings.cache_version),
            )
        except ValidationError as e:
            logger.warning("cache_entry_corrupt", key=key, error=str(e))
            return None

    async def is_stale(self, key: str) -> bool:
        """True if the entry is missing or older than the configured age."""
        entry = await self.get_entry(key)
        if entry is None:
            return True
        return entry.is_stale(timedelta(seconds=self._settings.stale_after_seconds))

    async def get_records(self, key: str) -> list[dict]:
        entry = await self.get_entry(key)
        return list(entry.data) if entry else []

    async def set_records(self, key: str, records: list[dict]) -> LocalCacheEntry:
        entry = LocalCacheEntry(
            key=key,
            data=[dict(r) for r in records],
            version=self._settings.cache_version,
        )
        await self._persistence.cache_set(key, json.dumps(entry.to_envelope(), default=str))
        return entry

    async def merge_records(self, key: str, incoming: list[dict]) -> list[dict]:
        """Merge incoming records into the entry and store the result."""
        sort_key, reverse = self._sort_for(key)
        merged = merge_by_identifier(
            await self.get_records(key),
            incoming,
            sort_key=sort_key,
            reverse=reverse,
        )
        await self.set_records(key, merged)
        return merged

    async def remove(self, key: str) -> None:
        await self._persistence.cache_remove(key)

    # =========================================================================
    # RECORDS
    # =========================================================================

    async def upsert_record(self, key: str, record: dict) -> None:
        await self.merge_records(key, [record])

    async def remove_record(self, key: str, rid: str) -> bool:
        records = await self.get_records(key)
        kept = [r for r in records if record_id(r) != rid]
        if len(kept) == len(records):
            return False
        await self.set_records(key, kept)
        return True

    async def patch_record(self, key: str, rid: str, changes: dict) -> Optional[dict]:
        """Shallow-merge changes into one cached record. Returns the patched record."""
        records = await self.get_records(key)
        patched = None
        for record in records:
            if record_id(record) == rid:
                record.update(changes)
                patched = record
        if patched is None:
            return None

        sort_key, reverse = self._sort_for(key)
        if sort_key is not None:
            records.sort(key=sort_key, reverse=reverse)
        await self.set_records(key, records)
        return patched

    async def find_record(self, keys: list[str], rid: str) -> Optional[tuple[str, dict]]:
        """First (key, record) holding the id, searching keys in order."""
        for key in keys:
            for record in await self.get_records(key):
                if record_id(record) == rid:
                    return key, record
        return None

    async def find_account(self, account_id: str) -> Optional[dict]:
        found = await self.find_record(self.account_keys(), account_id)
        return found[1] if found else None

    async def patch_account(self, account_id: str, changes: dict) -> int:
        """Patch an account in every scoped list holding it. Returns the count."""
        patched = 0
        for key in self.account_keys():
            if await self.patch_record(key, account_id, changes) is not None:
                patched += 1
        return patched

    async def replace_identifier(self, temp_id: str, server_id: str) -> int:
        """
        Re-key every cached record created under `temp_id` and rewrite
        account references to it. Returns the number of records touched.
        """
        touched = 0
        for key in self.all_keys():
            records = await self.get_records(key)
            changed = False
            for record in records:
                if record_id(record) == temp_id:
                    record["id"] = server_id
                    record["_offlineId"] = temp_id
                    changed = True
                    touched += 1
                if record.get("accountId") == temp_id:
                    record["accountId"] = server_id
                    changed = True
                    touched += 1
            if changed:
                sort_key, reverse = self._sort_for(key)
                await self.set_records(
                    key,
                    merge_by_identifier([], records, sort_key=sort_key, reverse=reverse),
                )
        return touched
