"""
Remote Loader

Reads accounts, transactions and loans from the remote store and mirrors
them into the local cache. While offline every read is served from the
cache instead.

DESIGN DECISION: Records created offline and not yet replayed carry
`_offlineId` equal to their own id. A reload never drops them from the
cache, otherwise an item the user just created would vanish from view
until the next drain.
"""

from typing import Iterable, Optional

import structlog

from family_finance.cache import LocalCache, merge_by_identifier, merge_transactions, record_id
from family_finance.models.finance import Account, Collection, Loan, Scope, Transaction
from family_finance.services.persistence import (
    ConnectionError,
    OrderBy,
    PersistenceService,
    QueryFilter,
)


logger = structlog.get_logger(__name__)


# Upper bound on values in a single "in" filter of the hosted store
IN_QUERY_LIMIT = 30


def is_unsynced(record: dict) -> bool:
    """True for records created offline that still carry their temporary id."""
    return bool(record.get("_offlineId")) and record.get("_offlineId") == record_id(record)


class RemoteLoader:
    """Scoped remote reads with cache fallback."""

    def __init__(
        self,
        persistence: PersistenceService,
        cache: LocalCache,
        actor_id: str,
    ):
        self._persistence = persistence
        self._cache = cache
        self._actor_id = actor_id

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def _query_accounts(self, scope: Scope) -> list[dict]:
        collection = Collection.ACCOUNTS.value
        if scope == Scope.PERSONAL:
            scoped = await self._persistence.query(collection, [
                QueryFilter(field="owner", value=self._actor_id),
                QueryFilter(field="scope", value=Scope.PERSONAL.value),
            ])
            # Accounts written before scopes existed
            legacy = await self._persistence.query(collection, [
                QueryFilter(field="owner", value=self._actor_id),
                QueryFilter(field="scope", op="missing"),
            ])
            return merge_by_identifier(scoped, legacy)

        shared = await self._persistence.query(collection, [
            QueryFilter(field="scope", value=scope.value),
            QueryFilter(field="sharedWith", op="array-contains", value=self._actor_id),
        ])
        owned = await self._persistence.query(collection, [
            QueryFilter(field="scope", value=scope.value),
            QueryFilter(field="owner", value=self._actor_id),
        ])
        return merge_by_identifier(owned, shared)

    @staticmethod
    def _normalize_accounts(documents: list[dict]) -> list[dict]:
        records = []
        for document in documents:
            try:
                records.append(Account.from_document(document).to_record())
            except (KeyError, ValueError) as e:
                logger.warning("account_unreadable", account_id=document.get("id"), error=str(e))
        return records

    async def load_account_records(self, scope: Scope) -> list[dict]:
        """Normalized account records of one scope, as cached."""
        scope = Scope(scope)
        key = self._cache.accounts_key(scope)

        if self._persistence.is_online():
            try:
                documents = await self._query_accounts(scope)
            except ConnectionError as e:
                logger.warning("accounts_load_offline_fallback", scope=scope.value, error=str(e))
            else:
                records = self._normalize_accounts(documents)
                pending = [r for r in await self._cache.get_records(key) if is_unsynced(r)]
                records = merge_by_identifier(records, pending)
                await self._cache.set_records(key, records)
                logger.debug("accounts_loaded", scope=scope.value, count=len(records))
                return records

        return await self._cache.get_records(key)

    async def load_accounts(self, scope: Scope) -> list[Account]:
        return [Account.from_document(r) for r in await self.load_account_records(scope)]

    async def visible_accounts(self, scope: Optional[Scope] = None) -> list[Account]:
        """Accounts visible to the actor in one scope, or in every scope."""
        scopes = [Scope(scope)] if scope else list(Scope)
        records: list[dict] = []
        for s in scopes:
            records = merge_by_identifier(records, await self.load_account_records(s))
        return [Account.from_document(r) for r in records]

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @staticmethod
    def _to_transactions(records: list[dict]) -> list[Transaction]:
        transactions = []
        for record in records:
            if record.get("deleted"):
                continue
            try:
                transactions.append(Transaction.from_document(record))
            except (KeyError, ValueError) as e:
                logger.warning("transaction_unreadable", transaction_id=record.get("id"), error=str(e))
        return transactions

    async def load_transaction_records(self, account_ids: Iterable[str]) -> list[dict]:
        ids = list(dict.fromkeys(account_ids))
        key = LocalCache.TRANSACTIONS_KEY
        if not ids:
            return []

        if self._persistence.is_online():
            try:
                documents: list[dict] = []
                for start in range(0, len(ids), IN_QUERY_LIMIT):
                    documents.extend(await self._persistence.query(
                        Collection.TRANSACTIONS.value,
                        [QueryFilter(field="accountId", op="in", value=ids[start:start + IN_QUERY_LIMIT])],
                        OrderBy(field="date", descending=True),
                    ))
            except ConnectionError as e:
                logger.warning("transactions_load_offline_fallback", error=str(e))
            else:
                # Server results replace the cached copies of these accounts
                cached = await self._cache.get_records(key)
                kept = [r for r in cached if r.get("accountId") not in ids or is_unsynced(r)]
                merged = merge_transactions(kept, documents)
                await self._cache.set_records(key, merged)
                logger.debug("transactions_loaded", accounts=len(ids), count=len(documents))
                return [r for r in merged if r.get("accountId") in ids]

        return [r for r in await self._cache.get_records(key) if r.get("accountId") in ids]

    async def load_transactions(self, account_ids: Iterable[str]) -> list[Transaction]:
        return self._to_transactions(await self.load_transaction_records(account_ids))

    # =========================================================================
    # LOANS
    # =========================================================================

    async def load_loans(self) -> list[Loan]:
        key = LocalCache.LOANS_KEY
        records = None

        if self._persistence.is_online():
            try:
                documents = await self._persistence.query(
                    Collection.LOANS.value,
                    [QueryFilter(field="userId", value=self._actor_id)],
                    OrderBy(field="createdAt", descending=True),
                )
            except ConnectionError as e:
                logger.warning("loans_load_offline_fallback", error=str(e))
            else:
                records = documents
                await self._cache.set_records(key, records)

        if records is None:
            records = await self._cache.get_records(key)

        loans = []
        for record in records:
            try:
                loans.append(Loan.from_document(record))
            except (KeyError, ValueError) as e:
                logger.warning("loan_unreadable", loan_id=record.get("id"), error=str(e))
        return loans

    # =========================================================================
    # RELOAD
    # =========================================================================

    async def reload(self, collections: Optional[Iterable[Collection]] = None) -> dict[str, int]:
        """
        Reload collections from the remote store into the cache.

        Accounts are reloaded for every scope; transactions for every
        visible account. Returns the number of records loaded per collection.
        """
        wanted = set(collections) if collections else {
            Collection.ACCOUNTS, Collection.TRANSACTIONS, Collection.LOANS,
        }
        counts: dict[str, int] = {}

        accounts: list[Account] = []
        if wanted & {Collection.ACCOUNTS, Collection.TRANSACTIONS}:
            accounts = await self.visible_accounts()
            counts[Collection.ACCOUNTS.value] = len(accounts)

        if Collection.TRANSACTIONS in wanted:
            records = await self.load_transaction_records(a.id for a in accounts)
            counts[Collection.TRANSACTIONS.value] = len(records)

        if Collection.LOANS in wanted:
            counts[Collection.LOANS.value] = len(await self.load_loans())

        logger.info("collections_reloaded", **counts)
        return counts
