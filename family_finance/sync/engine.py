"""
Offline Sync Engine

DESIGN DECISION: Mutations made offline take effect in two phases.

PHASE 1 - apply_optimistically():
- The local cache is changed immediately so the UI reflects the mutation
- Cached account balances are nudged by the signed transaction delta
- Nothing here is authoritative

PHASE 2 - drain():
- Queued operations are replayed against the remote store strictly in
  enqueue order, one at a time
- Temporary ids are translated to server ids as creates succeed
- The first failure halts the pass; the failed operation and everything
  after it stay queued (at-least-once, in order)
- Once a pass leaves the queue empty the collections are reloaded and
  every visible balance is recalculated, which overwrites whatever phase 1
  guessed. Operations queued while a pass runs keep the id map alive for
  the next pass
"""

import asyncio
from decimal import Decimal
from typing import Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from family_finance.audit import AuditLogger, create_correlation_id
from family_finance.cache import LocalCache
from family_finance.config import SyncSettings, get_settings
from family_finance.loader import RemoteLoader
from family_finance.models.audit import AuditEventBuilder
from family_finance.models.finance import (
    ZERO,
    Collection,
    Scope,
    TransactionType,
    money_to_document,
    parse_amount,
    round_money,
)
from family_finance.models.result import DrainSummary
from family_finance.models.sync import OperationKind, OperationState, PendingOperation
from family_finance.reconciliation import BalanceReconciliationEngine
from family_finance.services.persistence import ConnectionError, PersistenceService, StorageError
from family_finance.sync.queue import PendingOperationQueue


logger = structlog.get_logger(__name__)


# Payload fields that hold the id of another entity
REFERENCE_FIELDS = ("accountId",)


class ReplayRejectedError(StorageError):
    """The remote store refused a replayed update or delete."""
    pass


def signed_amount(record: Optional[dict]) -> Decimal:
    """Balance contribution of a cached transaction record (0 if unreadable)."""
    if not record or record.get("deleted"):
        return ZERO
    amount = parse_amount(record.get("amount"))
    if amount is None or amount < 0:
        return ZERO
    amount = round_money(amount)
    if record.get("type") == TransactionType.INCOME.value:
        return amount
    if record.get("type") == TransactionType.EXPENSE.value:
        return -amount
    return ZERO


class SyncEngine:
    """
    Applies queued operations locally, then replays them remotely.

    Usage:
        engine = SyncEngine(persistence, queue, cache, loader, reconciliation)
        await engine.apply_optimistically(operation)
        summary = await engine.drain()
    """

    def __init__(
        self,
        persistence: PersistenceService,
        queue: PendingOperationQueue,
        cache: LocalCache,
        loader: RemoteLoader,
        reconciliation: BalanceReconciliationEngine,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
    ):
        self._persistence = persistence
        self._queue = queue
        self._cache = cache
        self._loader = loader
        self._reconciliation = reconciliation
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().sync
        self._draining = False
        self._was_online = persistence.is_online()

    @property
    def is_draining(self) -> bool:
        return self._draining

    # =========================================================================
    # PHASE 1 - OPTIMISTIC LOCAL APPLICATION
    # =========================================================================

    async def apply_optimistically(self, operation: PendingOperation) -> None:
        """Reflect a queued operation in the local cache."""
        if operation.collection == Collection.ACCOUNTS.value:
            await self._apply_account(operation)
        elif operation.collection == Collection.TRANSACTIONS.value:
            await self._apply_transaction(operation)
        else:
            await self._apply_generic(LocalCache.LOANS_KEY, operation)

        logger.debug(
            "operation_applied_locally",
            operation_id=operation.operation_id,
            kind=operation.kind.value,
            collection=operation.collection,
            entity_id=operation.entity_id,
        )

    @staticmethod
    def _created_record(operation: PendingOperation) -> dict:
        return {**operation.payload, "id": operation.temp_id, "_offlineId": operation.temp_id}

    async def _apply_account(self, operation: PendingOperation) -> None:
        if operation.kind == OperationKind.CREATE:
            record = self._created_record(operation)
            scope = record.get("scope") or Scope.PERSONAL.value
            await self._cache.upsert_record(self._cache.accounts_key(Scope(scope)), record)
        elif operation.kind == OperationKind.UPDATE:
            await self._cache.patch_account(operation.entity_id, operation.payload)
        else:
            for key in self._cache.account_keys():
                await self._cache.remove_record(key, operation.entity_id)

    async def _apply_transaction(self, operation: PendingOperation) -> None:
        key = LocalCache.TRANSACTIONS_KEY

        if operation.kind == OperationKind.CREATE:
            record = self._created_record(operation)
            await self._cache.upsert_record(key, record)
            await self._adjust_cached_balance(record.get("accountId"), signed_amount(record))
            return

        found = await self._cache.find_record([key], operation.entity_id)
        previous = found[1] if found else None

        if operation.kind == OperationKind.UPDATE:
            current = await self._cache.patch_record(key, operation.entity_id, operation.payload)
            if previous is not None:
                await self._adjust_cached_balance(previous.get("accountId"), -signed_amount(previous))
            if current is not None:
                await self._adjust_cached_balance(current.get("accountId"), signed_amount(current))
        else:
            await self._cache.remove_record(key, operation.entity_id)
            if previous is not None:
                await self._adjust_cached_balance(previous.get("accountId"), -signed_amount(previous))

    async def _apply_generic(self, key: str, operation: PendingOperation) -> None:
        if operation.kind == OperationKind.CREATE:
            await self._cache.upsert_record(key, self._created_record(operation))
        elif operation.kind == OperationKind.UPDATE:
            await self._cache.patch_record(key, operation.entity_id, operation.payload)
        else:
            await self._cache.remove_record(key, operation.entity_id)

    async def _adjust_cached_balance(self, account_id: Optional[str], delta: Decimal) -> None:
        if not account_id or delta == ZERO:
            return
        account = await self._cache.find_account(account_id)
        if account is None:
            return
        current = parse_amount(account.get("balance")) or ZERO
        await self._cache.patch_account(
            account_id,
            {"balance": money_to_document(round_money(current + delta))},
        )

    # =========================================================================
    # PHASE 2 - DRAIN
    # =========================================================================

    @staticmethod
    def _resolve(operation: PendingOperation, id_map: dict[str, str]) -> PendingOperation:
        """Copy of the operation with temporary ids translated to server ids."""
        payload = dict(operation.payload)
        for field in REFERENCE_FIELDS:
            value = payload.get(field)
            if isinstance(value, str) and value in id_map:
                payload[field] = id_map[value]

        entity_id = operation.entity_id
        if operation.kind != OperationKind.CREATE and entity_id in id_map:
            entity_id = id_map[entity_id]

        return operation.model_copy(update={"payload": payload, "entity_id": entity_id})

    async def _submit(self, operation: PendingOperation) -> Optional[str]:
        """Send one operation to the remote store. Returns the server id for creates."""
        collection = operation.collection

        if operation.kind == OperationKind.CREATE:
            document = dict(operation.payload)
            document.pop("id", None)
            document["_offlineId"] = operation.temp_id
            return await self._persistence.create(collection, document)

        if operation.kind == OperationKind.UPDATE:
            if not await self._persistence.update(collection, operation.entity_id, operation.payload):
                raise ReplayRejectedError(f"Update of {operation.entity_id} in {collection} was rejected")
            return None

        if not await self._persistence.delete(collection, operation.entity_id):
            raise ReplayRejectedError(f"Delete of {operation.entity_id} in {collection} was rejected")
        return None

    async def _submit_with_retry(self, operation: PendingOperation) -> Optional[str]:
        """Retry connection faults and timeouts; anything else fails at once."""
        timeout = self._settings.operation_timeout_seconds

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.retry_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self._settings.retry_wait_min,
                max=self._settings.retry_wait_max,
            ),
            retry=retry_if_exception_type((ConnectionError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                if timeout:
                    return await asyncio.wait_for(self._submit(operation), timeout)
                return await self._submit(operation)

    async def drain(self) -> DrainSummary:
        """
        Replay the queue in order.

        Returns a skipped summary when offline or when another drain is
        running. Never raises because of an individual operation.
        """
        if not self._persistence.is_online():
            return DrainSummary(skipped=True, skip_reason="offline")
        if self._draining:
            return DrainSummary(skipped=True, skip_reason="drain already in progress")

        self._draining = True
        try:
            return await self._drain()
        finally:
            self._draining = False

    async def _drain(self) -> DrainSummary:
        correlation_id = create_correlation_id()
        id_map = await self._queue.get_id_map()
        summary = DrainSummary()
        operations = await self._queue.list()

        logger.info("drain_started", queued=len(operations))

        for operation in operations:
            summary.attempted += 1
            operation.state = OperationState.REPLAYING
            await self._queue.update(operation)

            resolved = self._resolve(operation, id_map)
            try:
                server_id = await self._submit_with_retry(resolved)
            except (StorageError, asyncio.TimeoutError) as e:
                error = str(e) or type(e).__name__
                operation.state = OperationState.FAILED_RETRYABLE
                operation.retry_count += 1
                operation.last_error = error
                await self._queue.update(operation)

                summary.failed_operation_id = operation.operation_id
                summary.error_message = error
                logger.warning(
                    "drain_halted",
                    operation_id=operation.operation_id,
                    kind=operation.kind.value,
                    collection=operation.collection,
                    retry_count=operation.retry_count,
                    error=error,
                )
                if self._audit_logger:
                    await self._audit_logger.log(AuditEventBuilder.operation_failed(
                        operation_id=operation.operation_id,
                        kind=operation.kind.value,
                        collection=operation.collection,
                        error_message=error,
                        retry_count=operation.retry_count,
                        correlation_id=correlation_id,
                    ))
                break

            if operation.kind == OperationKind.CREATE and server_id:
                id_map = await self._queue.record_mapping(operation.temp_id, server_id)
                summary.id_mappings[operation.temp_id] = server_id
                await self._cache.replace_identifier(operation.temp_id, server_id)

            operation.state = OperationState.APPLIED
            await self._queue.remove(operation.operation_id)
            summary.applied += 1

            logger.info(
                "operation_replayed",
                operation_id=operation.operation_id,
                kind=operation.kind.value,
                collection=operation.collection,
                entity_id=resolved.entity_id,
                server_id=server_id,
            )
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.operation_replayed(
                    operation_id=operation.operation_id,
                    kind=operation.kind.value,
                    collection=operation.collection,
                    entity_id=resolved.entity_id,
                    server_id=server_id,
                    correlation_id=correlation_id,
                ))

        summary.remaining = await self._queue.size()

        if summary.completed and summary.attempted and summary.remaining == 0:
            await self._after_full_drain(summary)

        if self._audit_logger and summary.attempted:
            await self._audit_logger.log(AuditEventBuilder.drain_finished(
                applied=summary.applied,
                remaining=summary.remaining,
                halted=not summary.completed,
                correlation_id=correlation_id,
            ))
        return summary

    async def _after_full_drain(self, summary: DrainSummary) -> None:
        """Reload from the server and let reconciliation overwrite optimistic state."""
        await self._queue.clear_id_map()
        try:
            await self._loader.reload()
        except StorageError as e:
            logger.warning("post_drain_reload_failed", error=str(e))
            return

        result = await self._reconciliation.recalculate_all_account_balances()
        if result.ok:
            summary.reconciliation = result.value
        else:
            logger.warning("post_drain_reconciliation_failed", error=result.error_message)

    # =========================================================================
    # CONNECTIVITY
    # =========================================================================

    async def handle_connectivity_change(self, is_online: bool) -> Optional[DrainSummary]:
        """
        Drain when connectivity returns, or when online with work queued.
        Returns None when nothing was attempted.
        """
        came_online = is_online and not self._was_online
        self._was_online = is_online
        if not is_online:
            logger.info("connectivity_lost")
            return None

        if came_online or not await self._queue.is_empty():
            logger.info("connectivity_restored", came_online=came_online)
            return await self.drain()
        return None

