"""
Balance Reconciliation Engine

DESIGN DECISION: An account balance is never adjusted incrementally as the
authoritative value. It is recomputed by replaying every non-deleted
transaction of the account on top of its initial balance:

    balance = initialBalance + sum(income) - sum(expense)

ROUNDING: every amount is rounded to 2 places half away from zero first,
then the final balance is rounded again. Decimal sums are exact, so the
result does not depend on transaction order.

The engine only writes when the recomputed balance differs from the stored
one by more than the configured epsilon, which makes a second call with
no intervening mutation a no-op.
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

import structlog

from family_finance.audit import AuditLogger, create_correlation_id
from family_finance.cache import LocalCache
from family_finance.config import ReconciliationSettings, get_settings
from family_finance.loader import RemoteLoader
from family_finance.models.audit import AuditEventBuilder
from family_finance.models.finance import (
    ZERO,
    Account,
    Collection,
    Scope,
    TransactionType,
    money_to_document,
    parse_amount,
    round_money,
    utc_now,
)
from family_finance.models.result import (
    BalanceComputation,
    ErrorKind,
    ReconciliationSummary,
    Result,
)
from family_finance.services.persistence import PersistenceService, QueryFilter, StorageError


logger = structlog.get_logger(__name__)


BALANCE_UPDATE_FAILED = "Unable to update balance, try again"


class BalanceReconciliationEngine:
    """
    Recomputes account balances from their transactions.

    Usage:
        engine = BalanceReconciliationEngine(persistence, cache, actor_id)
        result = await engine.recalculate_account_balance(account_id)
        if result.ok:
            print(result.value)
    """

    def __init__(
        self,
        persistence: PersistenceService,
        cache: LocalCache,
        actor_id: str,
        loader: Optional[RemoteLoader] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[ReconciliationSettings] = None,
    ):
        self._persistence = persistence
        self._cache = cache
        self._actor_id = actor_id
        self._loader = loader or RemoteLoader(persistence, cache, actor_id)
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().reconciliation

    # =========================================================================
    # PURE FOLD
    # =========================================================================

    def compute_balance(
        self,
        initial_balance,
        documents: Iterable[dict],
    ) -> BalanceComputation:
        """
        Fold transaction documents into a balance.

        Documents flagged `deleted` are ignored. Documents with an
        unparseable or negative amount, or an unknown type, are skipped
        and counted in `error_count`.
        """
        places = self._settings.money_places
        initial = parse_amount(initial_balance)
        initial = round_money(initial, places) if initial is not None else ZERO

        income = ZERO
        expense = ZERO
        processed = 0
        skipped: list[str] = []

        for document in documents:
            if document.get("deleted"):
                continue

            amount = parse_amount(document.get("amount"))
            tx_type = document.get("type")

            if amount is None or amount < 0 or tx_type not in (
                TransactionType.INCOME.value,
                TransactionType.EXPENSE.value,
            ):
                skipped.append(str(document.get("id")))
                logger.warning(
                    "transaction_skipped",
                    transaction_id=document.get("id"),
                    account_id=document.get("accountId"),
                    raw_amount=repr(document.get("amount")),
                    raw_type=repr(tx_type),
                )
                continue

            amount = round_money(amount, places)
            if tx_type == TransactionType.INCOME.value:
                income += amount
            else:
                expense += amount
            processed += 1

        return BalanceComputation(
            balance=round_money(initial + income - expense, places),
            income_total=round_money(income, places),
            expense_total=round_money(expense, places),
            processed_count=processed,
            error_count=len(skipped),
            skipped_ids=skipped,
        )

    def _differs(self, stored: Optional[Decimal], computed: Decimal) -> bool:
        if stored is None:
            return True
        return abs(computed - stored) > Decimal(str(self._settings.balance_epsilon))

    # =========================================================================
    # SINGLE ACCOUNT
    # =========================================================================

    async def recalculate_account_balance(
        self,
        account_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> Result[Decimal]:
        """
        Recompute one account's balance and persist it if it drifted.

        Raises:
            StorageError: On unexpected persistence faults
        """
        result, _, _ = await self._recalculate(account_id, correlation_id)
        return result

    async def _recalculate(
        self,
        account_id: str,
        correlation_id: Optional[UUID],
    ) -> tuple[Result[Decimal], Optional[BalanceComputation], bool]:
        """Returns (result, computation, corrected)."""
        document = await self._persistence.get_by_id(Collection.ACCOUNTS.value, account_id)
        if document is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Account {account_id} not found"), None, False

        try:
            account = Account.from_document(document)
        except ValueError as e:
            return Result.failure(ErrorKind.INTEGRITY, f"Account {account_id} unreadable: {e}"), None, False

        if not account.can_access(self._actor_id):
            return Result.failure(
                ErrorKind.PERMISSION,
                "You don't have permission to update this account",
            ), None, False

        transactions = await self._persistence.query(
            Collection.TRANSACTIONS.value,
            [QueryFilter(field="accountId", value=account_id)],
        )
        computation = self.compute_balance(account.initial_balance, transactions)

        if self._audit_logger:
            for skipped_id in computation.skipped_ids:
                await self._audit_logger.log(AuditEventBuilder.transaction_skipped(
                    transaction_id=skipped_id,
                    account_id=account_id,
                    reason="unparseable amount or unknown type",
                    correlation_id=correlation_id,
                ))

        stored = parse_amount(document.get("balance"))
        corrected = False
        new_balance = money_to_document(computation.balance)

        if self._differs(stored, computation.balance):
            updated = await self._persistence.update(
                Collection.ACCOUNTS.value,
                account_id,
                {"balance": new_balance, "updatedAt": utc_now().isoformat()},
            )
            if not updated:
                logger.error("balance_update_failed", account_id=account_id)
                if self._audit_logger:
                    await self._audit_logger.log(AuditEventBuilder.balance_recalculation_failed(
                        account_id=account_id,
                        error_message="update returned failure",
                        actor_id=self._actor_id,
                        correlation_id=correlation_id,
                    ))
                return Result.failure(ErrorKind.SYNC, BALANCE_UPDATE_FAILED), computation, False

            corrected = True
            logger.info(
                "balance_corrected",
                account_id=account_id,
                previous_balance=str(stored),
                new_balance=str(computation.balance),
            )
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.balance_corrected(
                    account_id=account_id,
                    previous_balance=str(stored),
                    new_balance=str(computation.balance),
                    actor_id=self._actor_id,
                    correlation_id=correlation_id,
                ))

        await self._cache.patch_account(account_id, {"balance": new_balance})

        logger.debug(
            "balance_recalculated",
            account_id=account_id,
            balance=str(computation.balance),
            processed=computation.processed_count,
            errors=computation.error_count,
        )
        return Result.success(computation.balance), computation, corrected

    # =========================================================================
    # BATCH
    # =========================================================================

    async def recalculate_all_account_balances(
        self,
        scope: Optional[Scope] = None,
    ) -> Result[ReconciliationSummary]:
        """
        Recalculate every account visible to the actor.

        A failure on one account is recorded and the batch continues.
        The result is successful even when some accounts failed; check
        `summary.failed`.
        """
        correlation_id = create_correlation_id()
        try:
            accounts = await self._loader.visible_accounts(scope)
        except StorageError as e:
            logger.error("reconciliation_accounts_unavailable", error=str(e))
            return Result.failure(ErrorKind.SYNC, BALANCE_UPDATE_FAILED)

        summary = ReconciliationSummary()

        for account in accounts:
            # Not on the server yet
            if account.temp_id and account.temp_id == account.id:
                continue

            try:
                result, computation, corrected = await self._recalculate(account.id, correlation_id)
            except StorageError as e:
                result = Result.failure(ErrorKind.SYNC, str(e))
                computation, corrected = None, False

            if not result.ok:
                summary.failed += 1
                summary.failures[account.id] = result.error_message or ""
                logger.warning(
                    "account_recalculation_failed",
                    account_id=account.id,
                    error_kind=result.error_kind.value,
                    error=result.error_message,
                )
                continue

            summary.processed += 1
            if corrected:
                summary.corrected += 1
            else:
                summary.unchanged += 1
            if computation:
                summary.transaction_errors += computation.error_count

        logger.info(
            "reconciliation_finished",
            processed=summary.processed,
            failed=summary.failed,
            corrected=summary.corrected,
            transaction_errors=summary.transaction_errors,
        )
        return Result.success(summary)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def backfill_initial_balances(self) -> Result[int]:
        """
        Give every account of the actor lacking `initialBalance` one equal
        to its current balance. Returns the number of accounts updated.
        """
        try:
            documents = await self._persistence.query(
                Collection.ACCOUNTS.value,
                [QueryFilter(field="owner", value=self._actor_id)],
            )
        except StorageError as e:
            return Result.failure(ErrorKind.SYNC, str(e))

        updated = 0
        for document in documents:
            if document.get("initialBalance") is not None:
                continue

            balance = parse_amount(document.get("balance"))
            initial = money_to_document(balance if balance is not None else ZERO)
            if not await self._persistence.update(
                Collection.ACCOUNTS.value,
                document["id"],
                {"initialBalance": initial},
            ):
                logger.warning("initial_balance_backfill_failed", account_id=document["id"])
                continue

            updated += 1
            await self._cache.patch_account(document["id"], {"initialBalance": initial})
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.initial_balance_backfilled(
                    account_id=document["id"],
                    initial_balance=str(initial),
                    actor_id=self._actor_id,
                ))

        logger.info("initial_balances_backfilled", updated=updated, scanned=len(documents))
        return Result.success(updated)
