"""
Finance Store

The composition root of the sync core. A FinanceStore is created once per
signed-in user and owns the cache, the offline queue, the loader, both
engines and the audit logger. Nothing is kept in module-level state.

DESIGN DECISION: Every mutation follows the same route:

1. Validate the input (nothing is touched on failure)
2. If online: check existence and permission, write remotely, recalculate
   the balance of every affected account, mirror the change into the cache
3. If offline: check existence and permission against the cache, enqueue
   the operation, apply it optimistically, return the entity under its
   temporary id

Expected failures (invalid input, not found, permission, rejected remote
write) come back as a `Result`. Only unexpected read faults raise.
"""

from datetime import date, datetime
from typing import Any, Awaitable, Iterable, Optional, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError

from family_finance.audit import AuditLogger, PersistenceAuditStorage
from family_finance.cache import LocalCache
from family_finance.config import Settings, get_settings
from family_finance.loader import RemoteLoader
from family_finance.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from family_finance.models.finance import (
    ZERO,
    Account,
    Collection,
    Loan,
    LoanPayment,
    LoanStatus,
    LoanType,
    Scope,
    Transaction,
    TransactionType,
    money_to_document,
    parse_amount,
    parse_timestamp,
    round_money,
    utc_now,
)
from family_finance.models.result import DrainSummary, ErrorKind, ReconciliationSummary, Result
from family_finance.models.sync import OperationKind, PendingOperation
from family_finance.reconciliation import BalanceReconciliationEngine
from family_finance.reports import IncomeExpenseReport, build_income_expense_report
from family_finance.services.persistence import (
    InMemoryPersistenceService,
    PersistenceService,
    StorageError,
)
from family_finance.sync import PendingOperationQueue, SyncEngine
from family_finance.validation import FinanceValidator, issues_to_failure


logger = structlog.get_logger(__name__)


# Placeholder id of a model built only to produce a document
_DRAFT_ID = "draft"

# Fields no update may change
_ACCOUNT_IMMUTABLE = ("initialBalance", "balance", "owner", "createdAt")
_READ_ONLY_KEYS = ("id", "_offlineId", "createdAt", "createdBy")

LOANS_REQUIRE_CONNECTIVITY = "Loans can only be changed while online"


def _constraint_failure(error: ValidationError) -> Result:
    """A VALIDATION failure naming each field a model rejected."""
    return Result.failure(ErrorKind.VALIDATION, "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()
    ))


class FinanceStore:
    """
    Entity mutation API over the reconciliation and sync engines.

    Usage:
        store = create_finance_store(persistence, actor_id="user-1")
        result = await store.create_transaction({
            "accountId": account_id, "type": "expense", "amount": 12.5,
        })
        if not result.ok:
            show(result.error_message)
    """

    def __init__(
        self,
        persistence: PersistenceService,
        actor_id: str,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
        id_factory=None,
    ):
        settings = settings or get_settings()
        self._persistence = persistence
        self._actor_id = actor_id
        self._audit_logger = audit_logger
        self._default_currency = settings.app.default_currency

        self.cache = LocalCache(persistence, settings.cache)
        self.queue = PendingOperationQueue(persistence, settings.sync, id_factory=id_factory)
        self.loader = RemoteLoader(persistence, self.cache, actor_id)
        self.reconciliation = BalanceReconciliationEngine(
            persistence,
            self.cache,
            actor_id,
            loader=self.loader,
            audit_logger=audit_logger,
            settings=settings.reconciliation,
        )
        self.sync_engine = SyncEngine(
            persistence,
            self.queue,
            self.cache,
            self.loader,
            self.reconciliation,
            audit_logger=audit_logger,
            settings=settings.sync,
        )
        self.validator = FinanceValidator()

    @property
    def actor_id(self) -> str:
        return self._actor_id

    def is_online(self) -> bool:
        return self._persistence.is_online()

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _audit(self, event: AuditEvent) -> None:
        if self._audit_logger:
            await self._audit_logger.log(event)

    async def _reject(self, collection: Collection, entity_id: Optional[str], result: Result) -> Result:
        logger.info(
            "mutation_rejected",
            collection=collection.value,
            entity_id=entity_id,
            error_kind=result.error_kind.value,
            error=result.error_message,
        )
        await self._audit(AuditEventBuilder.mutation_rejected(
            collection=collection.value,
            entity_id=entity_id,
            error_kind=result.error_kind.value,
            error_message=result.error_message or "",
            actor_id=self._actor_id,
        ))
        return result

    async def _mutated(
        self,
        event_type: AuditEventType,
        collection: Collection,
        entity_id: str,
        offline: bool = False,
    ) -> None:
        await self._audit(AuditEventBuilder.entity_mutated(
            event_type=event_type,
            collection=collection.value,
            entity_id=entity_id,
            actor_id=self._actor_id,
            offline=offline,
        ))

    async def _write(self, action: str, call: Awaitable) -> Result:
        """Await a remote write; a refusal or storage fault becomes a SYNC failure."""
        try:
            value = await call
        except StorageError as e:
            logger.error("remote_write_failed", action=action, error=str(e))
            return Result.failure(ErrorKind.SYNC, f"{action} failed, try again")
        if value is False:
            logger.error("remote_write_refused", action=action)
            return Result.failure(ErrorKind.SYNC, f"{action} failed, try again")
        return Result.success(value)

    async def _enqueue(
        self,
        kind: OperationKind,
        collection: Collection,
        payload: dict,
        entity_id: Optional[str] = None,
    ) -> PendingOperation:
        operation = await self.queue.enqueue(kind, collection.value, payload, entity_id=entity_id)
        await self.sync_engine.apply_optimistically(operation)
        await self._audit(AuditEventBuilder.operation_queued(
            operation_id=operation.operation_id,
            kind=kind.value,
            collection=collection.value,
            entity_id=operation.entity_id,
            actor_id=self._actor_id,
        ))
        return operation

    async def _recalculate(self, account_ids: Iterable[Optional[str]]) -> None:
        """Recalculate each affected account once; failures are logged, not returned."""
        for account_id in dict.fromkeys(a for a in account_ids if a):
            try:
                result = await self.reconciliation.recalculate_account_balance(account_id)
            except StorageError as e:
                result = Result.failure(ErrorKind.SYNC, str(e))
            if not result.ok:
                logger.warning(
                    "balance_recalculation_failed",
                    account_id=account_id,
                    error_kind=result.error_kind.value,
                    error=result.error_message,
                )

    @staticmethod
    def _parse_account(document: dict) -> Result[Account]:
        try:
            return Result.success(Account.from_document(document))
        except ValueError as e:
            return Result.failure(ErrorKind.INTEGRITY, f"Account {document.get('id')} unreadable: {e}")

    async def _account_for_write(self, account_id: str, require_owner: bool = False) -> Result[Account]:
        """Look up an account remotely (online) or in the cache (offline) and check access."""
        if self.is_online():
            document = await self._persistence.get_by_id(Collection.ACCOUNTS.value, account_id)
        else:
            document = await self.cache.find_account(account_id)

        if document is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Account {account_id} not found")

        parsed = self._parse_account(document)
        if not parsed.ok:
            return parsed

        account = parsed.value
        allowed = account.can_delete(self._actor_id) if require_owner else account.can_access(self._actor_id)
        if not allowed:
            return Result.failure(ErrorKind.PERMISSION, "You don't have permission to modify this account")
        return parsed

    async def _transaction_for_write(self, transaction_id: str) -> Result[dict]:
        """Look up a transaction record and check the actor may change it."""
        if self.is_online():
            document = await self._persistence.get_by_id(Collection.TRANSACTIONS.value, transaction_id)
        else:
            found = await self.cache.find_record([LocalCache.TRANSACTIONS_KEY], transaction_id)
            document = found[1] if found else None

        if document is None or document.get("deleted"):
            return Result.failure(ErrorKind.NOT_FOUND, f"Transaction {transaction_id} not found")

        account = await self._account_for_write(document.get("accountId") or "")
        if account.ok:
            return Result.success(document)

        # Orphaned by a deleted account; its author may still change it
        if account.error_kind == ErrorKind.NOT_FOUND and document.get("createdBy") == self._actor_id:
            return Result.success(document)
        return account

    @staticmethod
    def _normalize_transaction_changes(changes: dict) -> dict:
        normalized = {k: v for k, v in changes.items() if k not in _READ_ONLY_KEYS}
        if "amount" in normalized:
            normalized["amount"] = money_to_document(parse_amount(normalized["amount"]))
        if normalized.get("date"):
            normalized["date"] = parse_timestamp(normalized["date"]).isoformat()
        return normalized

    # =========================================================================
    # READS
    # =========================================================================

    async def load_accounts(self, scope: Scope = Scope.PERSONAL) -> Result[list[Account]]:
        return Result.success(await self.loader.load_accounts(Scope(scope)))

    async def load_transactions(self, scope: Scope = Scope.PERSONAL) -> Result[list[Transaction]]:
        accounts = await self.loader.load_accounts(Scope(scope))
        return Result.success(await self.loader.load_transactions(a.id for a in accounts))

    async def load_loans(self) -> Result[list[Loan]]:
        return Result.success(await self.loader.load_loans())

    async def pending_operations(self) -> list[PendingOperation]:
        return await self.queue.list()

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def create_account(self, data: dict) -> Result[Account]:
        """
        Create an account. `initialBalance` is fixed to the opening balance
        and never changes afterwards.
        """
        failure = issues_to_failure(self.validator.validate_account_input(data))
        if failure:
            return await self._reject(Collection.ACCOUNTS, None, failure)

        opening = data.get("balance", data.get("initialBalance", 0))
        balance = parse_amount(opening) if opening is not None else ZERO
        now = utc_now()
        try:
            account = Account(
                id=_DRAFT_ID,
                owner=self._actor_id,
                name=data["name"],
                scope=Scope(data.get("scope") or Scope.PERSONAL.value),
                currency=data.get("currency") or self._default_currency,
                account_type=data.get("type"),
                initial_balance=balance,
                balance=balance,
                shared_with=list(data.get("sharedWith") or []),
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            return await self._reject(Collection.ACCOUNTS, None, _constraint_failure(e))
        document = account.to_document()

        if not self.is_online():
            operation = await self._enqueue(OperationKind.CREATE, Collection.ACCOUNTS, document)
            account = account.model_copy(update={"id": operation.temp_id, "temp_id": operation.temp_id})
            await self._mutated(AuditEventType.ENTITY_CREATED, Collection.ACCOUNTS, account.id, offline=True)
            return Result.success(account)

        written = await self._write(
            "Create account",
            self._persistence.create(Collection.ACCOUNTS.value, document),
        )
        if not written.ok:
            return await self._reject(Collection.ACCOUNTS, None, written)

        account = account.model_copy(update={"id": written.value})
        await self.cache.upsert_record(self.cache.accounts_key(account.scope), account.to_record())
        await self._mutated(AuditEventType.ENTITY_CREATED, Collection.ACCOUNTS, account.id)
        logger.info("account_created", account_id=account.id, scope=account.scope.value)
        return Result.success(account)

    async def update_account(self, account_id: str, changes: dict) -> Result[Account]:
        immutable = [k for k in _ACCOUNT_IMMUTABLE if k in changes]
        if immutable:
            return await self._reject(Collection.ACCOUNTS, account_id, Result.failure(
                ErrorKind.VALIDATION,
                f"{', '.join(immutable)} cannot be changed",
            ))

        failure = issues_to_failure(self.validator.validate_account_input(changes, partial=True))
        if failure:
            return await self._reject(Collection.ACCOUNTS, account_id, failure)

        found = await self._account_for_write(account_id)
        if not found.ok:
            return await self._reject(Collection.ACCOUNTS, account_id, found)

        changes = {k: v for k, v in changes.items() if k not in _READ_ONLY_KEYS}
        if "currency" in changes:
            changes["currency"] = changes["currency"].strip().upper()
        changes["updatedAt"] = utc_now().isoformat()
        try:
            updated = Account.from_document({**found.value.to_record(), **changes})
        except ValidationError as e:
            return await self._reject(Collection.ACCOUNTS, account_id, _constraint_failure(e))

        if not self.is_online():
            await self._enqueue(OperationKind.UPDATE, Collection.ACCOUNTS, changes, entity_id=account_id)
            await self._mutated(AuditEventType.ENTITY_UPDATED, Collection.ACCOUNTS, account_id, offline=True)
            return Result.success(updated)

        written = await self._write(
            "Update account",
            self._persistence.update(Collection.ACCOUNTS.value, account_id, changes),
        )
        if not written.ok:
            return await self._reject(Collection.ACCOUNTS, account_id, written)

        # The scope may have moved the account to another cached list
        for key in self.cache.account_keys():
            await self.cache.remove_record(key, account_id)
        await self.cache.upsert_record(self.cache.accounts_key(updated.scope), updated.to_record())
        await self._mutated(AuditEventType.ENTITY_UPDATED, Collection.ACCOUNTS, account_id)
        return Result.success(updated)

    async def delete_account(self, account_id: str) -> Result[str]:
        """
        Delete an account (owner only). Its transactions are left in place.
        """
        found = await self._account_for_write(account_id, require_owner=True)
        if not found.ok:
            return await self._reject(Collection.ACCOUNTS, account_id, found)

        if not self.is_online():
            await self._enqueue(OperationKind.DELETE, Collection.ACCOUNTS, {}, entity_id=account_id)
            await self._mutated(AuditEventType.ENTITY_DELETED, Collection.ACCOUNTS, account_id, offline=True)
            return Result.success(account_id)

        written = await self._write(
            "Delete account",
            self._persistence.delete(Collection.ACCOUNTS.value, account_id),
        )
        if not written.ok:
            return await self._reject(Collection.ACCOUNTS, account_id, written)

        for key in self.cache.account_keys():
            await self.cache.remove_record(key, account_id)
        await self._mutated(AuditEventType.ENTITY_DELETED, Collection.ACCOUNTS, account_id)
        logger.info("account_deleted", account_id=account_id)
        return Result.success(account_id)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def create_transaction(self, data: dict) -> Result[Transaction]:
        failure = issues_to_failure(self.validator.validate_transaction_input(data))
        if failure:
            return await self._reject(Collection.TRANSACTIONS, None, failure)

        account = await self._account_for_write(data["accountId"])
        if not account.ok:
            return await self._reject(Collection.TRANSACTIONS, None, account)

        now = utc_now()
        try:
            transaction = Transaction(
                id=_DRAFT_ID,
                account_id=data["accountId"],
                type=TransactionType(data["type"]),
                amount=parse_amount(data["amount"]),
                category=data.get("category"),
                description=data.get("description"),
                date=parse_timestamp(data.get("date")) or now,
                created_by=self._actor_id,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            return await self._reject(Collection.TRANSACTIONS, None, _constraint_failure(e))
        document = transaction.to_document()

        if not self.is_online():
            operation = await self._enqueue(OperationKind.CREATE, Collection.TRANSACTIONS, document)
            transaction = transaction.model_copy(update={
                "id": operation.temp_id,
                "temp_id": operation.temp_id,
            })
            await self._mutated(
                AuditEventType.ENTITY_CREATED, Collection.TRANSACTIONS, transaction.id, offline=True,
            )
            return Result.success(transaction)

        written = await self._write(
            "Create transaction",
            self._persistence.create(Collection.TRANSACTIONS.value, document),
        )
        if not written.ok:
            return await self._reject(Collection.TRANSACTIONS, None, written)

        transaction = transaction.model_copy(update={"id": written.value})
        await self.cache.upsert_record(LocalCache.TRANSACTIONS_KEY, transaction.to_record())
        await self._recalculate([transaction.account_id])
        await self._mutated(AuditEventType.ENTITY_CREATED, Collection.TRANSACTIONS, transaction.id)
        return Result.success(transaction)

    async def update_transaction(self, transaction_id: str, changes: dict) -> Result[Transaction]:
        """
        Update a transaction. When amount, type or account change, the old
        account and (if different) the new one are recalculated.
        """
        failure = issues_to_failure(self.validator.validate_transaction_input(changes, partial=True))
        if failure:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, failure)

        found = await self._transaction_for_write(transaction_id)
        if not found.ok:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, found)
        current = found.value

        changes = self._normalize_transaction_changes(changes)
        old_account = current.get("accountId")
        new_account = changes.get("accountId", old_account)
        if new_account != old_account:
            target = await self._account_for_write(new_account)
            if not target.ok:
                return await self._reject(Collection.TRANSACTIONS, transaction_id, target)

        changes["updatedAt"] = utc_now().isoformat()
        try:
            updated = Transaction.from_document({**current, **changes})
        except ValidationError as e:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, _constraint_failure(e))
        except ValueError as e:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, Result.failure(
                ErrorKind.INTEGRITY, f"Transaction {transaction_id} unreadable: {e}",
            ))

        if not self.is_online():
            await self._enqueue(OperationKind.UPDATE, Collection.TRANSACTIONS, changes, entity_id=transaction_id)
            await self._mutated(
                AuditEventType.ENTITY_UPDATED, Collection.TRANSACTIONS, transaction_id, offline=True,
            )
            return Result.success(updated)

        written = await self._write(
            "Update transaction",
            self._persistence.update(Collection.TRANSACTIONS.value, transaction_id, changes),
        )
        if not written.ok:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, written)

        await self.cache.upsert_record(LocalCache.TRANSACTIONS_KEY, {**current, **changes})
        if any(k in changes for k in ("amount", "type", "accountId")):
            await self._recalculate([old_account, new_account])
        await self._mutated(AuditEventType.ENTITY_UPDATED, Collection.TRANSACTIONS, transaction_id)
        return Result.success(updated)

    async def delete_transaction(self, transaction_id: str) -> Result[str]:
        found = await self._transaction_for_write(transaction_id)
        if not found.ok:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, found)

        if not self.is_online():
            await self._enqueue(OperationKind.DELETE, Collection.TRANSACTIONS, {}, entity_id=transaction_id)
            await self._mutated(
                AuditEventType.ENTITY_DELETED, Collection.TRANSACTIONS, transaction_id, offline=True,
            )
            return Result.success(transaction_id)

        written = await self._write(
            "Delete transaction",
            self._persistence.delete(Collection.TRANSACTIONS.value, transaction_id),
        )
        if not written.ok:
            return await self._reject(Collection.TRANSACTIONS, transaction_id, written)

        await self.cache.remove_record(LocalCache.TRANSACTIONS_KEY, transaction_id)
        await self._recalculate([found.value.get("accountId")])
        await self._mutated(AuditEventType.ENTITY_DELETED, Collection.TRANSACTIONS, transaction_id)
        return Result.success(transaction_id)

    # =========================================================================
    # LOANS (online only)
    # =========================================================================

    def _loans_offline(self) -> Optional[Result]:
        if self.is_online():
            return None
        return Result.failure(ErrorKind.SYNC, LOANS_REQUIRE_CONNECTIVITY)

    async def _get_loan(self, loan_id: str) -> Result[Loan]:
        document = await self._persistence.get_by_id(Collection.LOANS.value, loan_id)
        if document is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Loan {loan_id} not found")
        try:
            loan = Loan.from_document(document)
        except ValueError as e:
            return Result.failure(ErrorKind.INTEGRITY, f"Loan {loan_id} unreadable: {e}")
        if loan.user_id != self._actor_id:
            return Result.failure(ErrorKind.PERMISSION, "You don't have permission to modify this loan")
        return Result.success(loan)

    async def _save_loan(self, loan: Loan) -> Result[Loan]:
        written = await self._write(
            "Update loan",
            self._persistence.update(Collection.LOANS.value, loan.id, loan.to_document()),
        )
        if not written.ok:
            return await self._reject(Collection.LOANS, loan.id, written)
        await self.cache.upsert_record(LocalCache.LOANS_KEY, loan.to_record())
        await self._mutated(AuditEventType.ENTITY_UPDATED, Collection.LOANS, loan.id)
        return Result.success(loan)

    async def _loan_for_write(self, loan_id: str) -> Result[Loan]:
        offline = self._loans_offline()
        if offline:
            return offline
        return await self._get_loan(loan_id)

    async def create_loan(self, data: dict) -> Result[Loan]:
        offline = self._loans_offline()
        if offline:
            return await self._reject(Collection.LOANS, None, offline)

        failure = issues_to_failure(self.validator.validate_loan_input(data))
        if failure:
            return await self._reject(Collection.LOANS, None, failure)

        loan_type = LoanType(data.get("type") or LoanType.BORROWED.value)
        now = utc_now()
        try:
            loan = Loan(
                id=_DRAFT_ID,
                user_id=self._actor_id,
                type=loan_type,
                amount=parse_amount(data["amount"]),
                interest_rate=parse_amount(data.get("interestRate")) or ZERO,
                term_months=data.get("termMonths"),
                lender=data.get("lender"),
                borrower=data.get("borrower"),
                counterparty_name=data.get("counterpartyName")
                or Loan.counterparty_for(loan_type, data.get("lender"), data.get("borrower")),
                is_lent=loan_type == LoanType.LENT,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            return await self._reject(Collection.LOANS, None, _constraint_failure(e))

        written = await self._write(
            "Create loan",
            self._persistence.create(Collection.LOANS.value, loan.to_document()),
        )
        if not written.ok:
            return await self._reject(Collection.LOANS, None, written)

        loan = loan.model_copy(update={"id": written.value})
        await self.cache.upsert_record(LocalCache.LOANS_KEY, loan.to_record())
        await self._mutated(AuditEventType.ENTITY_CREATED, Collection.LOANS, loan.id)
        return Result.success(loan)

    async def update_loan(self, loan_id: str, changes: dict) -> Result[Loan]:
        """Update loan terms. The principal may never drop below what was paid."""
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        failure = issues_to_failure(self.validator.validate_loan_input(changes, partial=True))
        if failure:
            return await self._reject(Collection.LOANS, loan_id, failure)

        loan = found.value
        if "amount" in changes and round_money(parse_amount(changes["amount"])) < loan.total_paid:
            return await self._reject(Collection.LOANS, loan_id, Result.failure(
                ErrorKind.VALIDATION,
                f"Loan amount cannot be less than the {loan.total_paid} already paid",
            ))

        editable = {
            k: v for k, v in changes.items()
            if k not in _READ_ONLY_KEYS + ("userId", "payments", "totalPaid", "status")
        }
        merged = {**loan.to_record(), **editable}
        if "type" in editable and "counterpartyName" not in editable:
            merged["counterpartyName"] = None
        try:
            updated = Loan.from_document(merged)
        except ValidationError as e:
            return await self._reject(Collection.LOANS, loan_id, _constraint_failure(e))
        updated = updated.with_payments(updated.payments)
        return await self._save_loan(updated)

    async def record_loan_payment(self, loan_id: str, payment: dict) -> Result[Loan]:
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        failure = issues_to_failure(self.validator.validate_payment_amount(payment.get("amount")))
        if failure:
            return await self._reject(Collection.LOANS, loan_id, failure)

        loan = found.value
        amount = round_money(parse_amount(payment["amount"]))
        if amount > loan.remaining:
            return await self._reject(Collection.LOANS, loan_id, Result.failure(
                ErrorKind.VALIDATION,
                f"Payment exceeds the remaining balance of {loan.remaining}",
            ))

        now = utc_now()
        try:
            new_payment = LoanPayment(
                id=uuid4().hex,
                amount=amount,
                date=parse_timestamp(payment.get("date")) or now,
                note=payment.get("note") or "",
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            return await self._reject(Collection.LOANS, loan_id, _constraint_failure(e))
        return await self._save_loan(loan.with_payments(loan.payments + [new_payment]))

    async def update_loan_payment(self, loan_id: str, payment_id: str, changes: dict) -> Result[Loan]:
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        loan = found.value
        existing = next((p for p in loan.payments if p.id == payment_id), None)
        if existing is None:
            return await self._reject(Collection.LOANS, loan_id, Result.failure(
                ErrorKind.NOT_FOUND, f"Payment {payment_id} not found",
            ))

        update: dict[str, Any] = {"updated_at": utc_now()}
        if "amount" in changes:
            failure = issues_to_failure(self.validator.validate_payment_amount(changes["amount"]))
            if failure:
                return await self._reject(Collection.LOANS, loan_id, failure)
            update["amount"] = round_money(parse_amount(changes["amount"]))
            if loan.payments_total(exclude_id=payment_id) + update["amount"] > loan.amount:
                return await self._reject(Collection.LOANS, loan_id, Result.failure(
                    ErrorKind.VALIDATION, "Payments would exceed the loan amount",
                ))
        if "date" in changes:
            update["date"] = parse_timestamp(changes["date"])
        if "note" in changes:
            update["note"] = changes["note"] or ""

        try:
            edited = LoanPayment(**{**existing.model_dump(), **update})
        except ValidationError as e:
            return await self._reject(Collection.LOANS, loan_id, _constraint_failure(e))
        payments = [edited if p.id == payment_id else p for p in loan.payments]
        return await self._save_loan(loan.with_payments(payments))

    async def delete_loan_payment(self, loan_id: str, payment_id: str) -> Result[Loan]:
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        loan = found.value
        payments = [p for p in loan.payments if p.id != payment_id]
        if len(payments) == len(loan.payments):
            return await self._reject(Collection.LOANS, loan_id, Result.failure(
                ErrorKind.NOT_FOUND, f"Payment {payment_id} not found",
            ))
        return await self._save_loan(loan.with_payments(payments))

    async def mark_loan_as_paid(self, loan_id: str) -> Result[Loan]:
        """Record a final payment for whatever remains. No-op if already paid."""
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        loan = found.value
        if loan.status == LoanStatus.PAID and loan.remaining <= ZERO:
            return Result.success(loan)

        payments = list(loan.payments)
        if loan.remaining > ZERO:
            now = utc_now()
            payments.append(LoanPayment(
                id=uuid4().hex,
                amount=loan.remaining,
                date=now,
                note="Final payment",
                created_at=now,
                updated_at=now,
            ))
        return await self._save_loan(loan.with_payments(payments))

    async def mark_loan_as_unpaid(self, loan_id: str) -> Result[Loan]:
        """Clear every payment and reactivate the loan."""
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        loan = found.value.with_payments([])
        return await self._save_loan(loan.model_copy(update={"status": LoanStatus.ACTIVE}))

    async def mark_loan_as_defaulted(self, loan_id: str) -> Result[Loan]:
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        loan = found.value
        if loan.remaining <= ZERO:
            return await self._reject(Collection.LOANS, loan_id, Result.failure(
                ErrorKind.VALIDATION, "A fully paid loan cannot be marked as defaulted",
            ))
        return await self._save_loan(loan.model_copy(update={
            "status": LoanStatus.DEFAULTED,
            "updated_at": utc_now(),
        }))

    async def delete_loan(self, loan_id: str) -> Result[str]:
        found = await self._loan_for_write(loan_id)
        if not found.ok:
            return await self._reject(Collection.LOANS, loan_id, found)

        written = await self._write(
            "Delete loan",
            self._persistence.delete(Collection.LOANS.value, loan_id),
        )
        if not written.ok:
            return await self._reject(Collection.LOANS, loan_id, written)

        await self.cache.remove_record(LocalCache.LOANS_KEY, loan_id)
        await self._mutated(AuditEventType.ENTITY_DELETED, Collection.LOANS, loan_id)
        return Result.success(loan_id)

    # =========================================================================
    # RECONCILIATION, SYNC, REPORTS
    # =========================================================================

    async def recalculate_account_balance(self, account_id: str) -> Result:
        return await self.reconciliation.recalculate_account_balance(account_id)

    async def recalculate_all_account_balances(
        self,
        scope: Optional[Scope] = None,
    ) -> Result[ReconciliationSummary]:
        return await self.reconciliation.recalculate_all_account_balances(scope)

    async def sync(self) -> DrainSummary:
        return await self.sync_engine.drain()

    async def handle_connectivity_change(self, is_online: bool) -> Optional[DrainSummary]:
        return await self.sync_engine.handle_connectivity_change(is_online)

    async def income_expense_report(
        self,
        start: Union[date, datetime, str, None] = None,
        end: Union[date, datetime, str, None] = None,
        account_ids: Optional[Iterable[str]] = None,
    ) -> Result[IncomeExpenseReport]:
        """Report over the cached transactions (what the user currently sees)."""
        records = await self.cache.get_records(LocalCache.TRANSACTIONS_KEY)
        return Result.success(build_income_expense_report(records, start, end, account_ids))


def create_finance_store(
    persistence: Optional[PersistenceService] = None,
    actor_id: str = "",
    settings: Optional[Settings] = None,
    persist_audit: bool = True,
    id_factory=None,
) -> FinanceStore:
    """
    Factory function to create a FinanceStore with its dependencies.

    Falls back to an in-memory persistence service (backed by the
    configured cache file, if any) when none is given.
    """
    if not actor_id:
        raise ValueError("actor_id is required")

    settings = settings or get_settings()
    if persistence is None:
        persistence = InMemoryPersistenceService(cache_file_path=settings.cache.cache_file_path)

    if persist_audit:
        audit_logger = AuditLogger(PersistenceAuditStorage(persistence))
    else:
        audit_logger = AuditLogger()  # Local-only logging

    return FinanceStore(
        persistence,
        actor_id,
        audit_logger=audit_logger,
        settings=settings,
        id_factory=id_factory,
    )
