"""
Tests for Family Finance models

Test strategy:
1. Unit tests for models and their normalization of stored documents
2. Engine and store tests live in their own modules
3. No real backend in tests (in-memory persistence only)
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from family_finance.models import (
    Account,
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    ErrorKind,
    LocalCacheEntry,
    Loan,
    LoanPayment,
    LoanStatus,
    LoanType,
    OperationKind,
    OperationState,
    PendingOperation,
    Result,
    Scope,
    Transaction,
    TransactionType,
    parse_amount,
    round_money,
)


class TestMoney:
    """Tests for money parsing and rounding."""

    def test_round_half_away_from_zero(self):
        """150.005 rounds up even though the float is slightly below it."""
        assert round_money(150.005) == Decimal("150.01")
        assert round_money(Decimal("2.345")) == Decimal("2.35")
        assert round_money(Decimal("-2.345")) == Decimal("-2.35")

    def test_round_keeps_two_places(self):
        assert str(round_money(10)) == "10.00"

    def test_parse_amount_accepts_numbers_and_numeric_strings(self):
        assert parse_amount(12) == Decimal("12")
        assert parse_amount("12.50") == Decimal("12.50")
        assert parse_amount(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [
        None, "not-a-number", "", "  ", True, float("nan"), float("inf"), [], {}, "1e30", 1e30, Decimal("-1e40"),
    ])
    def test_parse_amount_rejects_garbage(self, value):
        assert parse_amount(value) is None


class TestAccountModel:
    """Tests for Account and its normalization of stored documents."""

    def test_legacy_document_without_scope_is_personal(self):
        account = Account.from_document({"id": "a1", "owner": "u", "balance": 10})
        assert account.scope == Scope.PERSONAL

    def test_null_scope_is_personal(self):
        account = Account.from_document({"id": "a1", "owner": "u", "scope": None})
        assert account.scope == Scope.PERSONAL

    def test_missing_initial_balance_defaults_to_balance(self):
        account = Account.from_document({"id": "a1", "owner": "u", "balance": 250.5})
        assert account.initial_balance == Decimal("250.50")
        assert account.balance == Decimal("250.50")

    def test_explicit_initial_balance_is_kept(self):
        account = Account.from_document({
            "id": "a1", "owner": "u", "balance": 300, "initialBalance": 100,
        })
        assert account.initial_balance == Decimal("100.00")

    def test_missing_shared_with_is_empty(self):
        account = Account.from_document({"id": "a1", "owner": "u"})
        assert account.shared_with == []

    def test_unparseable_balance_becomes_zero(self):
        account = Account.from_document({"id": "a1", "owner": "u", "balance": "abc"})
        assert account.balance == Decimal("0.00")

    def test_access_rules(self):
        account = Account(id="a1", owner="owner", shared_with=["friend"])
        assert account.can_access("owner")
        assert account.can_access("friend")
        assert not account.can_access("stranger")
        assert account.can_delete("owner")
        assert not account.can_delete("friend")

    def test_to_document_uses_camel_case_and_floats(self):
        account = Account(id="a1", owner="u", initial_balance=Decimal("5"), balance=Decimal("7.5"))
        document = account.to_document()
        assert document["initialBalance"] == 5.0
        assert document["balance"] == 7.5
        assert document["sharedWith"] == []
        assert "id" not in document

    def test_to_record_carries_offline_id(self):
        account = Account(id="t1", owner="u", temp_id="t1")
        record = account.to_record()
        assert record["id"] == "t1"
        assert record["_offlineId"] == "t1"

    def test_currency_is_upper_cased(self):
        assert Account(id="a1", owner="u", currency="ghs").currency == "GHS"


class TestTransactionModel:
    """Tests for Transaction."""

    def test_signed_amount(self):
        income = Transaction(id="1", account_id="a", type=TransactionType.INCOME, amount=Decimal("5"))
        expense = Transaction(id="2", account_id="a", type=TransactionType.EXPENSE, amount=Decimal("5"))
        assert income.signed_amount == Decimal("5.00")
        assert expense.signed_amount == Decimal("-5.00")

    def test_deleted_transaction_contributes_nothing(self):
        tx = Transaction(id="1", account_id="a", type="income", amount=Decimal("5"), deleted=True)
        assert tx.signed_amount == Decimal("0.00")

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            Transaction(id="1", account_id="a", type="income", amount=Decimal("-1"))

    def test_amount_is_rounded(self):
        tx = Transaction.from_document({"id": "1", "accountId": "a", "type": "expense", "amount": 150.005})
        assert tx.amount == Decimal("150.01")

    def test_from_document_rejects_bad_amount(self):
        with pytest.raises(ValueError):
            Transaction.from_document({"id": "1", "accountId": "a", "type": "expense", "amount": "x"})

    def test_from_document_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            Transaction.from_document({"id": "1", "accountId": "a", "type": "transfer", "amount": 1})

    def test_date_strings_are_parsed(self):
        tx = Transaction.from_document({
            "id": "1", "accountId": "a", "type": "income", "amount": 1, "date": "2025-06-01T10:00:00Z",
        })
        assert tx.date == datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)


class TestLoanModel:
    """Tests for Loan status derivation and payment invariants."""

    def _loan(self, **overrides):
        fields = {"id": "l1", "user_id": "u", "amount": Decimal("100")}
        fields.update(overrides)
        return Loan(**fields)

    def test_derive_status_paid_when_fully_paid(self):
        assert Loan.derive_status(Decimal("100"), Decimal("100"), LoanStatus.ACTIVE) == LoanStatus.PAID

    def test_derive_status_paid_reverts_to_active(self):
        assert Loan.derive_status(Decimal("50"), Decimal("100"), LoanStatus.PAID) == LoanStatus.ACTIVE

    def test_derive_status_defaulted_is_kept(self):
        assert Loan.derive_status(Decimal("50"), Decimal("100"), LoanStatus.DEFAULTED) == LoanStatus.DEFAULTED

    def test_payments_cannot_exceed_principal(self):
        with pytest.raises(ValueError):
            self._loan(payments=[LoanPayment(id="p1", amount=Decimal("150"))])

    def test_with_payments_updates_totals_and_status(self):
        loan = self._loan()
        paid = loan.with_payments([
            LoanPayment(id="p1", amount=Decimal("60")),
            LoanPayment(id="p2", amount=Decimal("40")),
        ])
        assert paid.total_paid == Decimal("100.00")
        assert paid.status == LoanStatus.PAID
        assert paid.remaining == Decimal("0.00")

        reverted = paid.with_payments(paid.payments[:1])
        assert reverted.total_paid == Decimal("60.00")
        assert reverted.status == LoanStatus.ACTIVE

    def test_payments_total_can_exclude_one_payment(self):
        loan = self._loan(payments=[
            LoanPayment(id="p1", amount=Decimal("30")),
            LoanPayment(id="p2", amount=Decimal("20")),
        ])
        assert loan.payments_total(exclude_id="p1") == Decimal("20.00")

    def test_from_document_derives_counterparty(self):
        borrowed = Loan.from_document({
            "id": "l1", "userId": "u", "amount": 100, "type": "borrowed", "lender": "Bank",
        })
        lent = Loan.from_document({
            "id": "l2", "userId": "u", "amount": 100, "type": "lent", "borrower": "Kofi",
        })
        assert borrowed.counterparty_name == "Bank"
        assert not borrowed.is_lent
        assert lent.counterparty_name == "Kofi"
        assert lent.is_lent
        assert lent.type == LoanType.LENT

    def test_from_document_totals_payments(self):
        loan = Loan.from_document({
            "id": "l1", "userId": "u", "amount": 100,
            "payments": [{"id": "p1", "amount": 25}, {"id": "p2", "amount": 25.5}],
        })
        assert loan.total_paid == Decimal("50.50")


class TestSyncModels:
    """Tests for pending operations and cache entries."""

    def test_pending_operation_defaults(self):
        op = PendingOperation(kind=OperationKind.CREATE, collection="finance_accounts")
        assert op.state == OperationState.QUEUED
        assert op.retry_count == 0
        assert len(op.operation_id) == 32

    def test_pending_operation_json_round_trip(self):
        op = PendingOperation(
            kind=OperationKind.UPDATE,
            collection="finance_transactions",
            entity_id="tx-1",
            payload={"amount": 5.0},
        )
        restored = PendingOperation.model_validate(op.model_dump(mode="json"))
        assert restored == op

    def test_cache_entry_staleness(self):
        fresh = LocalCacheEntry(key="k")
        old = LocalCacheEntry(key="k", timestamp=0)
        assert not fresh.is_stale()
        assert old.is_stale()

    def test_cache_entry_envelope(self):
        entry = LocalCacheEntry(key="k", data=[{"id": "1"}], timestamp=5)
        assert entry.to_envelope() == {"data": [{"id": "1"}], "timestamp": 5, "version": "1.0"}


class TestResult:
    """Tests for the Result type."""

    def test_success(self):
        result = Result.success(5)
        assert result.ok
        assert result.unwrap() == 5

    def test_failure(self):
        result = Result.failure(ErrorKind.NOT_FOUND, "missing")
        assert not result.ok
        assert result.error_kind == ErrorKind.NOT_FOUND
        with pytest.raises(ValueError):
            result.unwrap()


class TestAuditModels:
    """Tests for audit event models."""

    def test_audit_event_creation(self):
        event = AuditEvent(
            event_type=AuditEventType.BALANCE_CORRECTED,
            description="Balance corrected",
        )
        assert event.event_id is not None
        assert event.severity == AuditSeverity.INFO

    def test_balance_corrected_builder(self):
        event = AuditEventBuilder.balance_corrected("acc-1", "10.00", "12.00", actor_id="u")
        assert event.event_type == AuditEventType.BALANCE_CORRECTED
        assert event.severity == AuditSeverity.WARNING
        assert event.entity_id == "acc-1"
        assert event.details["new_balance"] == "12.00"

    def test_drain_finished_builder(self):
        halted = AuditEventBuilder.drain_finished(applied=1, remaining=2, halted=True)
        done = AuditEventBuilder.drain_finished(applied=3, remaining=0, halted=False)
        assert halted.event_type == AuditEventType.DRAIN_HALTED
        assert done.event_type == AuditEventType.DRAIN_COMPLETED

    def test_to_log_dict(self):
        event = AuditEventBuilder.operation_failed("op-1", "create", "finance_accounts", "boom", 1)
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "operation_failed"
        assert log_dict["error_message"] == "boom"
        assert isinstance(log_dict["event_id"], str)
