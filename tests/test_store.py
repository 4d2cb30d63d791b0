"""
Tests for FinanceStore mutations.

Online mutations write remotely and recalculate balances; offline ones are
covered by test_sync.py. Loans are online only.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from family_finance import create_finance_store
from family_finance.audit import PersistenceAuditStorage
from family_finance.models.audit import AuditEventType
from family_finance.models.finance import Collection, LoanStatus, Scope
from family_finance.models.result import ErrorKind
from family_finance.services.persistence import InMemoryPersistenceService
from family_finance.store import LOANS_REQUIRE_CONNECTIVITY, FinanceStore

from conftest import ACTOR, OTHER_USER


def _accounts(persistence):
    return persistence.documents(Collection.ACCOUNTS.value)


def _transactions(persistence):
    return persistence.documents(Collection.TRANSACTIONS.value)


class TestCreateFinanceStore:
    """Tests for the factory."""

    def test_actor_is_required(self):
        with pytest.raises(ValueError):
            create_finance_store(actor_id="")

    def test_defaults_to_in_memory_persistence(self):
        store = create_finance_store(actor_id=ACTOR)
        assert store.actor_id == ACTOR
        assert store.is_online()

    @pytest.mark.asyncio
    async def test_audit_events_are_persisted(self, persistence):
        store = create_finance_store(persistence, actor_id=ACTOR)
        await store.create_account({"name": "Cash"})
        audit_log = persistence.documents("finance_audit_log")
        assert any(doc["event_type"] == "entity_created" for doc in audit_log.values())

    @pytest.mark.asyncio
    async def test_audit_trail_per_entity(self, persistence):
        store = create_finance_store(persistence, actor_id=ACTOR)
        created = await store.create_account({"name": "Cash"})
        await store.update_account(created.value.id, {"name": "Petty cash"})

        trail = await PersistenceAuditStorage(persistence).get_events_by_entity(
            Collection.ACCOUNTS.value, created.value.id,
        )

        assert [e["event_type"] for e in trail] == ["entity_created", "entity_updated"]
        assert all(e["actor_id"] == ACTOR for e in trail)


class TestAccounts:
    """Tests for account mutations."""

    @pytest.mark.asyncio
    async def test_create_fixes_initial_balance(self, store, persistence):
        result = await store.create_account({"name": "Savings", "balance": 250, "scope": "nuclear"})

        assert result.ok
        account = result.value
        assert account.id == "srv-1"
        assert account.owner == ACTOR
        assert account.initial_balance == account.balance == Decimal("250.00")
        assert account.currency == "GHS"

        document = _accounts(persistence)["srv-1"]
        assert document["initialBalance"] == 250.0
        assert document["scope"] == "nuclear"
        cached = await store.cache.get_records(store.cache.accounts_key(Scope.NUCLEAR))
        assert [r["id"] for r in cached] == ["srv-1"]

    @pytest.mark.asyncio
    async def test_invalid_input_touches_nothing(self, store, persistence, audit_logger):
        result = await store.create_account({"name": "  ", "currency": "cedis"})

        assert result.error_kind == ErrorKind.VALIDATION
        assert "name" in result.error_message
        assert "currency" in result.error_message
        assert persistence.writes == []
        assert await store.queue.is_empty()
        assert audit_logger.events[-1].event_type == AuditEventType.MUTATION_REJECTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [
        {"name": "x" * 300},
        {"name": "Joint", "sharedWith": [1, 2]},
        {"name": "Joint", "sharedWith": OTHER_USER},
        {"name": "Mobile money", "type": 5},
    ])
    async def test_out_of_range_input_is_a_validation_error(self, store, persistence, data):
        result = await store.create_account(data)
        assert result.error_kind == ErrorKind.VALIDATION
        assert persistence.writes == []

    @pytest.mark.asyncio
    async def test_overlong_rename_is_rejected(self, store, persistence, seed_account):
        seed_account("acc-1")
        result = await store.update_account("acc-1", {"name": "x" * 300})
        assert result.error_kind == ErrorKind.VALIDATION
        assert _accounts(persistence)["acc-1"]["name"] == "Wallet"
        assert persistence.writes == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["initialBalance", "balance", "owner"])
    async def test_protected_fields_cannot_be_updated(self, store, persistence, seed_account, field):
        seed_account("acc-1")
        result = await store.update_account("acc-1", {field: 5})
        assert result.error_kind == ErrorKind.VALIDATION
        assert persistence.writes == []

    @pytest.mark.asyncio
    async def test_update_missing_account(self, store):
        result = await store.update_account("nope", {"name": "X"})
        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_stranger_cannot_update(self, store, seed_account):
        seed_account("acc-1", owner=OTHER_USER)
        result = await store.update_account("acc-1", {"name": "Mine now"})
        assert result.error_kind == ErrorKind.PERMISSION

    @pytest.mark.asyncio
    async def test_shared_user_may_update_but_not_delete(self, store, persistence, seed_account):
        seed_account("acc-1", owner=OTHER_USER, sharedWith=[ACTOR], scope="nuclear")

        updated = await store.update_account("acc-1", {"name": "Family pot"})
        deleted = await store.delete_account("acc-1")

        assert updated.ok
        assert _accounts(persistence)["acc-1"]["name"] == "Family pot"
        assert deleted.error_kind == ErrorKind.PERMISSION
        assert "acc-1" in _accounts(persistence)

    @pytest.mark.asyncio
    async def test_scope_change_moves_cached_record(self, store):
        created = await store.create_account({"name": "Wallet"})
        await store.update_account(created.value.id, {"scope": "extended"})

        assert await store.cache.get_records(store.cache.accounts_key(Scope.PERSONAL)) == []
        extended = await store.cache.get_records(store.cache.accounts_key(Scope.EXTENDED))
        assert extended[0]["scope"] == "extended"

    @pytest.mark.asyncio
    async def test_delete_leaves_transactions(self, store, persistence, seed_account, seed_transaction):
        seed_account("acc-1")
        seed_transaction("tx-1")

        result = await store.delete_account("acc-1")

        assert result.ok
        assert "acc-1" not in _accounts(persistence)
        assert "tx-1" in _transactions(persistence)

    @pytest.mark.asyncio
    async def test_refused_remote_write_is_sync_error(self, store, persistence, seed_account):
        seed_account("acc-1")
        persistence.fail_next("update", Collection.ACCOUNTS.value)
        result = await store.update_account("acc-1", {"name": "X"})
        assert result.error_kind == ErrorKind.SYNC

    @pytest.mark.asyncio
    async def test_offline_update_validates_against_cache(self, store, persistence, seed_account):
        seed_account("acc-1")
        await store.load_accounts()
        persistence.online = False

        renamed = await store.update_account("acc-1", {"name": "Offline name"})
        missing = await store.update_account("nope", {"name": "X"})

        assert renamed.ok
        assert (await store.cache.find_account("acc-1"))["name"] == "Offline name"
        assert missing.error_kind == ErrorKind.NOT_FOUND
        assert await store.queue.size() == 1


class TestTransactions:
    """Tests for transaction mutations and the balances they drive."""

    @pytest.mark.asyncio
    async def test_create_recalculates_balance(self, store, persistence, seed_account):
        seed_account("acc-1", initialBalance=100, balance=100)

        result = await store.create_transaction({
            "accountId": "acc-1", "type": "expense", "amount": 30, "category": "Food",
        })

        assert result.ok
        assert result.value.created_by == ACTOR
        assert _accounts(persistence)["acc-1"]["balance"] == 70.0

    @pytest.mark.asyncio
    async def test_invalid_amount_is_rejected(self, store, persistence, seed_account):
        seed_account("acc-1")
        negative = await store.create_transaction({"accountId": "acc-1", "type": "expense", "amount": -5})
        garbage = await store.create_transaction({"accountId": "acc-1", "type": "expense", "amount": "ten"})
        assert negative.error_kind == ErrorKind.VALIDATION
        assert garbage.error_kind == ErrorKind.VALIDATION
        assert persistence.writes == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [
        {"amount": "1e30"},
        {"amount": 10, "category": "c" * 150},
        {"amount": 10, "description": "d" * 600},
        {"amount": 10, "category": 7},
    ])
    async def test_out_of_range_input_is_rejected(self, store, persistence, seed_account, data):
        seed_account("acc-1")
        result = await store.create_transaction({"accountId": "acc-1", "type": "expense", **data})
        assert result.error_kind == ErrorKind.VALIDATION
        assert persistence.writes == []

    @pytest.mark.asyncio
    async def test_overlong_category_update_is_rejected(self, store, persistence, seed_account, seed_transaction):
        seed_account("acc-1")
        seed_transaction("tx-1")
        result = await store.update_transaction("tx-1", {"category": "c" * 150})
        assert result.error_kind == ErrorKind.VALIDATION
        assert persistence.writes == []

    @pytest.mark.asyncio
    async def test_unknown_account(self, store):
        result = await store.create_transaction({"accountId": "nope", "type": "income", "amount": 1})
        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_foreign_account(self, store, seed_account):
        seed_account("acc-1", owner=OTHER_USER)
        result = await store.create_transaction({"accountId": "acc-1", "type": "income", "amount": 1})
        assert result.error_kind == ErrorKind.PERMISSION

    @pytest.mark.asyncio
    async def test_moving_between_accounts_recalculates_both(
        self, store, persistence, seed_account, seed_transaction,
    ):
        seed_account("acc-1", initialBalance=100, balance=70)
        seed_account("acc-2", initialBalance=0, balance=0)
        seed_transaction("tx-1", account_id="acc-1", type="expense", amount=30)

        result = await store.update_transaction("tx-1", {"accountId": "acc-2"})

        assert result.ok
        accounts = _accounts(persistence)
        assert accounts["acc-1"]["balance"] == 100.0
        assert accounts["acc-2"]["balance"] == -30.0

    @pytest.mark.asyncio
    async def test_cosmetic_update_skips_recalculation(self, store, persistence, seed_account, seed_transaction):
        seed_account("acc-1", initialBalance=100, balance=42)
        seed_transaction("tx-1")

        await store.update_transaction("tx-1", {"description": "Lunch"})

        assert _transactions(persistence)["tx-1"]["description"] == "Lunch"
        assert _accounts(persistence)["acc-1"]["balance"] == 42

    @pytest.mark.asyncio
    async def test_delete_recalculates(self, store, persistence, seed_account, seed_transaction):
        seed_account("acc-1", initialBalance=100, balance=90)
        seed_transaction("tx-1", amount=10)

        result = await store.delete_transaction("tx-1")

        assert result.ok
        assert _accounts(persistence)["acc-1"]["balance"] == 100.0

    @pytest.mark.asyncio
    async def test_orphan_is_editable_by_its_creator(self, store, persistence, seed_transaction):
        seed_transaction("mine", account_id="gone")
        seed_transaction("theirs", account_id="gone", createdBy=OTHER_USER)

        assert (await store.delete_transaction("mine")).ok
        theirs = await store.delete_transaction("theirs")

        assert theirs.error_kind == ErrorKind.NOT_FOUND
        assert list(_transactions(persistence)) == ["theirs"]

    @pytest.mark.asyncio
    async def test_soft_deleted_transaction_is_not_found(self, store, seed_account, seed_transaction):
        seed_account("acc-1")
        seed_transaction("tx-1", deleted=True)
        result = await store.update_transaction("tx-1", {"amount": 1})
        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_load_transactions_only_visible_accounts(self, store, seed_account, seed_transaction):
        seed_account("acc-1")
        seed_account("foreign", owner=OTHER_USER)
        seed_transaction("mine", account_id="acc-1")
        seed_transaction("not-mine", account_id="foreign", createdBy=OTHER_USER)
        seed_transaction("bad", account_id="acc-1", amount="x")

        result = await store.load_transactions()

        assert [t.id for t in result.value] == ["mine"]


class TestLoans:
    """Tests for loan mutations."""

    @pytest_asyncio.fixture
    async def loan_id(self, store):
        result = await store.create_loan({"amount": 1000, "type": "lent", "borrower": "Kofi"})
        return result.value.id

    @pytest.mark.asyncio
    async def test_create(self, store, persistence, loan_id):
        document = persistence.documents(Collection.LOANS.value)[loan_id]
        assert document["userId"] == ACTOR
        assert document["counterpartyName"] == "Kofi"
        assert document["isLent"] is True
        assert document["status"] == "active"

    @pytest.mark.asyncio
    async def test_invalid_loan(self, store):
        result = await store.create_loan({"amount": 0, "interestRate": -1})
        assert result.error_kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_loans_need_connectivity(self, store, persistence, loan_id):
        persistence.online = False
        created = await store.create_loan({"amount": 10})
        paid = await store.record_loan_payment(loan_id, {"amount": 10})
        assert created.error_kind == ErrorKind.SYNC
        assert created.error_message == LOANS_REQUIRE_CONNECTIVITY
        assert paid.error_kind == ErrorKind.SYNC

    @pytest.mark.asyncio
    async def test_payment_cannot_exceed_remaining(self, store, loan_id):
        await store.record_loan_payment(loan_id, {"amount": 400})
        result = await store.record_loan_payment(loan_id, {"amount": 700})
        assert result.error_kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_full_payment_marks_paid(self, store, loan_id):
        await store.record_loan_payment(loan_id, {"amount": 400})
        result = await store.record_loan_payment(loan_id, {"amount": 600})
        assert result.value.status == LoanStatus.PAID
        assert result.value.total_paid == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_deleting_a_payment_reactivates(self, store, loan_id):
        paid = await store.record_loan_payment(loan_id, {"amount": 1000})
        payment_id = paid.value.payments[0].id

        result = await store.delete_loan_payment(loan_id, payment_id)

        assert result.value.status == LoanStatus.ACTIVE
        assert result.value.payments == []

    @pytest.mark.asyncio
    async def test_update_payment_respects_principal(self, store, loan_id):
        first = await store.record_loan_payment(loan_id, {"amount": 500})
        await store.record_loan_payment(loan_id, {"amount": 300})
        payment_id = first.value.payments[0].id

        too_much = await store.update_loan_payment(loan_id, payment_id, {"amount": 800})
        fine = await store.update_loan_payment(loan_id, payment_id, {"amount": 700, "note": "corrected"})
        missing = await store.update_loan_payment(loan_id, "nope", {"amount": 1})

        assert too_much.error_kind == ErrorKind.VALIDATION
        assert fine.value.status == LoanStatus.PAID
        assert fine.value.payments[0].note == "corrected"
        assert missing.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_overlong_payment_note_is_rejected(self, store, loan_id):
        recorded = await store.record_loan_payment(loan_id, {"amount": 100, "note": "n" * 600})
        paid = await store.record_loan_payment(loan_id, {"amount": 100})
        edited = await store.update_loan_payment(loan_id, paid.value.payments[0].id, {"note": "n" * 600})

        assert recorded.error_kind == ErrorKind.VALIDATION
        assert edited.error_kind == ErrorKind.VALIDATION
        assert paid.value.payments[0].note == ""

    @pytest.mark.asyncio
    async def test_principal_cannot_drop_below_paid(self, store, loan_id):
        await store.record_loan_payment(loan_id, {"amount": 600})
        rejected = await store.update_loan(loan_id, {"amount": 500})
        accepted = await store.update_loan(loan_id, {"amount": 600, "interestRate": 5})
        assert rejected.error_kind == ErrorKind.VALIDATION
        assert accepted.value.status == LoanStatus.PAID
        assert accepted.value.interest_rate == Decimal("5")

    @pytest.mark.asyncio
    async def test_mark_paid_adds_final_payment(self, store, loan_id):
        await store.record_loan_payment(loan_id, {"amount": 250})

        result = await store.mark_loan_as_paid(loan_id)
        again = await store.mark_loan_as_paid(loan_id)

        assert result.value.status == LoanStatus.PAID
        assert result.value.payments[-1].amount == Decimal("750.00")
        assert result.value.payments[-1].note == "Final payment"
        assert len(again.value.payments) == 2

    @pytest.mark.asyncio
    async def test_mark_unpaid_clears_payments(self, store, loan_id):
        await store.mark_loan_as_paid(loan_id)
        result = await store.mark_loan_as_unpaid(loan_id)
        assert result.value.status == LoanStatus.ACTIVE
        assert result.value.total_paid == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_defaulted(self, store, loan_id):
        result = await store.mark_loan_as_defaulted(loan_id)
        assert result.value.status == LoanStatus.DEFAULTED

        await store.mark_loan_as_paid(loan_id)
        rejected = await store.mark_loan_as_defaulted(loan_id)
        assert rejected.error_kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_other_users_loan(self, store, persistence):
        persistence.seed(Collection.LOANS.value, "loan-x", {"userId": OTHER_USER, "amount": 10})
        result = await store.delete_loan("loan-x")
        assert result.error_kind == ErrorKind.PERMISSION

    @pytest.mark.asyncio
    async def test_delete(self, store, persistence, loan_id):
        result = await store.delete_loan(loan_id)
        assert result.ok
        assert persistence.documents(Collection.LOANS.value) == {}
        assert (await store.load_loans()).value == []


class TestReportsThroughStore:
    """income_expense_report over cached transactions."""

    @pytest.mark.asyncio
    async def test_report_uses_loaded_transactions(self, store, seed_account, seed_transaction):
        seed_account("acc-1")
        seed_transaction("in", type="income", amount=100, category="Salary", date="2025-06-02")
        seed_transaction("out", type="expense", amount=40, category="Food", date="2025-06-03")
        seed_transaction("old", type="expense", amount=5, date="2025-05-01")
        await store.load_transactions()

        result = await store.income_expense_report("2025-06-01", "2025-06-30")

        report = result.value
        assert report.total_income == Decimal("100.00")
        assert report.total_expense == Decimal("40.00")
        assert report.net_income == Decimal("60.00")
        assert report.transaction_count == 2


@pytest.mark.asyncio
async def test_store_without_audit_logger_still_mutates(temp_ids):
    store = FinanceStore(InMemoryPersistenceService(), ACTOR, id_factory=temp_ids)
    assert (await store.create_account({"name": "Cash"})).ok
