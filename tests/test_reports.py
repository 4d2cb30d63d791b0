"""
Tests for reports, input validation and settings.
"""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from family_finance.config import get_settings
from family_finance.config.settings import SyncSettings, validate_all_settings
from family_finance.reports import UNCATEGORIZED, build_income_expense_report
from family_finance.validation import FinanceValidator, has_errors, issues_to_failure
from family_finance.models.result import ErrorKind


TRANSACTIONS = [
    {"id": "1", "accountId": "a", "type": "income", "amount": 1000, "category": "Salary", "date": "2025-06-01"},
    {"id": "2", "accountId": "a", "type": "expense", "amount": 150.005, "category": "Rent", "date": "2025-06-01"},
    {"id": "3", "accountId": "b", "type": "expense", "amount": "20", "date": "2025-06-15T18:30:00Z"},
    {"id": "4", "accountId": "a", "type": "expense", "amount": 99, "date": "2025-07-01"},
    {"id": "5", "accountId": "a", "type": "income", "amount": 5, "deleted": True, "date": "2025-06-02"},
    {"id": "6", "accountId": "a", "type": "expense", "amount": "x", "date": "2025-06-03"},
    {"id": "7", "accountId": "a", "type": "income", "amount": 1},
]


class TestIncomeExpenseReport:
    """Tests for build_income_expense_report."""

    def test_range_is_inclusive(self):
        report = build_income_expense_report(TRANSACTIONS, date(2025, 6, 1), date(2025, 6, 30))

        assert report.total_income == Decimal("1000.00")
        assert report.total_expense == Decimal("170.01")
        assert report.net_income == Decimal("829.99")
        assert report.transaction_count == 3
        assert report.skipped_count == 1

    def test_categories_and_days(self):
        report = build_income_expense_report(TRANSACTIONS, "2025-06-01", "2025-06-30")

        assert report.expense_by_category == {"Rent": Decimal("150.01"), UNCATEGORIZED: Decimal("20.00")}
        assert list(report.by_date) == ["2025-06-01", "2025-06-15"]
        assert report.by_date["2025-06-01"].income == Decimal("1000.00")
        assert report.by_date["2025-06-01"].expense == Decimal("150.01")

    def test_unbounded_range_includes_undated(self):
        report = build_income_expense_report(TRANSACTIONS)
        assert report.transaction_count == 5
        assert report.by_date["undated"].income == Decimal("1.00")

    def test_account_filter(self):
        report = build_income_expense_report(TRANSACTIONS, account_ids=["b"])
        assert report.total_expense == Decimal("20.00")
        assert report.total_income == Decimal("0.00")

    def test_empty(self):
        report = build_income_expense_report([])
        assert report.net_income == Decimal("0.00")
        assert report.by_date == {}


class TestFinanceValidator:
    """Tests for mutation input validation."""

    @pytest.fixture
    def validator(self):
        return FinanceValidator()

    def test_valid_account(self, validator):
        assert validator.validate_account_input({"name": "Cash", "balance": "10.5", "currency": "usd"}) == []

    def test_account_partial_skips_missing_name(self, validator):
        assert validator.validate_account_input({"currency": "EUR"}, partial=True) == []

    def test_account_issues(self, validator):
        issues = validator.validate_account_input({
            "name": "", "balance": "lots", "scope": "cousins", "sharedWith": "user-2",
        })
        assert {i.field for i in issues} == {"name", "balance", "scope", "sharedWith"}

    def test_transaction_issues(self, validator):
        issues = validator.validate_transaction_input({"amount": -1, "type": "transfer", "date": "someday"})
        assert {i.field for i in issues} == {"amount", "type", "accountId", "date"}

    def test_text_length_limits(self, validator):
        account = validator.validate_account_input({"name": "x" * 201, "sharedWith": ["user-2", 3]})
        transaction = validator.validate_transaction_input(
            {"category": "c" * 101, "description": ["not", "text"]}, partial=True,
        )
        assert {(i.field, i.issue_type) for i in account} == {("name", "too_long"), ("sharedWith", "invalid_format")}
        assert {(i.field, i.issue_type) for i in transaction} == {
            ("category", "too_long"), ("description", "invalid_format"),
        }

    def test_text_at_the_limit_is_accepted(self, validator):
        assert validator.validate_account_input({"name": "x" * 200}) == []
        assert validator.validate_transaction_input({"category": "c" * 100}, partial=True) == []

    def test_transaction_zero_amount_is_allowed(self, validator):
        assert validator.validate_transaction_input({"accountId": "a", "type": "income", "amount": 0}) == []

    def test_loan_issues(self, validator):
        issues = validator.validate_loan_input({"amount": 0, "interestRate": -2, "type": "gift", "termMonths": 1.5})
        assert {i.field for i in issues} == {"amount", "interestRate", "type", "termMonths"}

    def test_payment_amount(self, validator):
        assert validator.validate_payment_amount("12.50") == []
        assert validator.validate_payment_amount(0)[0].field == "amount"

    def test_issues_to_failure(self, validator):
        issues = validator.validate_transaction_input({"accountId": "a", "type": "income"})
        assert has_errors(issues)
        failure = issues_to_failure(issues)
        assert failure.error_kind == ErrorKind.VALIDATION
        assert failure.error_message.startswith("amount:")
        assert issues_to_failure([]) is None


class TestSettings:
    """Tests for configuration defaults and overrides."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("FINANCE_SYNC_RETRY_WAIT_MIN")
        monkeypatch.delenv("FINANCE_SYNC_RETRY_WAIT_MAX")
        settings = get_settings()
        assert settings.reconciliation.balance_epsilon == 0.001
        assert settings.reconciliation.money_places == 2
        assert settings.sync.queue_cache_key == "sync_queue"
        assert settings.sync.id_map_cache_key == "sync_id_map"
        assert settings.sync.retry_attempts == 3
        assert settings.sync.retry_wait_min == 1.0
        assert settings.sync.operation_timeout_seconds is None
        assert settings.app.default_currency == "GHS"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("FINANCE_RECON_BALANCE_EPSILON", "0.01")
        monkeypatch.setenv("FINANCE_SYNC_TEMP_ID_PREFIX", "tmp")
        settings = get_settings()
        assert settings.reconciliation.balance_epsilon == 0.01
        assert settings.sync.temp_id_prefix == "tmp"

    def test_out_of_range_value_rejected(self, monkeypatch):
        monkeypatch.setenv("FINANCE_SYNC_RETRY_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            SyncSettings()

    def test_validate_all_settings(self, monkeypatch):
        monkeypatch.setenv("FINANCE_SYNC_RETRY_ATTEMPTS", "99")
        results = validate_all_settings()
        assert results["reconciliation"] is True
        assert results["sync"] is False
        assert "sync_error" in results
