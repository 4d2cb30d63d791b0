"""
Mutation Input Validation

DESIGN DECISION: Input is validated before any mutation, local or remote.
A mutation with an error-severity issue is rejected as a whole; nothing
is written, queued or applied optimistically.

Validators work on the raw camelCase input dicts callers pass to the
store (the same shape as stored documents), because that is what would
be written.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them and the store turns them into a VALIDATION result.
"""

from typing import Any, Optional

from family_finance.models.finance import (
    MAX_ACCOUNT_NAME_LENGTH,
    MAX_CATEGORY_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    LoanType,
    Scope,
    TransactionType,
    parse_amount,
    parse_timestamp,
)
from family_finance.models.result import ErrorKind, Result, ValidationIssue


class FinanceValidator:
    """
    Validates account, transaction and loan input.

    Every method returns a list of issues; an empty list means valid.
    """

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def validate_account_input(self, data: dict, partial: bool = False) -> list[ValidationIssue]:
        """
        Checks:
        - Name present, non-blank and not too long
        - Balance parseable
        - Scope is one of the known scopes
        - Currency is a 3-letter code
        - sharedWith is a list of user ids
        """
        issues = []

        if not partial or "name" in data:
            name = data.get("name")
            if not isinstance(name, str) or not name.strip():
                issues.append(ValidationIssue(
                    field="name",
                    issue_type="missing",
                    message="Account name is required",
                ))
            elif len(name.strip()) > MAX_ACCOUNT_NAME_LENGTH:
                issues.append(ValidationIssue(
                    field="name",
                    issue_type="too_long",
                    message=f"Account name cannot exceed {MAX_ACCOUNT_NAME_LENGTH} characters",
                ))

        for field in ("balance", "initialBalance"):
            if field in data and parse_amount(data.get(field)) is None:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="invalid_value",
                    message=f"{field} must be a number",
                ))

        if data.get("scope") is not None and data.get("scope") not in {s.value for s in Scope}:
            issues.append(ValidationIssue(
                field="scope",
                issue_type="invalid_value",
                message=f"Unknown scope: {data.get('scope')!r}",
            ))

        currency = data.get("currency")
        if currency is not None and (
            not isinstance(currency, str) or len(currency.strip()) != 3 or not currency.strip().isalpha()
        ):
            issues.append(ValidationIssue(
                field="currency",
                issue_type="invalid_format",
                message="Currency must be a 3-letter code",
            ))

        shared_with = data.get("sharedWith")
        if shared_with is not None and (
            not isinstance(shared_with, list)
            or not all(isinstance(u, str) and u.strip() for u in shared_with)
        ):
            issues.append(ValidationIssue(
                field="sharedWith",
                issue_type="invalid_format",
                message="sharedWith must be a list of user ids",
            ))

        return issues

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def validate_transaction_input(self, data: dict, partial: bool = False) -> list[ValidationIssue]:
        """
        Checks:
        - Amount parseable and not negative
        - Type is income or expense
        - accountId present
        - Category and description are text within their limits
        - Date parseable when given

        With partial=True only the fields present are checked (updates).
        """
        issues = []

        if not partial or "amount" in data:
            amount = parse_amount(data.get("amount"))
            if amount is None:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Amount must be a number",
                ))
            elif amount < 0:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Amount cannot be negative; use the type for direction",
                ))

        if not partial or "type" in data:
            if data.get("type") not in {t.value for t in TransactionType}:
                issues.append(ValidationIssue(
                    field="type",
                    issue_type="invalid_value",
                    message="Type must be 'income' or 'expense'",
                ))

        if not partial or "accountId" in data:
            account_id = data.get("accountId")
            if not isinstance(account_id, str) or not account_id.strip():
                issues.append(ValidationIssue(
                    field="accountId",
                    issue_type="missing",
                    message="A transaction must reference an account",
                ))

        for field, limit in (("category", MAX_CATEGORY_LENGTH), ("description", MAX_DESCRIPTION_LENGTH)):
            value = data.get(field)
            if value is None:
                continue
            if not isinstance(value, str):
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="invalid_format",
                    message=f"{field} must be text",
                ))
            elif len(value.strip()) > limit:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="too_long",
                    message=f"{field} cannot exceed {limit} characters",
                ))

        if data.get("date") not in (None, "") and parse_timestamp(data.get("date")) is None:
            issues.append(ValidationIssue(
                field="date",
                issue_type="invalid_format",
                message="Date must be an ISO date",
            ))

        return issues

    # =========================================================================
    # LOANS
    # =========================================================================

    def validate_loan_input(self, data: dict, partial: bool = False) -> list[ValidationIssue]:
        """
        Checks:
        - Principal greater than zero
        - Interest rate not negative
        - Type is borrowed or lent
        - Term not negative
        """
        issues = []

        if not partial or "amount" in data:
            amount = parse_amount(data.get("amount"))
            if amount is None or amount <= 0:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Loan amount must be greater than zero",
                ))

        if data.get("interestRate") is not None:
            rate = parse_amount(data.get("interestRate"))
            if rate is None or rate < 0:
                issues.append(ValidationIssue(
                    field="interestRate",
                    issue_type="invalid_value",
                    message="Interest rate cannot be negative",
                ))

        if data.get("type") is not None and data.get("type") not in {t.value for t in LoanType}:
            issues.append(ValidationIssue(
                field="type",
                issue_type="invalid_value",
                message="Loan type must be 'borrowed' or 'lent'",
            ))

        term = data.get("termMonths")
        if term is not None and (isinstance(term, bool) or not isinstance(term, int) or term < 0):
            issues.append(ValidationIssue(
                field="termMonths",
                issue_type="invalid_value",
                message="Term must be a whole number of months",
            ))

        return issues

    def validate_payment_amount(self, amount: Any) -> list[ValidationIssue]:
        parsed = parse_amount(amount)
        if parsed is None or parsed <= 0:
            return [ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Payment amount must be greater than zero",
            )]
        return []


def has_errors(issues: list[ValidationIssue]) -> bool:
    return any(i.severity == "error" for i in issues)


def issues_to_failure(issues: list[ValidationIssue]) -> Optional[Result]:
    """A VALIDATION failure built from the error issues, or None if there are none."""
    errors = [i for i in issues if i.severity == "error"]
    if not errors:
        return None
    return Result.failure(
        ErrorKind.VALIDATION,
        "; ".join(f"{i.field}: {i.message}" for i in errors),
    )
