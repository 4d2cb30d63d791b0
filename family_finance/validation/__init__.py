"""Validation package."""

from family_finance.validation.validator import FinanceValidator, has_errors, issues_to_failure

__all__ = ["FinanceValidator", "has_errors", "issues_to_failure"]
