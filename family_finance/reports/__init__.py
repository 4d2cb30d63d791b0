"""Reports package."""

from family_finance.reports.builder import (
    DailyTotals,
    IncomeExpenseReport,
    UNCATEGORIZED,
    build_income_expense_report,
)

__all__ = [
    "DailyTotals",
    "IncomeExpenseReport",
    "UNCATEGORIZED",
    "build_income_expense_report",
]
