"""
Income / Expense Report

Summarises a set of transaction records over a date range. Amounts are
parsed and rounded exactly like the reconciliation fold, so report totals
and account balances never disagree on a cent.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional, Union

import structlog
from pydantic import BaseModel, Field

from family_finance.models.finance import ZERO, TransactionType, parse_amount, parse_timestamp, round_money


logger = structlog.get_logger(__name__)


UNCATEGORIZED = "Uncategorized"


class DailyTotals(BaseModel):
    income: Decimal = ZERO
    expense: Decimal = ZERO


class IncomeExpenseReport(BaseModel):
    """Totals of one reporting period."""

    start: Optional[date] = None
    end: Optional[date] = None

    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    net_income: Decimal = ZERO

    income_by_category: dict[str, Decimal] = Field(default_factory=dict)
    expense_by_category: dict[str, Decimal] = Field(default_factory=dict)
    by_date: dict[str, DailyTotals] = Field(default_factory=dict)

    transaction_count: int = 0
    skipped_count: int = 0


def _as_date(value: Union[date, datetime, str, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None


def build_income_expense_report(
    transactions: Iterable[dict],
    start: Union[date, datetime, str, None] = None,
    end: Union[date, datetime, str, None] = None,
    account_ids: Optional[Iterable[str]] = None,
) -> IncomeExpenseReport:
    """
    Build a report from transaction records.

    Args:
        transactions: Transaction records (stored document shape plus id)
        start: First day included (inclusive); None means unbounded
        end: Last day included (inclusive); None means unbounded
        account_ids: Restrict to these accounts; None means all

    Records flagged deleted are ignored. Records with an unreadable amount
    or type are counted in `skipped_count`. Records without a date are only
    included when the range is unbounded.
    """
    start_day = _as_date(start)
    end_day = _as_date(end)
    accounts = set(account_ids) if account_ids is not None else None

    report = IncomeExpenseReport(start=start_day, end=end_day)
    income = ZERO
    expense = ZERO

    for record in transactions:
        if record.get("deleted"):
            continue
        if accounts is not None and record.get("accountId") not in accounts:
            continue

        occurred = parse_timestamp(record.get("date"))
        day = occurred.date() if occurred else None
        if (start_day or end_day) and day is None:
            continue
        if start_day and day < start_day:
            continue
        if end_day and day > end_day:
            continue

        amount = parse_amount(record.get("amount"))
        tx_type = record.get("type")
        if amount is None or amount < 0 or tx_type not in (
            TransactionType.INCOME.value,
            TransactionType.EXPENSE.value,
        ):
            report.skipped_count += 1
            logger.warning("report_transaction_skipped", transaction_id=record.get("id"))
            continue

        amount = round_money(amount)
        category = record.get("category") or UNCATEGORIZED
        daily = report.by_date.setdefault(day.isoformat() if day else "undated", DailyTotals())

        if tx_type == TransactionType.INCOME.value:
            income += amount
            report.income_by_category[category] = report.income_by_category.get(category, ZERO) + amount
            daily.income += amount
        else:
            expense += amount
            report.expense_by_category[category] = report.expense_by_category.get(category, ZERO) + amount
            daily.expense += amount

        report.transaction_count += 1

    report.total_income = round_money(income)
    report.total_expense = round_money(expense)
    report.net_income = round_money(income - expense)
    report.by_date = dict(sorted(report.by_date.items()))
    return report
