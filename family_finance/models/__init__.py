"""
Data Models Package

This package contains all Pydantic models used by the sync core.
All data flowing between the engines and the persistence service
is converted to and from these schemas.
"""

from family_finance.models.finance import (
    Account,
    Collection,
    Loan,
    LoanPayment,
    LoanStatus,
    LoanType,
    Scope,
    Transaction,
    TransactionType,
    ZERO,
    parse_amount,
    parse_timestamp,
    round_money,
    utc_now,
)
from family_finance.models.result import (
    BalanceComputation,
    DrainSummary,
    ErrorKind,
    ReconciliationSummary,
    Result,
    ValidationIssue,
)
from family_finance.models.sync import (
    LocalCacheEntry,
    OperationKind,
    OperationState,
    PendingOperation,
)
from family_finance.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Finance models
    "Account",
    "Collection",
    "Loan",
    "LoanPayment",
    "LoanStatus",
    "LoanType",
    "Scope",
    "Transaction",
    "TransactionType",
    "ZERO",
    "parse_amount",
    "parse_timestamp",
    "round_money",
    "utc_now",
    # Results
    "BalanceComputation",
    "DrainSummary",
    "ErrorKind",
    "ReconciliationSummary",
    "Result",
    "ValidationIssue",
    # Sync models
    "LocalCacheEntry",
    "OperationKind",
    "OperationState",
    "PendingOperation",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
