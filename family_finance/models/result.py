"""
Result and Summary Models

DESIGN DECISION: Entity mutations never signal expected failures
(not found, permission denied, invalid input) by raising. They return a
`Result` so callers can show inline feedback without try/except at every
call site. Only unexpected persistence I/O faults propagate as exceptions.
"""

from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class ErrorKind(str, Enum):
    """
    Failure taxonomy for mutation and reconciliation results.

    VALIDATION  - malformed input, rejected before any mutation
    NOT_FOUND   - referenced entity absent; nothing else touched
    PERMISSION  - actor is neither owner nor shared-with
    SYNC        - remote write failed or needs connectivity; retryable
    INTEGRITY   - stored data could not be interpreted
    """
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    SYNC = "sync"
    INTEGRITY = "integrity"


class Result(BaseModel, Generic[T]):
    """Outcome of an operation: either a value or a classified error."""

    ok: bool
    value: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(ok=False, error_kind=kind, error_message=message)

    def unwrap(self) -> T:
        """Return the value or raise if this is a failure (mostly for tests)."""
        if not self.ok:
            raise ValueError(f"{self.error_kind.value}: {self.error_message}")
        return self.value


# =============================================================================
# RECONCILIATION SUMMARIES
# =============================================================================

class BalanceComputation(BaseModel):
    """Outcome of folding one account's transactions."""

    balance: Decimal
    income_total: Decimal
    expense_total: Decimal
    processed_count: int = Field(ge=0)
    error_count: int = Field(ge=0)
    skipped_ids: list[str] = Field(default_factory=list)


class ReconciliationSummary(BaseModel):
    """
    Outcome of a batch recalculation.

    `processed` counts accounts recalculated without error, `failed`
    those that were not; `corrected` is the subset of processed accounts
    whose stored balance had drifted and was rewritten.
    """

    processed: int = 0
    failed: int = 0
    corrected: int = 0
    unchanged: int = 0
    transaction_errors: int = 0
    failures: dict[str, str] = Field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0


class DrainSummary(BaseModel):
    """Outcome of one drain pass over the pending-operation queue."""

    attempted: int = 0
    applied: int = 0
    remaining: int = 0
    skipped: bool = False
    skip_reason: Optional[str] = None
    failed_operation_id: Optional[str] = None
    error_message: Optional[str] = None
    id_mappings: dict[str, str] = Field(default_factory=dict)
    reconciliation: Optional[ReconciliationSummary] = None

    @property
    def completed(self) -> bool:
        """True when the queue was fully drained this pass."""
        return not self.skipped and self.failed_operation_id is None


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found in mutation input."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'immutable')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        default="error",
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
