"""
Core Finance Models

These models define the schemas for the entities the sync core reasons about:
accounts, transactions and loans.

DESIGN DECISION: Documents coming back from the persistence service are
loosely shaped (older documents lack fields that newer code writes).
Every document is turned into a model through exactly one `from_document`
classmethod per entity, which is the only place defaults for missing
fields are applied. Call sites never patch documents themselves.

Money is always `Decimal`, rounded half away from zero to 2 places.
"""

import math
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


logger = structlog.get_logger(__name__)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Scope(str, Enum):
    """
    Sharing group a piece of financial data belongs to.

    Documents written before scopes existed have no scope field;
    they are treated as PERSONAL.
    """
    PERSONAL = "personal"
    NUCLEAR = "nuclear"
    EXTENDED = "extended"


class TransactionType(str, Enum):
    """Direction of a transaction. Amounts themselves are never negative."""
    INCOME = "income"
    EXPENSE = "expense"


class LoanStatus(str, Enum):
    """Loan lifecycle status."""
    ACTIVE = "active"
    PAID = "paid"
    DEFAULTED = "defaulted"


class LoanType(str, Enum):
    """Whether the actor borrowed the money or lent it out."""
    BORROWED = "borrowed"
    LENT = "lent"


class Collection(str, Enum):
    """Remote collections the core reads and writes."""
    ACCOUNTS = "finance_accounts"
    TRANSACTIONS = "finance_transactions"
    LOANS = "finance_loans"
    AUDIT_LOG = "finance_audit_log"


# =============================================================================
# MONEY
# =============================================================================

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Finest quantum round_money is ever asked for (money_places <= 6)
_FINEST_QUANTUM = Decimal("0.000001")

# Text field limits, shared by the models and the input validator
MAX_ACCOUNT_NAME_LENGTH = 200
MAX_CATEGORY_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_NOTE_LENGTH = 500


def round_money(value: Union[Decimal, int, float, str], places: int = 2) -> Decimal:
    """
    Round a monetary value half away from zero.

    Floats are converted through their shortest repr so 150.005 rounds to
    150.01 rather than to whatever the binary approximation suggests.
    """
    if isinstance(value, float):
        value = repr(value)
    quantum = Decimal(1).scaleb(-places)
    return Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a stored amount.

    Returns None when the value cannot be a finite number
    (missing, boolean, non-numeric string, NaN, infinity) or is too
    large to round to money precision.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        value = repr(value)
    elif isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    elif not isinstance(value, (int, Decimal)):
        return None
    try:
        parsed = Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not parsed.is_finite():
        return None
    try:
        parsed.quantize(_FINEST_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return parsed


def money_to_document(value: Decimal) -> float:
    """Stored documents keep money as plain numbers."""
    return float(round_money(value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, dates and ISO strings; anything else becomes None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _timestamp_to_document(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# ACCOUNT
# =============================================================================

class Account(BaseModel):
    """
    A money account owned by one user and optionally shared with others.

    INVARIANT: `balance` equals `initial_balance` plus the signed sum of all
    non-deleted transactions referencing the account. Only the reconciliation
    engine is allowed to write `balance`.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    name: str = Field(default="", max_length=MAX_ACCOUNT_NAME_LENGTH)
    scope: Scope = Field(default=Scope.PERSONAL)
    currency: str = Field(default="GHS", min_length=3, max_length=3)
    account_type: Optional[str] = None

    # Snapshot taken at creation, never changed afterwards
    initial_balance: Decimal = Field(default=ZERO)
    balance: Decimal = Field(default=ZERO)

    shared_with: list[str] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Set when the account was created offline
    temp_id: Optional[str] = None

    @field_validator('initial_balance', 'balance')
    @classmethod
    def round_balances(cls, v: Decimal) -> Decimal:
        return round_money(v)

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    def can_access(self, user_id: str) -> bool:
        """Owner and anyone the account is shared with may read and write it."""
        return self.owner == user_id or user_id in self.shared_with

    def can_delete(self, user_id: str) -> bool:
        return self.owner == user_id

    @classmethod
    def from_document(cls, data: dict) -> "Account":
        """
        Build an Account from a stored document, applying legacy defaults.

        - absent/null scope -> PERSONAL
        - absent initialBalance -> current balance
        - unparseable balance -> 0 (logged)
        """
        balance = parse_amount(data.get("balance", 0))
        if balance is None:
            logger.warning(
                "account_balance_unparseable",
                account_id=data.get("id"),
                raw_balance=repr(data.get("balance")),
            )
            balance = ZERO

        if data.get("initialBalance") is None:
            initial_balance = balance
        else:
            initial_balance = parse_amount(data.get("initialBalance"))
            if initial_balance is None:
                logger.warning(
                    "account_initial_balance_unparseable",
                    account_id=data.get("id"),
                    raw_initial_balance=repr(data.get("initialBalance")),
                )
                initial_balance = ZERO

        scope = data.get("scope") or Scope.PERSONAL.value

        return cls(
            id=data["id"],
            owner=data.get("owner") or "",
            name=data.get("name") or "",
            scope=Scope(scope),
            currency=data.get("currency") or "GHS",
            account_type=data.get("type"),
            initial_balance=initial_balance,
            balance=balance,
            shared_with=list(data.get("sharedWith") or []),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            temp_id=data.get("_offlineId"),
        )

    def to_document(self) -> dict:
        """Serialize to the stored document shape (without the id)."""
        doc = {
            "owner": self.owner,
            "name": self.name,
            "scope": self.scope.value,
            "currency": self.currency,
            "initialBalance": money_to_document(self.initial_balance),
            "balance": money_to_document(self.balance),
            "sharedWith": list(self.shared_with),
            "createdAt": _timestamp_to_document(self.created_at),
            "updatedAt": _timestamp_to_document(self.updated_at),
        }
        if self.account_type:
            doc["type"] = self.account_type
        return doc

    def to_record(self) -> dict:
        """Document plus id, the shape kept in the local cache."""
        record = {"id": self.id, **self.to_document()}
        if self.temp_id:
            record["_offlineId"] = self.temp_id
        return record


# =============================================================================
# TRANSACTION
# =============================================================================

class Transaction(BaseModel):
    """
    A single income or expense against one account.

    `amount` is a non-negative magnitude; `type` carries the direction.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    type: TransactionType
    amount: Decimal = Field(..., ge=0)
    category: Optional[str] = Field(default=None, max_length=MAX_CATEGORY_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    date: Optional[datetime] = None

    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    deleted: bool = False
    temp_id: Optional[str] = None

    @field_validator('amount')
    @classmethod
    def round_amount(cls, v: Decimal) -> Decimal:
        return round_money(v)

    @property
    def signed_amount(self) -> Decimal:
        """Contribution of this transaction to its account balance."""
        if self.deleted:
            return ZERO
        if self.type == TransactionType.INCOME:
            return self.amount
        return -self.amount

    @classmethod
    def from_document(cls, data: dict) -> "Transaction":
        """
        Build a Transaction from a stored document.

        Raises ValueError for documents whose amount or type cannot be
        interpreted; the reconciliation fold handles those separately.
        """
        amount = parse_amount(data.get("amount"))
        if amount is None:
            raise ValueError(f"Unparseable amount: {data.get('amount')!r}")
        return cls(
            id=data["id"],
            account_id=data.get("accountId") or "",
            type=TransactionType(data.get("type")),
            amount=amount,
            category=data.get("category"),
            description=data.get("description"),
            date=parse_timestamp(data.get("date")),
            created_by=data.get("createdBy"),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            deleted=bool(data.get("deleted", False)),
            temp_id=data.get("_offlineId"),
        )

    def to_document(self) -> dict:
        doc = {
            "accountId": self.account_id,
            "type": self.type.value,
            "amount": money_to_document(self.amount),
            "category": self.category,
            "description": self.description,
            "date": _timestamp_to_document(self.date),
            "createdBy": self.created_by,
            "createdAt": _timestamp_to_document(self.created_at),
            "updatedAt": _timestamp_to_document(self.updated_at),
        }
        if self.deleted:
            doc["deleted"] = True
        return doc

    def to_record(self) -> dict:
        record = {"id": self.id, **self.to_document()}
        if self.temp_id:
            record["_offlineId"] = self.temp_id
        return record


# =============================================================================
# LOANS
# =============================================================================

class LoanPayment(BaseModel):
    """One repayment recorded against a loan."""

    id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    date: Optional[datetime] = None
    note: str = Field(default="", max_length=MAX_NOTE_LENGTH)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('amount')
    @classmethod
    def round_amount(cls, v: Decimal) -> Decimal:
        return round_money(v)

    @classmethod
    def from_document(cls, data: dict) -> "LoanPayment":
        amount = parse_amount(data.get("amount"))
        return cls(
            id=str(data.get("id")),
            amount=amount if amount is not None else ZERO,
            date=parse_timestamp(data.get("date")),
            note=data.get("note") or "",
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "amount": money_to_document(self.amount),
            "date": _timestamp_to_document(self.date),
            "note": self.note,
            "createdAt": _timestamp_to_document(self.created_at),
            "updatedAt": _timestamp_to_document(self.updated_at),
        }


class Loan(BaseModel):
    """
    A loan the actor borrowed or lent, with its repayment history.

    INVARIANT: the payments never sum to more than the principal.
    `total_paid` and `status` are derived from `payments`.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    type: LoanType = Field(default=LoanType.BORROWED)
    amount: Decimal = Field(..., gt=0, description="Principal")
    interest_rate: Decimal = Field(default=ZERO, ge=0)
    term_months: Optional[int] = Field(default=None, ge=0)

    lender: Optional[str] = None
    borrower: Optional[str] = None
    counterparty_name: Optional[str] = None
    is_lent: bool = False

    payments: list[LoanPayment] = Field(default_factory=list)
    total_paid: Decimal = Field(default=ZERO)
    status: LoanStatus = Field(default=LoanStatus.ACTIVE)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('amount', 'total_paid')
    @classmethod
    def round_amounts(cls, v: Decimal) -> Decimal:
        return round_money(v)

    @model_validator(mode='after')
    def validate_payments(self) -> 'Loan':
        """Payments may never exceed the principal."""
        if self.payments_total() > self.amount:
            raise ValueError("Loan payments exceed the principal")
        return self

    def payments_total(self, exclude_id: Optional[str] = None) -> Decimal:
        return round_money(sum(
            (p.amount for p in self.payments if p.id != exclude_id),
            ZERO,
        ))

    @property
    def remaining(self) -> Decimal:
        return round_money(self.amount - self.payments_total())

    @staticmethod
    def derive_status(total_paid: Decimal, amount: Decimal, current: LoanStatus) -> LoanStatus:
        """
        PAID exactly when fully paid; a PAID loan that is no longer fully
        paid goes back to ACTIVE. DEFAULTED is kept until paid off.
        """
        if total_paid >= amount:
            return LoanStatus.PAID
        if current == LoanStatus.PAID:
            return LoanStatus.ACTIVE
        return current

    @staticmethod
    def counterparty_for(
        loan_type: LoanType,
        lender: Optional[str],
        borrower: Optional[str],
    ) -> Optional[str]:
        return lender if loan_type == LoanType.BORROWED else borrower

    def with_payments(self, payments: list[LoanPayment]) -> "Loan":
        """Return a copy with new payments and re-derived totals/status."""
        total = round_money(sum((p.amount for p in payments), ZERO))
        return self.model_copy(update={
            "payments": payments,
            "total_paid": total,
            "status": self.derive_status(total, self.amount, self.status),
            "updated_at": utc_now(),
        })

    @classmethod
    def from_document(cls, data: dict) -> "Loan":
        amount = parse_amount(data.get("amount"))
        interest = parse_amount(data.get("interestRate"))
        loan_type = LoanType(data.get("type") or LoanType.BORROWED.value)
        payments = [LoanPayment.from_document(p) for p in data.get("payments") or []]
        total = round_money(sum((p.amount for p in payments), ZERO))
        return cls(
            id=data["id"],
            user_id=data.get("userId") or "",
            type=loan_type,
            amount=amount if amount is not None else ZERO,
            interest_rate=interest if interest is not None else ZERO,
            term_months=data.get("termMonths"),
            lender=data.get("lender"),
            borrower=data.get("borrower"),
            counterparty_name=data.get("counterpartyName")
            or cls.counterparty_for(loan_type, data.get("lender"), data.get("borrower")),
            is_lent=loan_type == LoanType.LENT,
            payments=payments,
            total_paid=total,
            status=LoanStatus(data.get("status") or LoanStatus.ACTIVE.value),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )

    def to_document(self) -> dict:
        return {
            "userId": self.user_id,
            "type": self.type.value,
            "amount": money_to_document(self.amount),
            "interestRate": float(self.interest_rate),
            "termMonths": self.term_months,
            "lender": self.lender,
            "borrower": self.borrower,
            "counterpartyName": self.counterparty_name,
            "isLent": self.is_lent,
            "payments": [p.to_document() for p in self.payments],
            "totalPaid": money_to_document(self.total_paid),
            "status": self.status.value,
            "createdAt": _timestamp_to_document(self.created_at),
            "updatedAt": _timestamp_to_document(self.updated_at),
        }

    def to_record(self) -> dict:
        return {"id": self.id, **self.to_document()}
