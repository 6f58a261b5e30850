"""
Core Data Models for the Personal Ledger

These models define the strict schemas for all data flowing through the ledger.
They are designed to:
1. Enforce type safety at runtime
2. Reject malformed amounts before any balance effect
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: Transaction types form a closed enum that carries its own
sign. The revert/apply symmetry of the ledger engine is expressed as
arithmetic on that sign, never as string comparisons.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Currency(str, Enum):
    """Supported account currencies. No conversion is ever performed."""
    USD = "USD"
    ARS = "ARS"


class AccountType(str, Enum):
    """Kinds of accounts a user can hold."""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"
    CASH = "CASH"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


class TransactionType(str, Enum):
    """
    Transaction types.

    Each type carries the sign of its effect on the owning account:
    INCOME adds, EXPENSE subtracts, TRANSFER has no balance effect.
    """
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"

    @property
    def sign(self) -> int:
        return _TRANSACTION_SIGNS[self]


_TRANSACTION_SIGNS = {
    TransactionType.INCOME: 1,
    TransactionType.EXPENSE: -1,
    TransactionType.TRANSFER: 0,
}


class CategoryType(str, Enum):
    """Category kind."""
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class BillingCycle(str, Enum):
    """How often a subscription is billed."""
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class BillingOutcomeStatus(str, Enum):
    """Result of processing one due subscription."""
    BILLED = "billed"
    SKIPPED = "skipped"    # Another run already advanced it
    FAILED = "failed"


PositiveAmount = Annotated[
    Decimal,
    Field(gt=0, decimal_places=2, description="Strictly positive amount"),
]


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class Account(BaseModel):
    """
    A user account with a cached balance.

    CRITICAL: `balance` is an aggregate of the INCOME/EXPENSE transactions
    posted against the account. Only the ledger engine may change it, and
    only through the storage layer's atomic increment.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    account_type: AccountType = AccountType.CHECKING
    currency: Currency = Currency.ARS
    balance: Decimal = Field(
        default=Decimal("0"),
        decimal_places=2,
        description="Signed cached balance"
    )
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Category(BaseModel):
    """
    Transaction category.

    Default categories have no owner, are visible to every user and are
    immutable.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    is_default: bool = False

    def is_visible_to(self, user_id: str) -> bool:
        return self.is_default or self.user_id == user_id


class Transaction(BaseModel):
    """
    A posted transaction.

    `currency` is inherited from the account at creation time and never
    changes afterwards.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    amount: PositiveAmount
    type: TransactionType
    currency: Currency
    account_id: UUID
    category_id: Optional[UUID] = None
    date: datetime
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)
    processed: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Subscription(BaseModel):
    """
    A recurring billing definition.

    While active, every time `next_billing_date` is reached the scheduler
    emits one EXPENSE transaction and moves the date forward one cycle.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    amount: PositiveAmount
    billing_cycle: BillingCycle
    next_billing_date: datetime
    account_id: UUID
    category_id: Optional[UUID] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_due(self, now: datetime) -> bool:
        return self.is_active and self.next_billing_date <= now


# =============================================================================
# REQUEST MODELS
# =============================================================================

class TransactionCreate(BaseModel):
    """Incoming request to post a new transaction."""
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: PositiveAmount
    type: TransactionType
    date: datetime
    account_id: UUID
    category_id: Optional[UUID] = None
    description: Optional[str] = Field(default=None, max_length=500)


class TransactionUpdate(BaseModel):
    """
    Incoming partial update of a transaction.

    Only fields explicitly set are applied. Currency is not editable.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Optional[PositiveAmount] = None
    type: Optional[TransactionType] = None
    date: Optional[datetime] = None
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("amount", "type", "date", "account_id")
    @classmethod
    def reject_explicit_null(cls, v):
        """Ledger fields may be omitted but not cleared."""
        if v is None:
            raise ValueError("field cannot be null")
        return v

    def changes(self) -> dict[str, Any]:
        """Fields the caller actually provided."""
        return self.model_dump(exclude_unset=True)


# =============================================================================
# RESULT MODELS
# =============================================================================

class BalanceAdjustment(BaseModel):
    """One signed change to an account's cached balance."""
    model_config = ConfigDict(frozen=True)

    account_id: UUID
    delta: Decimal


class BillingOutcome(BaseModel):
    """Per-subscription result of a billing run."""

    subscription_id: UUID
    status: BillingOutcomeStatus
    transaction_id: Optional[UUID] = None
    billed_for: Optional[datetime] = Field(
        default=None,
        description="Billing date the emitted transaction is dated at"
    )
    next_billing_date: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, description="Why a subscription was skipped")
    error_type: Optional[str] = None
    error_message: Optional[str] = None


class BillingRunReport(BaseModel):
    """Aggregated result of one `run_billing_cycle` call."""

    run_id: UUID = Field(default_factory=uuid4)
    evaluated_at: datetime = Field(
        ...,
        description="The `now` the due predicate was evaluated against"
    )
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    outcomes: list[BillingOutcome] = Field(default_factory=list)

    @property
    def billed_count(self) -> int:
        return self._count(BillingOutcomeStatus.BILLED)

    @property
    def skipped_count(self) -> int:
        return self._count(BillingOutcomeStatus.SKIPPED)

    @property
    def failed_count(self) -> int:
        return self._count(BillingOutcomeStatus.FAILED)

    def _count(self, status: BillingOutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


class ReconciliationReport(BaseModel):
    """
    Comparison between an account's cached balance and the balance implied
    by its current transactions.
    """

    account_id: UUID
    checked_at: datetime = Field(default_factory=datetime.utcnow)
    cached_balance: Decimal
    expected_balance: Decimal
    transaction_count: int = Field(ge=0)

    @property
    def difference(self) -> Decimal:
        return self.cached_balance - self.expected_balance

    @property
    def is_consistent(self) -> bool:
        return self.difference == 0


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'not_found', 'inactive', 'currency_mismatch')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage request validation.

    Stage 1: Schema validation (pydantic request models)
    Stage 2: Semantic validation (references checked against storage)
    """

    validated_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    issues: list[ValidationIssue] = Field(
        default_factory=list,
        description="All validation issues found"
    )

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")
