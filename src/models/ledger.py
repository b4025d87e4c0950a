"""
Core Data Models for the Household Ledger

These models define the strict schemas for every record the ledger reads:
members, expenses with their splits, and settlements. They also define
the derived (never persisted) results the ledger computes.

DESIGN DECISION: All money fields are integer cents in pydantic STRICT
mode. A float or a numeric string is a type error, not something to be
coerced. Conversion from user input happens once, at the boundary, via
src.ledger.money.parse_cents.

DESIGN DECISION: Records are validated at the storage boundary, but an
Expense whose splits do not add up to its amount is still a valid record
to READ. That mismatch is corruption the ledger must be able to see and
report, so only the write-time validator rejects it.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


# Signed 64-bit upper bound, the widest integer the storage backends hold
MAX_CENTS = 2**63 - 1

# Positive cents (amounts) and non-negative cents (shares)
PositiveCents = Annotated[int, Field(strict=True, gt=0, le=MAX_CENTS)]
NonNegativeCents = Annotated[int, Field(strict=True, ge=0, le=MAX_CENTS)]

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class ExpenseCategory(str, Enum):
    """Expense categories shown in the household dashboard."""
    RENT = "rent"
    UTILITIES = "utilities"
    GROCERIES = "groceries"
    INTERNET = "internet"
    ENTERTAINMENT = "entertainment"
    TRANSPORT = "transport"
    DINING = "dining"
    OTHER = "other"


class PaymentMethod(str, Enum):
    """How a settlement was paid. Informational only."""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    VENMO = "venmo"
    REVOLUT = "revolut"
    OTHER = "other"


class InconsistencyKind(str, Enum):
    """
    Kinds of data inconsistency the reducer can detect.

    These indicate upstream corruption (e.g. a member deleted while still
    referenced), never a bug in the ledger arithmetic.
    """
    UNKNOWN_PAYER = "unknown_payer"
    UNKNOWN_SPLIT_MEMBER = "unknown_split_member"
    UNKNOWN_SETTLEMENT_MEMBER = "unknown_settlement_member"
    SPLIT_SUM_MISMATCH = "split_sum_mismatch"
    AMOUNT_OUT_OF_RANGE = "amount_out_of_range"
    UNREADABLE_RECORD = "unreadable_record"


# =============================================================================
# STORED RECORDS
# =============================================================================

class Member(BaseModel):
    """A person in a household group."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(
        default_factory=_new_id,
        min_length=1,
        max_length=64,
        description="Opaque member identifier"
    )
    display_name: str = Field(
        ...,
        min_length=1,
        max_length=100,
    )
    group_id: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    joined_at: datetime = Field(default_factory=datetime.utcnow)


class Split(BaseModel):
    """
    One member's share of one expense.

    A zero share means "not owing"; so does having no split at all.
    """

    member_id: str = Field(..., min_length=1, max_length=64)
    share_cents: NonNegativeCents


class Expense(BaseModel):
    """
    Something one member paid for on behalf of the group.

    Invariant (checked at write time, diagnosed at read time):
        sum(split.share_cents) == amount_cents
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=_new_id, min_length=1, max_length=64)
    group_id: str = Field(..., min_length=1)
    description: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    paid_by_id: str = Field(..., min_length=1, max_length=64)
    amount_cents: PositiveCents
    splits: list[Split] = Field(default_factory=list)
    month: str = Field(
        ...,
        pattern=MONTH_PATTERN,
        description="Accounting month label, YYYY-MM"
    )
    category: ExpenseCategory = ExpenseCategory.OTHER
    notes: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: bool = False
    recurring_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def split_total_cents(self) -> int:
        return sum(split.share_cents for split in self.splits)

    @property
    def splits_balanced(self) -> bool:
        return self.split_total_cents == self.amount_cents

    def share_of(self, member_id: str) -> int:
        """Total share of a member in this expense (0 if absent)."""
        return sum(
            split.share_cents for split in self.splits
            if split.member_id == member_id
        )


class Settlement(BaseModel):
    """A payment from one member to another that reduces their mutual debt."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=_new_id, min_length=1, max_length=64)
    group_id: str = Field(..., min_length=1)
    from_member_id: str = Field(..., min_length=1, max_length=64)
    to_member_id: str = Field(..., min_length=1, max_length=64)
    amount_cents: PositiveCents
    month: str = Field(..., pattern=MONTH_PATTERN)
    payment_method: PaymentMethod = PaymentMethod.CASH
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode='after')
    def validate_parties(self) -> 'Settlement':
        if self.from_member_id == self.to_member_id:
            raise ValueError("Cannot settle with yourself")
        return self


# =============================================================================
# UNDO HISTORY
# =============================================================================

# How long a member can take back their own last write
UNDO_WINDOW = timedelta(minutes=5)


class UndoActionType(str, Enum):
    """Writes that can be undone."""
    EXPENSE_ADDED = "expense_added"
    EXPENSE_DELETED = "expense_deleted"
    SETTLEMENT_ADDED = "settlement_added"
    SETTLEMENT_DELETED = "settlement_deleted"


class UndoAction(BaseModel):
    """
    One write its author may take back within UNDO_WINDOW.

    entity_data is the record as it was written or deleted (JSON form),
    so a deleted expense or settlement comes back with the same id.
    """

    id: str = Field(default_factory=_new_id, min_length=1, max_length=64)
    group_id: str = Field(..., min_length=1)
    member_id: str = Field(..., min_length=1, max_length=64)
    action_type: UndoActionType
    entity_id: str = Field(..., min_length=1, max_length=64)
    entity_data: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    can_undo: bool = True

    @model_validator(mode='after')
    def default_expiry(self) -> 'UndoAction':
        if self.expires_at is None:
            self.expires_at = self.created_at + UNDO_WINDOW
        return self

    @property
    def entity_type(self) -> str:
        if self.action_type in (UndoActionType.EXPENSE_ADDED, UndoActionType.EXPENSE_DELETED):
            return "expense"
        return "settlement"

    def is_available(self, now: datetime) -> bool:
        return self.can_undo and now < self.expires_at


class LedgerInconsistency(BaseModel):
    """A data problem found while reading or reducing the ledger."""

    kind: InconsistencyKind
    entity_type: str = Field(..., pattern="^(expense|settlement|member)$")
    entity_id: str
    member_id: Optional[str] = None
    amount_cents: Optional[int] = None
    message: str


class LedgerSnapshot(BaseModel):
    """
    A consistent read of everything that affects one group's money.

    The storage layer produces this in one go so that expenses and
    settlements are never read at different points in time.

    unreadable_records lists stored rows that no longer parse. They are
    left out of the lists above and reported instead of failing the read.
    """

    group_id: str
    members: list[Member] = Field(default_factory=list)
    expenses: list[Expense] = Field(default_factory=list)
    settlements: list[Settlement] = Field(default_factory=list)
    closed_months: list[str] = Field(default_factory=list)
    unreadable_records: list[LedgerInconsistency] = Field(default_factory=list)

    def member_ids(self) -> set[str]:
        return {member.id for member in self.members}

    def get_member(self, member_id: str) -> Optional[Member]:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    def is_month_closed(self, month: str) -> bool:
        return month in self.closed_months


# =============================================================================
# DERIVED RESULTS (computed, never stored)
# =============================================================================

class MemberBalance(BaseModel):
    """
    A member's position in the group ledger.

    net_balance = (total_paid - total_share) + (total_settled_out - total_settled_in)

    Positive: the group owes this member. Negative: this member owes.

    Totals are exact Python ints. One that leaves the storable range is
    reported by the reducer as an inconsistency.
    """

    member_id: str
    display_name: str
    total_paid: int = 0
    total_share: int = 0
    total_settled_out: int = 0
    total_settled_in: int = 0
    net_balance: int = 0


class BalanceResult(BaseModel):
    """
    Output of the ledger reducer.

    invariant_valid is about the zero-sum property only.
    inconsistencies lists every record the reducer could not attribute.
    """

    balances: list[MemberBalance] = Field(default_factory=list)
    sum_of_balances: int = 0
    invariant_valid: bool = True
    inconsistencies: list[LedgerInconsistency] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return self.invariant_valid and not self.inconsistencies

    def balance_for(self, member_id: str) -> Optional[MemberBalance]:
        for balance in self.balances:
            if balance.member_id == member_id:
                return balance
        return None

    def net_by_member(self) -> dict[str, int]:
        return {b.member_id: b.net_balance for b in self.balances}


class SettlementValidation(BaseModel):
    """
    Result of checking a proposed settlement.

    Before/after figures are the GROUP-WIDE net balances of both parties.
    They are informational (for the audit trail); the decision itself is
    made on the direct pairwise debt.
    """

    valid: bool
    error: Optional[str] = None
    pairwise_owed_cents: int = 0
    balance_before_from: int = 0
    balance_after_from: int = 0
    balance_before_to: int = 0
    balance_after_to: int = 0


class SuggestedTransaction(BaseModel):
    """One payment in a smart-settle plan."""

    from_id: str
    from_name: str
    to_id: str
    to_name: str
    amount_cents: PositiveCents


class PairwiseExpenseItem(BaseModel):
    """An expense that creates debt between exactly two members."""

    expense_id: str
    description: str
    amount_cents: int
    share_cents: int = Field(..., description="What the non-payer owes the payer")
    month: str
    created_at: datetime


class PairwiseSettlementItem(BaseModel):
    settlement_id: str
    amount_cents: int
    month: str
    payment_method: PaymentMethod
    created_at: datetime


class PairwiseBreakdown(BaseModel):
    """
    Why two members owe each other what they do.

    From A's point of view:
    - they_paid_you_owe: B paid, A has a share -> A owes B
    - you_paid_they_owe: A paid, B has a share -> B owes A

    net_amount > 0 means A owes B; < 0 means B owes A; 0 means settled.
    """

    member_a_id: str
    member_b_id: str
    they_paid_you_owe: list[PairwiseExpenseItem] = Field(default_factory=list)
    you_paid_they_owe: list[PairwiseExpenseItem] = Field(default_factory=list)
    settlements_from_a: list[PairwiseSettlementItem] = Field(default_factory=list)
    settlements_to_a: list[PairwiseSettlementItem] = Field(default_factory=list)
    a_owes_b_cents: int = 0
    b_owes_a_cents: int = 0
    a_settled_to_b_cents: int = 0
    b_settled_to_a_cents: int = 0
    net_amount: int = 0

    @property
    def is_settled(self) -> bool:
        return self.net_amount == 0


class ExpenseSplitError(BaseModel):
    """An expense whose splits do not add up to its amount."""

    expense_id: str
    description: str
    amount_cents: int
    split_sum_cents: int
    error: str


class LedgerReport(BaseModel):
    """
    Read-only diagnostics for one group.

    For admins and QA: everything needed to see whether the ledger is
    intact, in one place.
    """

    group_id: str
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    sum_of_balances: int
    invariant_valid: bool
    balances: list[MemberBalance] = Field(default_factory=list)
    formatted_balances: dict[str, str] = Field(default_factory=dict)
    invalid_expenses: list[ExpenseSplitError] = Field(default_factory=list)
    inconsistencies: list[LedgerInconsistency] = Field(default_factory=list)
    closed_months: list[str] = Field(default_factory=list)
    expense_count: int = 0
    settlement_count: int = 0

    @property
    def is_healthy(self) -> bool:
        return (
            self.invariant_valid
            and not self.invalid_expenses
            and not self.inconsistencies
        )


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
        description="Type of issue (e.g., 'missing', 'split_mismatch', 'unknown_member')"
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
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    """
    Result of the two-stage write validation.

    Stage 1: Schema validation (amounts, split arithmetic)
    Stage 2: Semantic validation (membership, closed months, sanity)
    """

    entity_id: str
    validated_at: datetime = Field(default_factory=datetime.utcnow)
    schema_valid: bool
    semantic_valid: bool
    is_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def first_error(self) -> Optional[str]:
        for issue in self.issues:
            if issue.severity == "error":
                return issue.message
        return None
