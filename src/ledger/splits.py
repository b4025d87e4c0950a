"""
Split Builders

Turns "how should this expense be divided" into concrete Split records.

- EQUAL: split_evenly, the first members absorb the extra cents
- WEIGHTED: integer weights, shortfall to the last member
- PERCENTAGE: percentages adding to 100, shortfall to the last member
- CUSTOM: explicit cents per member, taken as given

CUSTOM shares are NOT repaired if they do not add up. The expense
validator reports the mismatch to the user instead.
"""

from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field

from src.ledger.money import (
    MoneyError,
    ensure_cents,
    split_by_percentages,
    split_by_weights,
    split_evenly,
)
from src.models.ledger import ExpenseCategory, Split


class SplitMode(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"
    WEIGHTED = "weighted"
    PERCENTAGE = "percentage"


ShareValue = Union[int, Decimal, str]


def build_splits(
    amount_cents: int,
    mode: SplitMode,
    member_ids: Sequence[str],
    shares: Optional[Mapping[str, ShareValue]] = None,
) -> list[Split]:
    """
    Build splits for an expense.

    Args:
        amount_cents: Expense total.
        mode: How to divide it.
        member_ids: Participants, in the order remainders are assigned.
        shares: Per-member weights (WEIGHTED), percentages (PERCENTAGE)
                or cents (CUSTOM). Ignored for EQUAL.

    Raises:
        MoneyError: If the request cannot be turned into splits.
    """
    ensure_cents(amount_cents)
    if not member_ids:
        raise MoneyError("An expense needs at least one participant")
    if len(set(member_ids)) != len(member_ids):
        raise MoneyError("Participants must not repeat")

    mode = SplitMode(mode)

    if mode == SplitMode.EQUAL:
        amounts = split_evenly(amount_cents, len(member_ids))
    else:
        if shares is None:
            raise MoneyError(f"{mode.value} splits need per-member shares")
        missing = [mid for mid in member_ids if mid not in shares]
        if missing:
            raise MoneyError(f"No share given for: {', '.join(missing)}")
        values = [shares[mid] for mid in member_ids]

        if mode == SplitMode.WEIGHTED:
            amounts = split_by_weights(amount_cents, values)
        elif mode == SplitMode.PERCENTAGE:
            amounts = split_by_percentages(amount_cents, values)
        else:
            amounts = [ensure_cents(value) for value in values]

    return [
        Split(member_id=member_id, share_cents=amount)
        for member_id, amount in zip(member_ids, amounts)
    ]


class RecurringExpenseTemplate(BaseModel):
    """
    A bill that comes back every month (rent, internet...).

    Templates never touch balances directly. Only the expenses generated
    from them do.
    """

    id: str = Field(..., min_length=1)
    group_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., strict=True, gt=0)
    category: ExpenseCategory = ExpenseCategory.OTHER
    split_mode: SplitMode = SplitMode.EQUAL
    member_ids: list[str] = Field(default_factory=list)
    shares: dict[str, ShareValue] = Field(default_factory=dict)
    active: bool = True

    def build_splits(self, member_ids: Sequence[str]) -> list[Split]:
        """Splits for one generated expense; the template's own members win."""
        participants = self.member_ids or list(member_ids)
        return build_splits(
            self.amount_cents,
            self.split_mode,
            participants,
            self.shares or None,
        )
