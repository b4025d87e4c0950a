"""
Pairwise Breakdown

Explains the debt between exactly two members ("Why do I owe?").

Only expenses paid by one of the two with a positive share for the
other, and settlements directly between the two, are considered. This
is narrower than the group-wide ledger: A may owe B here while being a
net creditor of the group as a whole.
"""

from typing import Iterable

from src.models.ledger import (
    Expense,
    PairwiseBreakdown,
    PairwiseExpenseItem,
    PairwiseSettlementItem,
    Settlement,
)


def get_pairwise_breakdown(
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    member_a_id: str,
    member_b_id: str,
) -> PairwiseBreakdown:
    """
    Itemize everything that makes A and B owe each other.

    net_amount = (A's owed shares - A's settlements to B)
               - (B's owed shares - B's settlements to A)

    Positive: A owes B. Negative: B owes A. Zero: settled.

    Raises:
        ValueError: If both ids are the same member.
    """
    if member_a_id == member_b_id:
        raise ValueError("A pairwise breakdown needs two different members")

    they_paid_you_owe = []
    you_paid_they_owe = []

    for expense in expenses:
        if expense.paid_by_id == member_b_id:
            share = expense.share_of(member_a_id)
            if share > 0:
                they_paid_you_owe.append(_expense_item(expense, share))
        elif expense.paid_by_id == member_a_id:
            share = expense.share_of(member_b_id)
            if share > 0:
                you_paid_they_owe.append(_expense_item(expense, share))

    settlements_from_a = []
    settlements_to_a = []

    for settlement in settlements:
        if (
            settlement.from_member_id == member_a_id
            and settlement.to_member_id == member_b_id
        ):
            settlements_from_a.append(_settlement_item(settlement))
        elif (
            settlement.from_member_id == member_b_id
            and settlement.to_member_id == member_a_id
        ):
            settlements_to_a.append(_settlement_item(settlement))

    # Newest first, id as tie-break
    for expense_items in (they_paid_you_owe, you_paid_they_owe):
        expense_items.sort(key=lambda i: (i.created_at, i.expense_id), reverse=True)
    for settlement_items in (settlements_from_a, settlements_to_a):
        settlement_items.sort(key=lambda i: (i.created_at, i.settlement_id), reverse=True)

    a_owes_b = sum(item.share_cents for item in they_paid_you_owe)
    b_owes_a = sum(item.share_cents for item in you_paid_they_owe)
    a_settled_to_b = sum(item.amount_cents for item in settlements_from_a)
    b_settled_to_a = sum(item.amount_cents for item in settlements_to_a)

    return PairwiseBreakdown(
        member_a_id=member_a_id,
        member_b_id=member_b_id,
        they_paid_you_owe=they_paid_you_owe,
        you_paid_they_owe=you_paid_they_owe,
        settlements_from_a=settlements_from_a,
        settlements_to_a=settlements_to_a,
        a_owes_b_cents=a_owes_b,
        b_owes_a_cents=b_owes_a,
        a_settled_to_b_cents=a_settled_to_b,
        b_settled_to_a_cents=b_settled_to_a,
        net_amount=(a_owes_b - a_settled_to_b) - (b_owes_a - b_settled_to_a),
    )


def pairwise_owed(
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    debtor_id: str,
    creditor_id: str,
) -> int:
    """How much debtor owes creditor directly (negative if the reverse)."""
    return get_pairwise_breakdown(expenses, settlements, debtor_id, creditor_id).net_amount


def _expense_item(expense: Expense, share: int) -> PairwiseExpenseItem:
    return PairwiseExpenseItem(
        expense_id=expense.id,
        description=expense.description,
        amount_cents=expense.amount_cents,
        share_cents=share,
        month=expense.month,
        created_at=expense.created_at,
    )


def _settlement_item(settlement: Settlement) -> PairwiseSettlementItem:
    return PairwiseSettlementItem(
        settlement_id=settlement.id,
        amount_cents=settlement.amount_cents,
        month=settlement.month,
        payment_method=settlement.payment_method,
        created_at=settlement.created_at,
    )
