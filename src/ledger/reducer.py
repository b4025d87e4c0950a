"""
Ledger Reducer

Folds a group's expenses, splits and settlements into per-member net
balances.

THE FORMULA (integer cents only):
    net_balance = (total_paid - total_share) + (total_settled_out - total_settled_in)

    Positive -> others owe this member (they should RECEIVE)
    Negative -> this member owes others (they should PAY)

INVARIANT: the sum of all net balances in a group is exactly zero.
Every cent paid by someone is owed by someone, and every settlement
cancels equally on both sides.

DESIGN DECISION: Balances are never stored, cached or mutated.
They are recomputed from the raw records on every read. This function
is pure: no I/O, no logging, no hidden state.

Data problems (records pointing at unknown members, splits that do not
add up, totals beyond the signed 64-bit range) are returned as
LedgerInconsistency entries. They never raise, because a balance view
must always render. Sums are exact Python ints for the same reason.
"""

from typing import Iterable

from src.ledger.money import MAX_CENTS, MIN_CENTS
from src.models.ledger import (
    BalanceResult,
    Expense,
    InconsistencyKind,
    LedgerInconsistency,
    Member,
    MemberBalance,
    Settlement,
)


class _Accumulator:
    __slots__ = ("paid", "share", "settled_out", "settled_in")

    def __init__(self):
        self.paid = 0
        self.share = 0
        self.settled_out = 0
        self.settled_in = 0


def compute_balances(
    members: Iterable[Member],
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    tolerance_cents: int = 0,
) -> BalanceResult:
    """
    Compute every member's balance and check the zero-sum invariant.

    Args:
        members: Group members, in display order. Members with no
                 activity still get an all-zero balance.
        expenses: All expenses of the group, with their splits.
        settlements: All settlements of the group.
        tolerance_cents: Largest |sum of balances| still considered valid.
                         Defaults to 0 (exact).

    Returns:
        BalanceResult with balances in member order, the sum of balances,
        the invariant flag and any inconsistencies found.
    """
    members = list(members)
    accumulators: dict[str, _Accumulator] = {}
    for member in members:
        accumulators.setdefault(member.id, _Accumulator())

    inconsistencies: list[LedgerInconsistency] = []

    for expense in expenses:
        payer = accumulators.get(expense.paid_by_id)
        if payer is None:
            inconsistencies.append(LedgerInconsistency(
                kind=InconsistencyKind.UNKNOWN_PAYER,
                entity_type="expense",
                entity_id=expense.id,
                member_id=expense.paid_by_id,
                amount_cents=expense.amount_cents,
                message=(
                    f"Expense '{expense.description}' was paid by unknown "
                    f"member {expense.paid_by_id}"
                ),
            ))
        else:
            payer.paid += expense.amount_cents

        for split in expense.splits:
            account = accumulators.get(split.member_id)
            if account is None:
                inconsistencies.append(LedgerInconsistency(
                    kind=InconsistencyKind.UNKNOWN_SPLIT_MEMBER,
                    entity_type="expense",
                    entity_id=expense.id,
                    member_id=split.member_id,
                    amount_cents=split.share_cents,
                    message=(
                        f"Expense '{expense.description}' has a split for "
                        f"unknown member {split.member_id}"
                    ),
                ))
                continue
            account.share += split.share_cents

        # Diagnostic only. The expense is counted as recorded, never repaired.
        split_total = sum(split.share_cents for split in expense.splits)
        if split_total != expense.amount_cents:
            inconsistencies.append(LedgerInconsistency(
                kind=InconsistencyKind.SPLIT_SUM_MISMATCH,
                entity_type="expense",
                entity_id=expense.id,
                amount_cents=split_total - expense.amount_cents,
                message=(
                    f"Split sum ({split_total}) != expense amount "
                    f"({expense.amount_cents}) for '{expense.description}'"
                ),
            ))

    for settlement in settlements:
        sender = accumulators.get(settlement.from_member_id)
        receiver = accumulators.get(settlement.to_member_id)

        for member_id, account in (
            (settlement.from_member_id, sender),
            (settlement.to_member_id, receiver),
        ):
            if account is None:
                inconsistencies.append(LedgerInconsistency(
                    kind=InconsistencyKind.UNKNOWN_SETTLEMENT_MEMBER,
                    entity_type="settlement",
                    entity_id=settlement.id,
                    member_id=member_id,
                    amount_cents=settlement.amount_cents,
                    message=(
                        f"Settlement {settlement.id} references unknown "
                        f"member {member_id}"
                    ),
                ))

        if sender is not None:
            sender.settled_out += settlement.amount_cents
        if receiver is not None:
            receiver.settled_in += settlement.amount_cents

    balances = []
    seen = set()
    out_of_range = False
    for member in members:
        # Duplicate member entries are reported once
        if member.id in seen:
            continue
        seen.add(member.id)

        acc = accumulators[member.id]
        net = (acc.paid - acc.share) + (acc.settled_out - acc.settled_in)
        totals = (acc.paid, acc.share, acc.settled_out, acc.settled_in, net)
        if any(not MIN_CENTS <= value <= MAX_CENTS for value in totals):
            out_of_range = True
            inconsistencies.append(LedgerInconsistency(
                kind=InconsistencyKind.AMOUNT_OUT_OF_RANGE,
                entity_type="member",
                entity_id=member.id,
                member_id=member.id,
                amount_cents=net,
                message=(
                    f"Totals for {member.display_name} exceed the storable "
                    f"range (net {net})"
                ),
            ))

        balances.append(MemberBalance(
            member_id=member.id,
            display_name=member.display_name,
            total_paid=acc.paid,
            total_share=acc.share,
            total_settled_out=acc.settled_out,
            total_settled_in=acc.settled_in,
            net_balance=net,
        ))

    sum_of_balances = sum(b.net_balance for b in balances)

    return BalanceResult(
        balances=balances,
        sum_of_balances=sum_of_balances,
        invariant_valid=abs(sum_of_balances) <= tolerance_cents and not out_of_range,
        inconsistencies=inconsistencies,
    )
