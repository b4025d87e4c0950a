"""
Debt Simplification (Smart Settle)

Turns group-wide net balances into a short list of payments that brings
every member to zero.

ALGORITHM (greedy min-cash-flow):
1. Debtors have net_balance < 0, creditors > 0; zero balances are ignored.
2. Match the largest debtor with the largest creditor and move
   min(|debt|, credit) between them.
3. Whoever reaches zero drops out; the other goes back in the queue.
4. Repeat until one side is empty.

Ties on amount are broken by member id, so the same balances always
produce the same plan.

TRADEOFF: greedy matching does not always find the smallest possible
number of payments (that problem is NP-hard). Each step zeroes at least
one member, so a zero-sum input of n non-zero balances needs at most
n - 1 payments. That is small enough for a household and fully
deterministic, which matters more here than the theoretical optimum.
"""

import heapq
from typing import Iterable, Sequence

from src.models.ledger import MemberBalance, SuggestedTransaction


def simplify_debts(balances: Iterable[MemberBalance]) -> list[SuggestedTransaction]:
    """
    Compute a deterministic settle-up plan from net balances.

    If the balances do not sum to zero (a corrupted ledger), matching
    stops as soon as either side runs out. Use residual_balances() to see
    what is left over.
    """
    names: dict[str, str] = {}
    debtors: list[tuple[int, str]] = []
    creditors: list[tuple[int, str]] = []

    # Max-heaps on amount via negation; member id breaks ties
    for balance in balances:
        names[balance.member_id] = balance.display_name
        if balance.net_balance < 0:
            debtors.append((balance.net_balance, balance.member_id))
        elif balance.net_balance > 0:
            creditors.append((-balance.net_balance, balance.member_id))

    heapq.heapify(debtors)
    heapq.heapify(creditors)

    transactions = []

    while debtors and creditors:
        neg_debt, debtor_id = heapq.heappop(debtors)
        neg_credit, creditor_id = heapq.heappop(creditors)

        debt = -neg_debt
        credit = -neg_credit
        amount = min(debt, credit)

        transactions.append(SuggestedTransaction(
            from_id=debtor_id,
            from_name=names[debtor_id],
            to_id=creditor_id,
            to_name=names[creditor_id],
            amount_cents=amount,
        ))

        if debt > amount:
            heapq.heappush(debtors, (-(debt - amount), debtor_id))
        if credit > amount:
            heapq.heappush(creditors, (-(credit - amount), creditor_id))

    return transactions


def residual_balances(
    balances: Sequence[MemberBalance],
    transactions: Iterable[SuggestedTransaction],
) -> dict[str, int]:
    """
    Net balances left after executing every transaction as a settlement.

    A payment from A to B raises A's balance and lowers B's, exactly as
    a recorded settlement would. For a consistent ledger the result is
    all zeros.
    """
    residual = {balance.member_id: balance.net_balance for balance in balances}
    for tx in transactions:
        residual[tx.from_id] = residual.get(tx.from_id, 0) + tx.amount_cents
        residual[tx.to_id] = residual.get(tx.to_id, 0) - tx.amount_cents
    return residual
