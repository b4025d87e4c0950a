"""
Settlement Validation

Checks a proposed payment before it is written.

POLICY: a settlement may pay at most the DIRECT pairwise debt between
payer and payee. The group-wide net balance is not consulted for the
decision, so "pay what you owe this specific person" works even when
the payer is a net creditor of the group. Paying someone you do not owe
directly is rejected.

This module never logs and never raises for bad input; it returns a
SettlementValidation. Auditing rejections is the caller's job.
"""

from typing import Sequence

from src.ledger.money import format_cents
from src.ledger.pairwise import pairwise_owed
from src.ledger.reducer import compute_balances
from src.models.ledger import (
    Expense,
    Member,
    Settlement,
    SettlementValidation,
)


def validate_settlement(
    members: Sequence[Member],
    expenses: Sequence[Expense],
    settlements: Sequence[Settlement],
    from_id: str,
    to_id: str,
    amount_cents: int,
    tolerance_cents: int = 0,
    currency_symbol: str = "€",
) -> SettlementValidation:
    """
    Validate a settlement of ``amount_cents`` from ``from_id`` to ``to_id``.

    Args:
        members, expenses, settlements: The group's current records.
        from_id: Member paying.
        to_id: Member being paid.
        amount_cents: Proposed amount.
        tolerance_cents: How far above the pairwise debt a payment may go.
                         0 means exact or less.
        currency_symbol: Used in error messages only.

    Returns:
        SettlementValidation. ``error`` is a user-facing message when
        ``valid`` is False.
    """
    if from_id == to_id:
        return SettlementValidation(valid=False, error="Cannot settle with yourself.")

    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        return SettlementValidation(valid=False, error="Amount must be positive.")

    by_id = {member.id: member for member in members}
    if from_id not in by_id or to_id not in by_id:
        return SettlementValidation(valid=False, error="Invalid member IDs.")

    # Group-wide figures, for the audit trail only
    result = compute_balances(members, expenses, settlements)
    net = result.net_by_member()
    before_from = net.get(from_id, 0)
    before_to = net.get(to_id, 0)

    owed = pairwise_owed(expenses, settlements, from_id, to_id)

    validation = SettlementValidation(
        valid=True,
        pairwise_owed_cents=owed,
        balance_before_from=before_from,
        balance_after_from=before_from + amount_cents,
        balance_before_to=before_to,
        balance_after_to=before_to - amount_cents,
    )

    payer = by_id[from_id].display_name
    payee = by_id[to_id].display_name

    if owed <= 0:
        validation.valid = False
        validation.error = f"{payer} does not owe {payee} anything."
    elif amount_cents > owed + tolerance_cents:
        validation.valid = False
        validation.error = (
            f"Amount exceeds what {payer} owes {payee} "
            f"({format_cents(owed, currency_symbol)})."
        )

    return validation
