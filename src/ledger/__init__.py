"""
Ledger Core

Pure, synchronous, deterministic computations over already-fetched
records. Nothing in this package performs I/O, logs, or reads settings.
"""

from src.ledger.money import (
    MoneyError,
    add,
    ensure_cents,
    format_cents,
    negate,
    parse_cents,
    split_by_percentages,
    split_by_weights,
    split_evenly,
    subtract,
    sum_cents,
)
from src.ledger.pairwise import get_pairwise_breakdown, pairwise_owed
from src.ledger.reducer import compute_balances
from src.ledger.settlement import validate_settlement
from src.ledger.simplifier import residual_balances, simplify_debts
from src.ledger.splits import RecurringExpenseTemplate, SplitMode, build_splits

__all__ = [
    # Money
    "MoneyError",
    "add",
    "ensure_cents",
    "format_cents",
    "negate",
    "parse_cents",
    "split_by_percentages",
    "split_by_weights",
    "split_evenly",
    "subtract",
    "sum_cents",
    # Ledger operations
    "compute_balances",
    "get_pairwise_breakdown",
    "pairwise_owed",
    "residual_balances",
    "simplify_debts",
    "validate_settlement",
    # Splits
    "RecurringExpenseTemplate",
    "SplitMode",
    "build_splits",
]
