"""
Integer-Cents Money Arithmetic

Every amount in the ledger is an ``int`` number of cents.

DESIGN DECISION: There is no float anywhere in this module.
Decimal is used only at the presentation boundary (format_cents /
parse_cents). Inside the ledger, amounts are plain Python ints that are
range-checked against the signed 64-bit range the storage layer can hold.

Any division that does not divide evenly hands out the remainder
deterministically, so the parts ALWAYS sum to the whole.
"""

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Sequence, Union


MAX_CENTS = 2**63 - 1
MIN_CENTS = -(2**63)


class MoneyError(ValueError):
    """Invalid monetary value or split request."""
    pass


def ensure_cents(value: int) -> int:
    """
    Check that a value is an integer number of cents within range.

    Rejects floats (even integral ones) and bools.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise MoneyError(
            f"Amounts must be integer cents, got {type(value).__name__}: {value!r}"
        )
    if value > MAX_CENTS or value < MIN_CENTS:
        raise MoneyError(f"Amount out of range: {value}")
    return value


def add(a: int, b: int) -> int:
    return ensure_cents(ensure_cents(a) + ensure_cents(b))


def subtract(a: int, b: int) -> int:
    return ensure_cents(ensure_cents(a) - ensure_cents(b))


def negate(a: int) -> int:
    return ensure_cents(-ensure_cents(a))


def sum_cents(values: Iterable[int]) -> int:
    """Exact sum of cent amounts, range-checked on the result."""
    total = 0
    for value in values:
        total += ensure_cents(value)
    return ensure_cents(total)


# =============================================================================
# SPLITTING
# =============================================================================

def split_evenly(total: int, n: int) -> list[int]:
    """
    Split ``total`` into ``n`` parts that differ by at most one cent.

    Every part gets ``floor(total / n)``; the remainder ``total mod n``
    (always 0 <= r < n) goes one cent at a time to the first ``r`` parts.
    The order of the result is the caller's recipient order.

    Example:
        >>> split_evenly(1000, 3)
        [334, 333, 333]
    """
    ensure_cents(total)
    if isinstance(n, bool) or not isinstance(n, int) or n < 1:
        raise MoneyError(f"Cannot split among {n!r} recipients")

    base, remainder = divmod(total, n)
    return [base + 1 if i < remainder else base for i in range(n)]


def split_by_weights(total: int, weights: Sequence[int]) -> list[int]:
    """
    Split ``total`` proportionally to integer weights.

    Each share is rounded down; whatever is left over goes to the LAST
    recipient so the parts sum exactly to ``total``.
    """
    ensure_cents(total)
    if not weights:
        raise MoneyError("Cannot split among zero recipients")
    for weight in weights:
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
            raise MoneyError(f"Weights must be non-negative integers, got {weight!r}")

    total_weight = sum(weights)
    if total_weight == 0:
        raise MoneyError("At least one weight must be positive")

    shares = [total * weight // total_weight for weight in weights[:-1]]
    shares.append(total - sum(shares))
    return shares


def split_by_percentages(
    total: int,
    percentages: Sequence[Union[Decimal, int, str]],
) -> list[int]:
    """
    Split ``total`` by percentages that must add up to exactly 100.

    Shares are rounded down; the shortfall goes to the last recipient.
    """
    ensure_cents(total)
    if not percentages:
        raise MoneyError("Cannot split among zero recipients")

    pcts = []
    for pct in percentages:
        if isinstance(pct, float):
            raise MoneyError("Percentages must be Decimal, int or str, not float")
        try:
            value = Decimal(pct)
        except (InvalidOperation, TypeError):
            raise MoneyError(f"Invalid percentage: {pct!r}")
        if value < 0:
            raise MoneyError(f"Percentages cannot be negative: {pct!r}")
        pcts.append(value)

    if sum(pcts) != Decimal("100"):
        raise MoneyError(f"Percentages must add up to 100, got {sum(pcts)}")

    shares = [
        int((Decimal(total) * pct / Decimal("100")).to_integral_value(rounding=ROUND_FLOOR))
        for pct in pcts[:-1]
    ]
    shares.append(total - sum(shares))
    return shares


# =============================================================================
# PRESENTATION BOUNDARY
# =============================================================================

def format_cents(cents: int, currency_symbol: str = "€") -> str:
    """
    Format cents for display.

    >>> format_cents(-1234)
    '-€12.34'

    Any int is accepted, so a corrupt balance still renders.
    """
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise MoneyError(f"Amounts must be integer cents, got {type(cents).__name__}")
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{currency_symbol}{whole:,}.{frac:02d}"


def parse_cents(value: Union[str, Decimal, int]) -> int:
    """
    Parse a major-unit amount ("12.34", Decimal("12.34"), 12) into cents.

    Sub-cent input is rounded half-up. Floats are refused because they
    cannot represent most cent values exactly.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise MoneyError(f"Cannot parse {type(value).__name__} as money: {value!r}")

    if isinstance(value, str):
        value = value.strip().replace(",", "")
        for symbol in ("€", "$", "£", "₹"):
            value = value.replace(symbol, "")

    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError):
        raise MoneyError(f"Not a valid amount: {value!r}")

    if not amount.is_finite():
        raise MoneyError(f"Not a valid amount: {value!r}")

    cents = (amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return ensure_cents(int(cents))
