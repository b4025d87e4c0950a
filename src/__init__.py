"""
House Ledger - Source Package

The money core of a shared-household expense tracker: who paid what,
who owes whom, and which payments settle it.

DESIGN PRINCIPLES:
1. Integer cents only, never floats
2. Balances are derived from records, never stored
3. Fail early, fail visibly
4. No silent corrections
5. Every change must be auditable
6. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "House Ledger Team"
