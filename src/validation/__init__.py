"""Write validation package."""

from src.validation.validator import (
    ExpenseValidator,
    SettlementValidator,
    get_user_friendly_summary,
)

__all__ = [
    "ExpenseValidator",
    "SettlementValidator",
    "get_user_friendly_summary",
]
