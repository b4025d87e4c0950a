"""
Data Models Package

This package contains all Pydantic models used by the household ledger.
Every record entering the ledger core must conform to these schemas.
"""

from src.models.ledger import (
    BalanceResult,
    Expense,
    ExpenseCategory,
    ExpenseSplitError,
    InconsistencyKind,
    LedgerInconsistency,
    LedgerReport,
    LedgerSnapshot,
    Member,
    MemberBalance,
    PairwiseBreakdown,
    PairwiseExpenseItem,
    PairwiseSettlementItem,
    PaymentMethod,
    Settlement,
    SettlementValidation,
    Split,
    SuggestedTransaction,
    UndoAction,
    UndoActionType,
    ValidationIssue,
    ValidationResult,
)
from src.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger records
    "Expense",
    "ExpenseCategory",
    "LedgerSnapshot",
    "Member",
    "PaymentMethod",
    "Settlement",
    "Split",
    "UndoAction",
    "UndoActionType",
    # Derived results
    "BalanceResult",
    "ExpenseSplitError",
    "InconsistencyKind",
    "LedgerInconsistency",
    "LedgerReport",
    "MemberBalance",
    "PairwiseBreakdown",
    "PairwiseExpenseItem",
    "PairwiseSettlementItem",
    "SettlementValidation",
    "SuggestedTransaction",
    # Validation
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
