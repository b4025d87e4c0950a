"""
Two-Stage Validation Pipeline

DESIGN DECISION: Expense writes are validated in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Positive amount
- Splits present, non-negative, no member twice
- Split total equals the expense amount
- This catches malformed input and broken split arithmetic

STAGE 2 - SEMANTIC VALIDATION:
- Payer and split members belong to the group
- Month is not closed
- Absurd amount detection
- Expenses that affect nobody but the payer
- This catches logically impossible or suspicious data

WHY TWO STAGES:
1. Separation of concerns (structural vs logical)
2. Better error messages (know exactly what kind of issue)
3. Can skip stage 2 if stage 1 fails
4. Stage 2 needs the group snapshot

Settlements go through the ledger core's pairwise check, plus the
closed-month rule.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them for human review.
"""

from collections import Counter
from typing import Optional

from src.config import LedgerSettings, get_settings
from src.ledger import format_cents, validate_settlement
from src.models.ledger import (
    Expense,
    LedgerSnapshot,
    SettlementValidation,
    ValidationIssue,
    ValidationResult,
)


UNREADABLE_LEDGER = (
    "Some ledger records could not be read. "
    "Fix them before recording payments."
)


class ExpenseValidator:
    """
    Validates an expense before it is written.

    Stage 1: Schema validation (needs nothing but the expense)
    Stage 2: Semantic validation (needs the group snapshot)
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def _money(self, cents: int) -> str:
        return format_cents(cents, self._settings.currency_symbol)

    def _validate_schema(
        self,
        expense: Expense,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if expense.amount_cents <= 0:
            issues.append(ValidationIssue(
                field="amount_cents",
                issue_type="invalid_value",
                message="Amount must be greater than zero",
                severity="error",
            ))

        if not expense.splits:
            issues.append(ValidationIssue(
                field="splits",
                issue_type="missing",
                message="Choose at least one person to split with",
                severity="error",
                suggested_fix="Add the members who share this expense",
            ))
            return False, issues

        if any(split.share_cents < 0 for split in expense.splits):
            issues.append(ValidationIssue(
                field="splits",
                issue_type="invalid_value",
                message="Split amounts cannot be negative",
                severity="error",
            ))

        duplicates = [
            member_id
            for member_id, count in Counter(s.member_id for s in expense.splits).items()
            if count > 1
        ]
        if duplicates:
            issues.append(ValidationIssue(
                field="splits",
                issue_type="duplicate_member",
                message=f"Member listed more than once: {', '.join(sorted(duplicates))}",
                severity="error",
            ))

        split_total = expense.split_total_cents
        if split_total != expense.amount_cents:
            issues.append(ValidationIssue(
                field="splits",
                issue_type="split_mismatch",
                message=(
                    f"Split total ({self._money(split_total)}) must equal "
                    f"expense total ({self._money(expense.amount_cents)})"
                ),
                severity="error",
                suggested_fix="Adjust the shares so they add up to the total",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)

        return is_valid, issues

    def _validate_semantic(
        self,
        expense: Expense,
        snapshot: LedgerSnapshot,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []
        member_ids = snapshot.member_ids()

        if expense.paid_by_id not in member_ids:
            issues.append(ValidationIssue(
                field="paid_by_id",
                issue_type="unknown_member",
                message="The payer is not a member of this group",
                severity="error",
            ))

        unknown = sorted({
            split.member_id for split in expense.splits
            if split.member_id not in member_ids
        })
        if unknown:
            issues.append(ValidationIssue(
                field="splits",
                issue_type="unknown_member",
                message=f"Not members of this group: {', '.join(unknown)}",
                severity="error",
            ))

        if snapshot.is_month_closed(expense.month):
            issues.append(ValidationIssue(
                field="month",
                issue_type="month_closed",
                message=f"Month {expense.month} is closed.",
                severity="error",
                suggested_fix="Ask an admin to reopen the month first",
            ))

        # Absurd amount check
        if expense.amount_cents > self._settings.max_expense_amount_cents:
            issues.append(ValidationIssue(
                field="amount_cents",
                issue_type="suspicious_value",
                message=f"Amount ({self._money(expense.amount_cents)}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

        others_share = sum(
            split.share_cents for split in expense.splits
            if split.member_id != expense.paid_by_id
        )
        if others_share == 0:
            issues.append(ValidationIssue(
                field="splits",
                issue_type="no_effect",
                message="Only the payer has a share, so nobody owes anything",
                severity="warning",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)

        return is_valid, issues

    def validate(
        self,
        expense: Expense,
        snapshot: LedgerSnapshot,
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            expense: The expense about to be written
            snapshot: The group's current records

        Returns:
            ValidationResult with all issues found
        """
        all_issues = []

        # Stage 1: Schema validation
        schema_valid, schema_issues = self._validate_schema(expense)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(expense, snapshot)
            all_issues.extend(semantic_issues)

        warnings = [
            issue.message for issue in all_issues
            if issue.severity == "warning"
        ]

        return ValidationResult(
            entity_id=expense.id,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            issues=all_issues,
            warnings=warnings,
        )


class SettlementValidator:
    """
    Validates a proposed settlement against a fresh snapshot.

    The pairwise debt rule lives in the ledger core; this adds the
    configured tolerance, the currency, the closed-month rule, and a
    refusal while any ledger row is unreadable.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def validate(
        self,
        snapshot: LedgerSnapshot,
        from_id: str,
        to_id: str,
        amount_cents: int,
        month: str,
    ) -> SettlementValidation:
        validation = validate_settlement(
            snapshot.members,
            snapshot.expenses,
            snapshot.settlements,
            from_id,
            to_id,
            amount_cents,
            tolerance_cents=self._settings.settlement_tolerance_cents,
            currency_symbol=self._settings.currency_symbol,
        )
        # A locked month overrides any other outcome
        if snapshot.is_month_closed(month):
            validation.valid = False
            validation.error = f"Month {month} is closed."
        elif snapshot.unreadable_records:
            # The missing rows may hold part of this pair's debt
            validation.valid = False
            validation.error = UNREADABLE_LEDGER


def get_user_friendly_summary(result: ValidationResult) -> str:
    """
    Generate a user-friendly summary of validation results.

    This is what we show to housemates.
    """
    if result.is_valid and not result.warnings:
        return "✅ All checks passed!"

    lines = []

    if result.has_errors:
        lines.append("❌ This expense can't be saved yet:")
        for issue in result.issues:
            if issue.severity == "error":
                lines.append(f"   • {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     💡 {issue.suggested_fix}")

    if result.warnings:
        lines.append("")
        lines.append("⚠️ Please verify the following:")
        for warning in result.warnings:
            lines.append(f"   • {warning}")

    if result.is_valid:
        lines.append("")
        lines.append("You can still save it, but please double-check.")
    else:
        lines.append("")
        lines.append("Please fix the issues above before continuing.")

    return "\n".join(lines).lstrip("\n")
