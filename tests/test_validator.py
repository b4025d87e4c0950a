"""
Tests for the two-stage write validation.
"""

from datetime import datetime

import pytest

from src.config import LedgerSettings
from src.models.ledger import (
    Expense,
    InconsistencyKind,
    LedgerInconsistency,
    LedgerSnapshot,
    Member,
    Split,
)
from src.validation import (
    ExpenseValidator,
    SettlementValidator,
    get_user_friendly_summary,
)
from src.validation.validator import UNREADABLE_LEDGER


GROUP = "house-1"
T0 = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def snapshot() -> LedgerSnapshot:
    return LedgerSnapshot(
        group_id=GROUP,
        members=[
            Member(id="a", display_name="Alice", group_id=GROUP, joined_at=T0),
            Member(id="b", display_name="Bob", group_id=GROUP, joined_at=T0),
        ],
        closed_months=["2024-01"],
    )


@pytest.fixture
def validator() -> ExpenseValidator:
    return ExpenseValidator(LedgerSettings(max_expense_amount_cents=1_000_000))


def _expense(amount: int, shares: list[tuple[str, int]], payer: str = "a", month: str = "2024-03") -> Expense:
    return Expense(
        group_id=GROUP,
        description="Internet",
        paid_by_id=payer,
        amount_cents=amount,
        splits=[Split(member_id=m, share_cents=s) for m, s in shares],
        month=month,
    )


class TestExpenseValidatorSchema:
    """Stage 1."""

    def test_valid_expense(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("b", 500)]), snapshot)
        assert result.is_valid is True
        assert result.schema_valid is True
        assert result.semantic_valid is True
        assert result.issues == []

    def test_split_mismatch(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("b", 400)]), snapshot)
        assert result.is_valid is False
        assert result.schema_valid is False
        # Stage 2 does not run when stage 1 fails
        assert result.semantic_valid is False
        assert result.first_error == "Split total (€9.00) must equal expense total (€10.00)"

    def test_missing_splits(self, validator, snapshot):
        result = validator.validate(_expense(1000, []), snapshot)
        assert result.is_valid is False
        assert result.issues[0].issue_type == "missing"

    def test_duplicate_member(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("a", 500)]), snapshot)
        assert result.is_valid is False
        assert any(i.issue_type == "duplicate_member" for i in result.issues)


class TestExpenseValidatorSemantic:
    """Stage 2."""

    def test_unknown_payer(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("b", 500)], payer="ghost"), snapshot)
        assert result.schema_valid is True
        assert result.semantic_valid is False
        assert result.issues[0].field == "paid_by_id"

    def test_unknown_split_member(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("ghost", 500)]), snapshot)
        assert result.is_valid is False
        assert "ghost" in result.first_error

    def test_closed_month(self, validator, snapshot):
        result = validator.validate(
            _expense(1000, [("a", 500), ("b", 500)], month="2024-01"), snapshot
        )
        assert result.is_valid is False
        assert result.first_error == "Month 2024-01 is closed."

    def test_large_amount_is_a_warning(self, validator, snapshot):
        result = validator.validate(
            _expense(2_000_000, [("a", 1_000_000), ("b", 1_000_000)]), snapshot
        )
        assert result.is_valid is True
        assert len(result.warnings) == 1
        assert "unusually high" in result.warnings[0]

    def test_payer_only_share_is_a_warning(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 1000), ("b", 0)]), snapshot)
        assert result.is_valid is True
        assert result.issues[0].issue_type == "no_effect"


class TestSettlementValidator:
    """Pairwise rule plus month lock."""

    def _snapshot(self, closed_months: list[str]) -> LedgerSnapshot:
        return LedgerSnapshot(
            group_id=GROUP,
            members=[
                Member(id="a", display_name="Alice", group_id=GROUP, joined_at=T0),
                Member(id="b", display_name="Bob", group_id=GROUP, joined_at=T0),
            ],
            expenses=[_expense(1000, [("a", 500), ("b", 500)])],
            closed_months=closed_months,
        )

    def test_valid(self):
        validator = SettlementValidator(LedgerSettings())
        result = validator.validate(self._snapshot([]), "b", "a", 500, "2024-03")
        assert result.valid is True

    def test_closed_month(self):
        validator = SettlementValidator(LedgerSettings())
        result = validator.validate(self._snapshot(["2024-03"]), "b", "a", 500, "2024-03")
        assert result.valid is False
        assert result.error == "Month 2024-03 is closed."

    def test_uses_configured_currency_and_tolerance(self):
        validator = SettlementValidator(
            LedgerSettings(currency_symbol="$", settlement_tolerance_cents=2)
        )
        assert validator.validate(self._snapshot([]), "b", "a", 502, "2024-03").valid is True
        result = validator.validate(self._snapshot([]), "b", "a", 503, "2024-03")
        assert result.error == "Amount exceeds what Bob owes Alice ($5.00)."

    def test_unreadable_rows_block_payments(self):
        snapshot = self._snapshot([])
        snapshot.unreadable_records = [LedgerInconsistency(
            kind=InconsistencyKind.UNREADABLE_RECORD,
            entity_type="settlement",
            entity_id="s-bad",
            message="Malformed settlement row 4: Cannot settle with yourself",
        )]

        result = SettlementValidator(LedgerSettings()).validate(
            snapshot, "b", "a", 500, "2024-03"
        )

        assert result.valid is False
        assert result.error == UNREADABLE_LEDGER
        # The figures from the readable rows are still there for the audit
        assert result.pairwise_owed_cents == 500


class TestUserFriendlySummary:

    def test_all_passed(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("b", 500)]), snapshot)
        assert get_user_friendly_summary(result) == "✅ All checks passed!"

    def test_errors_listed(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 500), ("b", 400)]), snapshot)
        summary = get_user_friendly_summary(result)
        assert summary.startswith("❌")
        assert "Split total" in summary
        assert "Please fix the issues above" in summary

    def test_warnings_only(self, validator, snapshot):
        result = validator.validate(_expense(1000, [("a", 1000)]), snapshot)
        summary = get_user_friendly_summary(result)
        assert summary.startswith("⚠️")
        assert "You can still save it" in summary


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
