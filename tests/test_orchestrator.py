"""
Integration tests for the ledger flows.

Flows run against in-memory storage; async code is driven with
asyncio.run so no async test plugin is needed.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from src.audit import AuditLogger
from src.config import LedgerSettings
from src.ledger import RecurringExpenseTemplate, SplitMode
from src.ledger.money import MAX_CENTS
from src.models.audit import AuditEventType, AuditSeverity
from src.models.ledger import (
    UNDO_WINDOW,
    Expense,
    InconsistencyKind,
    LedgerInconsistency,
    Member,
    Split,
    UndoAction,
    UndoActionType,
)
from src.orchestrator import (
    BalanceFlow,
    ExpenseFlow,
    ExpenseRejectedError,
    GroupAdminFlow,
    LedgerOperationError,
    MemberRemovalError,
    MonthClosedError,
    RecordNotFoundError,
    SettlementFlow,
    SettlementRejectedError,
    UndoFlow,
    create_app_components,
)
from src.services.storage import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    StorageError,
)
from src.validation import ExpenseValidator, SettlementValidator
from src.validation.validator import UNREADABLE_LEDGER


GROUP = "house-1"
MONTH = "2024-03"
T0 = datetime(2024, 3, 1, 12, 0, 0)


class InterleavingStorage(InMemoryLedgerStorage):
    """Hands control back to the event loop after every snapshot read."""

    async def get_snapshot(self, group_id: str):
        snapshot = await super().get_snapshot(group_id)
        await asyncio.sleep(0)
        return snapshot


class UnlockedStorage(InterleavingStorage):
    """Same, with the group write lock switched off."""

    @asynccontextmanager
    async def group_write_lock(self, group_id: str):
        yield


class UnreadableRowStorage(InMemoryLedgerStorage):
    """Reports one settlement row that no longer parses."""

    async def get_snapshot(self, group_id: str):
        snapshot = await super().get_snapshot(group_id)
        snapshot.unreadable_records.append(LedgerInconsistency(
            kind=InconsistencyKind.UNREADABLE_RECORD,
            entity_type="settlement",
            entity_id="s-bad",
            message="Malformed settlement row 2: Cannot settle with yourself",
        ))
        return snapshot


class Household:
    """All flows wired to one in-memory store."""

    def __init__(self, storage: Optional[InMemoryLedgerStorage] = None):
        settings = LedgerSettings()
        self.storage = storage or InMemoryLedgerStorage()
        self.audit_storage = InMemoryAuditStorage()
        audit_logger = AuditLogger(self.audit_storage)

        self.balances = BalanceFlow(self.storage, audit_logger, settings)
        self.expenses = ExpenseFlow(
            self.storage, ExpenseValidator(settings), audit_logger
        )
        self.settlements = SettlementFlow(
            self.storage, SettlementValidator(settings), audit_logger
        )
        self.undo = UndoFlow(
            self.storage,
            ExpenseValidator(settings),
            SettlementValidator(settings),
            audit_logger,
        )
        self.admin = GroupAdminFlow(self.storage, audit_logger)

    def event_types(self) -> list[AuditEventType]:
        return [e.event_type for e in self.audit_storage.events]


def _household(*names: str, storage: Optional[InMemoryLedgerStorage] = None) -> Household:
    house = Household(storage)

    async def seed():
        for i, name in enumerate(names):
            await house.storage.save_member(Member(
                id=name.lower(),
                display_name=name,
                group_id=GROUP,
                is_admin=(i == 0),
                joined_at=T0 + timedelta(minutes=i),
            ))

    asyncio.run(seed())
    return house


class TestBalanceFlow:

    def test_full_lifecycle(self):
        house = _household("A", "B", "C")

        async def scenario():
            await house.expenses.create_expense(
                GROUP, "Weekly shop", "a", 3000, MONTH,
            )
            await house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH)
            return await house.balances.get_balances(GROUP)

        result = asyncio.run(scenario())

        assert result.net_by_member() == {"a": 1000, "b": 0, "c": -1000}
        assert result.invariant_valid is True
        assert house.event_types() == [
            AuditEventType.EXPENSE_CREATED,
            AuditEventType.SETTLEMENT_RECORDED,
        ]

    def test_suggest_settlements(self):
        house = _household("A", "B", "C")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Rent", "c", 900, MONTH)
            return await house.balances.suggest_settlements(GROUP)

        transactions = asyncio.run(scenario())

        assert [(t.from_id, t.to_id, t.amount_cents) for t in transactions] == [
            ("a", "c", 300),
            ("b", "c", 300),
        ]
        assert house.event_types()[-1] == AuditEventType.SMART_SETTLE_SUGGESTED

    def test_smart_settle_refuses_out_of_range_balances(self):
        house = _household("A", "B")
        half = MAX_CENTS // 2 + 1

        async def scenario():
            # Written straight to storage, bypassing validation
            for description in ("Deposit", "Deposit again"):
                await house.storage.save_expense(Expense(
                    group_id=GROUP,
                    description=description,
                    paid_by_id="a",
                    amount_cents=half,
                    splits=[Split(member_id="b", share_cents=half)],
                    month=MONTH,
                ))
            await house.balances.suggest_settlements(GROUP)

        with pytest.raises(LedgerOperationError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.status_code == 409
        assert house.event_types()[-1] == AuditEventType.LEDGER_INVARIANT_VIOLATION

    def test_explain_pair(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            return await house.balances.explain_pair(GROUP, "b", "a")

        breakdown = asyncio.run(scenario())
        assert breakdown.net_amount == 1000
        assert breakdown.they_paid_you_owe[0].description == "Pizza"

    def test_explain_pair_errors(self):
        house = _household("A", "B")
        with pytest.raises(LedgerOperationError):
            asyncio.run(house.balances.explain_pair(GROUP, "a", "a"))
        with pytest.raises(RecordNotFoundError):
            asyncio.run(house.balances.explain_pair(GROUP, "a", "ghost"))

    def test_inconsistent_ledger_is_returned_and_audited(self):
        house = _household("A", "B")

        async def scenario():
            # Written straight to storage, bypassing validation
            await house.storage.save_expense(Expense(
                group_id=GROUP,
                description="Corrupt",
                paid_by_id="a",
                amount_cents=1000,
                splits=[Split(member_id="a", share_cents=500), Split(member_id="b", share_cents=400)],
                month=MONTH,
            ))
            return await house.balances.get_balances(GROUP)

        result = asyncio.run(scenario())

        assert result.invariant_valid is False
        assert result.sum_of_balances == 100
        event = house.audit_storage.events[-1]
        assert event.event_type == AuditEventType.LEDGER_INVARIANT_VIOLATION
        assert event.severity == AuditSeverity.ERROR

    def test_unreadable_rows_are_reported_and_block_payments(self):
        house = _household("A", "B", storage=UnreadableRowStorage())

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            result = await house.balances.get_balances(GROUP)
            audited = house.audit_storage.events[-1]
            with pytest.raises(SettlementRejectedError) as exc_info:
                await house.settlements.record_settlement(GROUP, "b", "a", 500, MONTH)
            return result, audited, exc_info.value

        result, audited, error = asyncio.run(scenario())

        # Readable rows still produce balances
        assert result.net_by_member() == {"a": 1000, "b": -1000}
        assert result.invariant_valid is True
        assert result.is_consistent is False
        assert [i.entity_id for i in result.inconsistencies] == ["s-bad"]
        assert audited.event_type == AuditEventType.LEDGER_INVARIANT_VIOLATION
        assert error.message == UNREADABLE_LEDGER

    def test_ledger_report(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Fine", "a", 1000, MONTH)
            await house.storage.save_expense(Expense(
                group_id=GROUP,
                description="Broken",
                paid_by_id="b",
                amount_cents=1000,
                splits=[Split(member_id="a", share_cents=300)],
                month=MONTH,
            ))
            await house.admin.close_month(GROUP, "2024-01")
            return await house.balances.ledger_report(GROUP)

        report = asyncio.run(scenario())

        assert report.is_healthy is False
        assert report.expense_count == 2
        assert [e.description for e in report.invalid_expenses] == ["Broken"]
        assert report.invalid_expenses[0].error == "Split sum (300) != expense amount (1000)"
        assert report.closed_months == ["2024-01"]
        # a: 1000 - 500 - 300 = +200, b: 1000 - 500 = +500
        assert report.formatted_balances == {"a": "€2.00", "b": "€5.00"}


class TestExpenseFlow:

    def test_equal_split_defaults_to_every_member(self):
        house = _household("A", "B", "C")
        expense, result = asyncio.run(
            house.expenses.create_expense(GROUP, "Groceries", "a", 1000, MONTH)
        )
        assert [(s.member_id, s.share_cents) for s in expense.splits] == [
            ("a", 334), ("b", 333), ("c", 333),
        ]
        assert result.is_valid is True

    def test_weighted_split(self):
        house = _household("A", "B")
        expense, _ = asyncio.run(house.expenses.create_expense(
            GROUP, "Electricity", "a", 1000, MONTH,
            split_mode=SplitMode.WEIGHTED,
            shares={"a": 3, "b": 1},
        ))
        assert [s.share_cents for s in expense.splits] == [750, 250]

    def test_explicit_splits_must_add_up(self):
        house = _household("A", "B")
        with pytest.raises(ExpenseRejectedError) as exc_info:
            asyncio.run(house.expenses.create_expense(
                GROUP, "Dinner", "a", 1000, MONTH,
                splits=[Split(member_id="a", share_cents=500), Split(member_id="b", share_cents=499)],
            ))

        assert exc_info.value.message == "Split total (€9.99) must equal expense total (€10.00)"
        assert exc_info.value.status_code == 400
        assert house.event_types() == [AuditEventType.EXPENSE_REJECTED]
        assert asyncio.run(house.storage.list_expenses(GROUP)) == []

    def test_non_positive_amount_rejected(self):
        house = _household("A", "B")
        with pytest.raises(ExpenseRejectedError):
            asyncio.run(house.expenses.create_expense(GROUP, "Nothing", "a", 0, MONTH))

    def test_closed_month_rejected(self):
        house = _household("A", "B")

        async def scenario():
            await house.admin.close_month(GROUP, MONTH)
            await house.expenses.create_expense(GROUP, "Late", "a", 1000, MONTH)

        with pytest.raises(MonthClosedError):
            asyncio.run(scenario())

    def test_update_expense(self):
        house = _household("A", "B")

        async def scenario():
            expense, _ = await house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH)
            await house.expenses.update_expense(
                GROUP, expense.id,
                amount_cents=1200,
                splits=[Split(member_id="a", share_cents=600), Split(member_id="b", share_cents=600)],
            )
            return await house.balances.get_balances(GROUP)

        result = asyncio.run(scenario())
        assert result.net_by_member() == {"a": 600, "b": -600}
        assert AuditEventType.EXPENSE_UPDATED in house.event_types()

    def test_update_amount_without_splits_is_rejected(self):
        house = _household("A", "B")

        async def scenario():
            expense, _ = await house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH)
            await house.expenses.update_expense(GROUP, expense.id, amount_cents=1200)

        with pytest.raises(ExpenseRejectedError):
            asyncio.run(scenario())

    def test_update_missing_expense(self):
        house = _household("A", "B")
        with pytest.raises(RecordNotFoundError) as exc_info:
            asyncio.run(house.expenses.update_expense(GROUP, "nope", description="x"))
        assert exc_info.value.status_code == 404

    def test_update_storage_failure_is_audited_and_raised(self):
        house = _household("A", "B")
        expense, _ = asyncio.run(
            house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH)
        )
        house.storage.update_expense = AsyncMock(
            side_effect=StorageError("Sheets unavailable")
        )

        with pytest.raises(StorageError):
            asyncio.run(house.expenses.update_expense(GROUP, expense.id, description="Cab"))

        event = house.audit_storage.events[-1]
        assert event.event_type == AuditEventType.STORAGE_ERROR
        assert event.details["operation"] == "update_expense"

    def test_delete_expense_restores_balances(self):
        house = _household("A", "B")

        async def scenario():
            expense, _ = await house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH)
            await house.expenses.delete_expense(GROUP, expense.id)
            return await house.balances.get_balances(GROUP)

        result = asyncio.run(scenario())
        assert result.net_by_member() == {"a": 0, "b": 0}
        assert house.event_types()[-1] == AuditEventType.EXPENSE_DELETED


class TestRecurringExpenses:

    def _template(self, **kwargs) -> RecurringExpenseTemplate:
        data = {
            "id": "rent",
            "group_id": GROUP,
            "name": "Rent",
            "amount_cents": 100_000,
        }
        data.update(kwargs)
        return RecurringExpenseTemplate(**data)

    def test_generates_once_per_month(self):
        house = _household("A", "B", "C")
        template = self._template()

        async def scenario():
            first = await house.expenses.generate_recurring_expense(template, MONTH, "a")
            again = await house.expenses.generate_recurring_expense(template, MONTH, "a")
            april = await house.expenses.generate_recurring_expense(template, "2024-04", "a")
            return first, again, april

        first, again, april = asyncio.run(scenario())

        assert first.description == f"Rent - {MONTH}"
        assert first.is_recurring is True
        assert first.recurring_id == "rent"
        assert [s.share_cents for s in first.splits] == [33_334, 33_333, 33_333]
        assert again is None
        assert april.month == "2024-04"

    def test_inactive_template_generates_nothing(self):
        house = _household("A", "B")
        result = asyncio.run(house.expenses.generate_recurring_expense(
            self._template(active=False), MONTH, "a"
        ))
        assert result is None

    def test_recurring_expenses_cannot_be_edited(self):
        house = _household("A", "B")

        async def scenario():
            expense = await house.expenses.generate_recurring_expense(self._template(), MONTH, "a")
            await house.expenses.update_expense(GROUP, expense.id, description="Cheaper rent")

        with pytest.raises(ExpenseRejectedError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.message == "Cannot edit recurring expenses"


class TestSettlementFlow:

    def test_overpayment_rejected_and_audited(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            await house.settlements.record_settlement(GROUP, "b", "a", 1001, MONTH)

        with pytest.raises(SettlementRejectedError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.message == "Amount exceeds what B owes A (€10.00)."
        assert exc_info.value.validation.pairwise_owed_cents == 1000
        event = house.audit_storage.events[-1]
        assert event.event_type == AuditEventType.SETTLEMENT_REJECTED
        assert event.severity == AuditSeverity.WARNING

    def _race(self, house: Household):
        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            return await asyncio.gather(
                house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH),
                house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH),
                return_exceptions=True,
            )

        outcomes = asyncio.run(scenario())
        settlements = asyncio.run(house.storage.list_settlements(GROUP))
        return outcomes, sum(s.amount_cents for s in settlements)

    def test_concurrent_settlements_cannot_overpay(self):
        """Two payments racing for the same 1000 cent debt: one wins."""
        house = _household("A", "B", storage=InterleavingStorage())

        outcomes, total_paid = self._race(house)

        accepted = [o for o in outcomes if isinstance(o, tuple)]
        rejected = [o for o in outcomes if isinstance(o, SettlementRejectedError)]
        assert len(accepted) == 1
        assert len(rejected) == 1
        assert rejected[0].message == "B does not owe A anything."
        assert total_paid == 1000

    def test_without_the_write_lock_both_payments_pass(self):
        """Both validate against the same stale snapshot and overpay."""
        house = _household("A", "B", storage=UnlockedStorage())

        outcomes, total_paid = self._race(house)

        assert all(isinstance(o, tuple) for o in outcomes)
        assert total_paid == 2000

    def test_closed_month(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            await house.admin.close_month(GROUP, MONTH)
            await house.settlements.record_settlement(GROUP, "b", "a", 500, MONTH)

        with pytest.raises(MonthClosedError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.message == f"Month {MONTH} is closed."

    def test_delete_settlement_brings_the_debt_back(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            settlement, validation = await house.settlements.record_settlement(
                GROUP, "b", "a", 1000, MONTH
            )
            settled = await house.balances.get_balances(GROUP)
            await house.settlements.delete_settlement(GROUP, settlement.id)
            reopened = await house.balances.get_balances(GROUP)
            return validation, settled, reopened

        validation, settled, reopened = asyncio.run(scenario())

        assert validation.balance_before_from == -1000
        assert validation.balance_after_from == 0
        assert settled.net_by_member() == {"a": 0, "b": 0}
        assert reopened.net_by_member() == {"a": 1000, "b": -1000}

    def test_delete_missing_settlement(self):
        house = _household("A", "B")
        with pytest.raises(RecordNotFoundError):
            asyncio.run(house.settlements.delete_settlement(GROUP, "nope"))

    def test_storage_failure_is_audited_and_raised(self):
        house = _household("A", "B")
        asyncio.run(house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH))
        house.storage.save_settlement = AsyncMock(
            side_effect=StorageError("Sheets unavailable")
        )

        with pytest.raises(StorageError):
            asyncio.run(house.settlements.record_settlement(GROUP, "b", "a", 500, MONTH))

        event = house.audit_storage.events[-1]
        assert event.event_type == AuditEventType.STORAGE_ERROR
        assert event.severity == AuditSeverity.ERROR
        assert event.details["operation"] == "save_settlement"


class TestUndoFlow:

    def _undo(self, house: Household, actor_id: str):
        return asyncio.run(house.undo.undo_last_action(GROUP, actor_id))

    def test_undo_added_expense(self):
        house = _household("A", "B")
        asyncio.run(house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH, actor_id="a"))

        action = self._undo(house, "a")

        assert action.action_type == UndoActionType.EXPENSE_ADDED
        assert asyncio.run(house.storage.list_expenses(GROUP)) == []
        event = house.audit_storage.events[-1]
        assert event.event_type == AuditEventType.ACTION_UNDONE
        assert event.entity_type == "expense"
        assert event.actor_id == "a"

    def test_undo_deleted_expense_brings_it_back(self):
        house = _household("A", "B")

        async def scenario():
            expense, _ = await house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH)
            await house.expenses.delete_expense(GROUP, expense.id, actor_id="a")
            await house.undo.undo_last_action(GROUP, "a")
            restored = await house.storage.get_expense(expense.id)
            return expense, restored, await house.balances.get_balances(GROUP)

        expense, restored, result = asyncio.run(scenario())

        assert restored == expense
        assert result.net_by_member() == {"a": 500, "b": -500}

    def test_undo_added_settlement(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            await house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH, actor_id="b")
            action = await house.undo.undo_last_action(GROUP, "b")
            return action, await house.balances.get_balances(GROUP)

        action, result = asyncio.run(scenario())

        assert action.action_type == UndoActionType.SETTLEMENT_ADDED
        assert result.net_by_member() == {"a": 1000, "b": -1000}

    def test_undo_deleted_settlement(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            settlement, _ = await house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH)
            await house.settlements.delete_settlement(GROUP, settlement.id, actor_id="b")
            await house.undo.undo_last_action(GROUP, "b")
            return settlement, await house.storage.list_settlements(GROUP)

        settlement, settlements = asyncio.run(scenario())
        assert settlements == [settlement]

    def test_restored_settlement_is_validated_again(self):
        """The debt was paid again meanwhile; bringing the old payment back would overpay."""
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            first, _ = await house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH)
            await house.settlements.delete_settlement(GROUP, first.id, actor_id="b")
            await house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH, actor_id="a")
            await house.undo.undo_last_action(GROUP, "b")

        with pytest.raises(SettlementRejectedError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.message == "B does not owe A anything."
        settlements = asyncio.run(house.storage.list_settlements(GROUP))
        assert sum(s.amount_cents for s in settlements) == 1000
        assert house.event_types()[-1] == AuditEventType.SETTLEMENT_REJECTED

    def test_restore_racing_a_new_payment_cannot_overpay(self):
        house = _household("A", "B", storage=InterleavingStorage())

        async def scenario():
            await house.expenses.create_expense(GROUP, "Pizza", "a", 2000, MONTH)
            first, _ = await house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH)
            await house.settlements.delete_settlement(GROUP, first.id, actor_id="b")
            return await asyncio.gather(
                house.undo.undo_last_action(GROUP, "b"),
                house.settlements.record_settlement(GROUP, "b", "a", 1000, MONTH),
                return_exceptions=True,
            )

        outcomes = asyncio.run(scenario())

        rejected = [o for o in outcomes if isinstance(o, SettlementRejectedError)]
        assert len(rejected) == 1
        settlements = asyncio.run(house.storage.list_settlements(GROUP))
        assert sum(s.amount_cents for s in settlements) == 1000

    def test_undo_walks_back_one_action_at_a_time(self):
        house = _household("A", "B")

        async def scenario():
            first, _ = await house.expenses.create_expense(GROUP, "Milk", "a", 200, MONTH, actor_id="a")
            await house.expenses.create_expense(GROUP, "Bread", "a", 300, MONTH, actor_id="a")
            await house.undo.undo_last_action(GROUP, "a")
            remaining = await house.storage.list_expenses(GROUP)
            await house.undo.undo_last_action(GROUP, "a")
            return first, remaining, await house.storage.list_expenses(GROUP)

        first, remaining, after = asyncio.run(scenario())

        assert [e.id for e in remaining] == [first.id]
        assert after == []
        with pytest.raises(RecordNotFoundError):
            self._undo(house, "a")

    def test_only_your_own_actions(self):
        house = _household("A", "B")
        asyncio.run(house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH, actor_id="a"))

        with pytest.raises(RecordNotFoundError) as exc_info:
            self._undo(house, "b")

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "Undo action not found or expired"
        assert len(asyncio.run(house.storage.list_expenses(GROUP))) == 1

    def test_writes_without_an_actor_cannot_be_undone(self):
        house = _household("A", "B")
        asyncio.run(house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH))
        with pytest.raises(RecordNotFoundError):
            self._undo(house, "a")

    def test_expired_action(self):
        house = _household("A", "B")

        async def scenario():
            expense, _ = await house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH)
            await house.storage.save_undo_action(UndoAction(
                group_id=GROUP,
                member_id="a",
                action_type=UndoActionType.EXPENSE_ADDED,
                entity_id=expense.id,
                created_at=datetime.utcnow() - UNDO_WINDOW - timedelta(seconds=1),
            ))
            await house.undo.undo_last_action(GROUP, "a")

        with pytest.raises(RecordNotFoundError):
            asyncio.run(scenario())
        assert len(asyncio.run(house.storage.list_expenses(GROUP))) == 1

    def test_undo_window_is_five_minutes(self):
        house = _household("A", "B")
        asyncio.run(house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH, actor_id="a"))

        now = datetime.utcnow()
        soon = asyncio.run(house.storage.get_latest_undo_action(GROUP, "a", now + timedelta(minutes=4)))
        later = asyncio.run(house.storage.get_latest_undo_action(GROUP, "a", now + timedelta(minutes=6)))

        assert soon.action_type == UndoActionType.EXPENSE_ADDED
        assert later is None

    def test_closed_month_blocks_undo(self):
        house = _household("A", "B")

        async def scenario():
            await house.expenses.create_expense(GROUP, "Taxi", "a", 1000, MONTH, actor_id="a")
            await house.admin.close_month(GROUP, MONTH)
            await house.undo.undo_last_action(GROUP, "a")

        with pytest.raises(MonthClosedError):
            asyncio.run(scenario())
        assert len(asyncio.run(house.storage.list_expenses(GROUP))) == 1


class TestGroupAdminFlow:

    def test_remove_idle_member(self):
        house = _household("A", "B", "C")
        asyncio.run(house.admin.remove_member(GROUP, "c", actor_id="a"))

        members = asyncio.run(house.storage.list_members(GROUP))
        assert [m.id for m in members] == ["a", "b"]
        assert house.event_types() == [AuditEventType.MEMBER_REMOVED]

    def test_member_with_transactions_cannot_be_removed(self):
        house = _household("A", "B", "C")

        async def scenario():
            await house.expenses.create_expense(
                GROUP, "Snacks", "a", 1000, MONTH, participant_ids=["a", "c"],
            )
            await house.admin.remove_member(GROUP, "c", actor_id="a")

        with pytest.raises(MemberRemovalError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.status_code == 409
        assert exc_info.value.message == (
            "Cannot remove member with expenses or settlements. "
            "Delete their transactions first."
        )
        assert house.event_types()[-1] == AuditEventType.MEMBER_REMOVAL_BLOCKED

    def test_cannot_remove_yourself_or_admins(self):
        house = _household("A", "B")
        with pytest.raises(MemberRemovalError) as exc_info:
            asyncio.run(house.admin.remove_member(GROUP, "b", actor_id="b"))
        assert exc_info.value.status_code == 400

        with pytest.raises(MemberRemovalError) as exc_info:
            asyncio.run(house.admin.remove_member(GROUP, "a", actor_id="b"))
        assert exc_info.value.message == "Cannot remove other admins"

    def test_close_and_reopen_month(self):
        house = _household("A", "B")

        async def scenario():
            await house.admin.close_month(GROUP, MONTH, actor_id="a")
            with pytest.raises(LedgerOperationError):
                await house.admin.close_month(GROUP, MONTH)
            await house.admin.reopen_month(GROUP, MONTH, actor_id="a")
            await house.expenses.create_expense(GROUP, "Back open", "a", 1000, MONTH)

        asyncio.run(scenario())
        assert house.event_types() == [
            AuditEventType.MONTH_CLOSED,
            AuditEventType.MONTH_REOPENED,
            AuditEventType.EXPENSE_CREATED,
        ]

    def test_close_month_validates_format(self):
        house = _household("A")
        with pytest.raises(LedgerOperationError):
            asyncio.run(house.admin.close_month(GROUP, "March"))

    def test_reopen_open_month(self):
        house = _household("A")
        with pytest.raises(RecordNotFoundError):
            asyncio.run(house.admin.reopen_month(GROUP, MONTH))


class TestCreateAppComponents:

    def test_memory_backend(self):
        balance_flow, expense_flow, settlement_flow, undo_flow, admin_flow, storage = (
            create_app_components("memory")
        )
        assert isinstance(storage, InMemoryLedgerStorage)
        assert isinstance(balance_flow, BalanceFlow)
        assert isinstance(admin_flow, GroupAdminFlow)
        assert isinstance(undo_flow, UndoFlow)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
