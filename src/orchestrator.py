"""
Main Orchestrator for the Household Ledger

This module ties together all the components and defines the
end-to-end flows for:
1. Balances (snapshot → reduce → audit inconsistencies)
2. Expenses (build splits → validate → save → audit)
3. Settlements (lock → fresh snapshot → validate → save → audit)
4. Undo (a member takes back their own last write)
5. Group administration (member removal, month locks)

DESIGN DECISION: The orchestrator enforces the boundaries:
- The ledger core never touches storage; flows hand it snapshots
- No write persists without passing validation
- Every write runs inside the group's write lock
- Every step is audited

Balances are recomputed from the records on every call. There is no
cached balance that could drift from the data.
"""

import re
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

import structlog
from pydantic import ValidationError

from src.audit import AuditLogger, create_correlation_id
from src.config import LedgerSettings, get_settings
from src.ledger import (
    MoneyError,
    RecurringExpenseTemplate,
    SplitMode,
    build_splits,
    compute_balances,
    format_cents,
    get_pairwise_breakdown,
    simplify_debts,
)
from src.models.ledger import (
    MONTH_PATTERN,
    BalanceResult,
    Expense,
    ExpenseCategory,
    ExpenseSplitError,
    InconsistencyKind,
    LedgerReport,
    LedgerSnapshot,
    PairwiseBreakdown,
    PaymentMethod,
    Settlement,
    SettlementValidation,
    Split,
    SuggestedTransaction,
    UndoAction,
    UndoActionType,
    ValidationResult,
)
from src.services.storage import (
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    StorageError,
)
from src.validation import ExpenseValidator, SettlementValidator


logger = structlog.get_logger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class LedgerOperationError(Exception):
    """
    A write or lookup the flows refused.

    ``message`` is safe to show to the user. ``status_code`` is the
    HTTP status an API layer should answer with.
    """

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ExpenseRejectedError(LedgerOperationError):
    """Expense failed validation."""

    def __init__(
        self,
        message: str,
        validation: Optional[ValidationResult] = None,
        status_code: Optional[int] = None,
    ):
        self.validation = validation
        super().__init__(message, status_code)


class SettlementRejectedError(LedgerOperationError):
    """Settlement failed validation."""

    def __init__(
        self,
        message: str,
        validation: Optional[SettlementValidation] = None,
    ):
        self.validation = validation
        super().__init__(message)


class MonthClosedError(LedgerOperationError):
    """The month is locked; nothing in it may change."""
    pass


class MemberRemovalError(LedgerOperationError):
    status_code = 409


class RecordNotFoundError(LedgerOperationError):
    status_code = 404


def _first_pydantic_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]


# =============================================================================
# BALANCES
# =============================================================================

class BalanceFlow:
    """
    Read-side flows: balances, smart settle, pairwise explanations.

    Reads fail open: an inconsistent ledger is still returned, but the
    inconsistency is audited at ERROR severity so it gets noticed.
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = ledger_storage
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger

    async def _compute(
        self,
        snapshot: LedgerSnapshot,
        correlation_id: Optional[UUID],
    ) -> BalanceResult:
        result = compute_balances(
            snapshot.members,
            snapshot.expenses,
            snapshot.settlements,
            tolerance_cents=self._settings.invariant_tolerance_cents,
        )
        # Rows storage could not parse count as inconsistencies too
        if snapshot.unreadable_records:
            result.inconsistencies = (
                list(snapshot.unreadable_records) + result.inconsistencies
            )

        if not result.is_consistent:
            logger.warning(
                "ledger_inconsistent",
                group_id=snapshot.group_id,
                sum_of_balances=result.sum_of_balances,
                inconsistency_count=len(result.inconsistencies),
            )
            if self._audit_logger:
                await self._audit_logger.log_invariant_violation(
                    group_id=snapshot.group_id,
                    sum_of_balances=result.sum_of_balances,
                    inconsistencies=[
                        i.model_dump(mode="json") for i in result.inconsistencies
                    ],
                    correlation_id=correlation_id,
                )

        return result

    async def get_balances(
        self,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> BalanceResult:
        """Current balance of every member of the group."""
        snapshot = await self._storage.get_snapshot(group_id)
        return await self._compute(snapshot, correlation_id)

    async def suggest_settlements(
        self,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> list[SuggestedTransaction]:
        """
        Smart settle: a short list of payments that clears every balance.

        Suggestions only. Nothing is recorded until each payment goes
        through SettlementFlow.record_settlement.

        Raises:
            LedgerOperationError: (409) A balance is outside the range a
                payment can hold
        """
        correlation_id = correlation_id or create_correlation_id()

        result = await self.get_balances(group_id, correlation_id)
        if any(
            i.kind == InconsistencyKind.AMOUNT_OUT_OF_RANGE
            for i in result.inconsistencies
        ):
            raise LedgerOperationError(
                "Balances are too large to settle. Fix the ledger first.",
                status_code=409,
            )
        transactions = simplify_debts(result.balances)

        if self._audit_logger:
            await self._audit_logger.log_smart_settle_suggested(
                group_id=group_id,
                transaction_count=len(transactions),
                total_cents=sum(t.amount_cents for t in transactions),
                correlation_id=correlation_id,
            )

        return transactions

    async def explain_pair(
        self,
        group_id: str,
        member_a_id: str,
        member_b_id: str,
    ) -> PairwiseBreakdown:
        """
        Why member A and member B owe each other what they do.

        Raises:
            LedgerOperationError: If both ids are the same member
            RecordNotFoundError: If either member is not in the group
        """
        if member_a_id == member_b_id:
            raise LedgerOperationError("Choose two different members.")

        snapshot = await self._storage.get_snapshot(group_id)
        for member_id in (member_a_id, member_b_id):
            if snapshot.get_member(member_id) is None:
                raise RecordNotFoundError(f"Member not found: {member_id}")

        return get_pairwise_breakdown(
            snapshot.expenses,
            snapshot.settlements,
            member_a_id,
            member_b_id,
        )

    async def ledger_report(
        self,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerReport:
        """
        Read-only integrity report for admins.

        Shows the zero-sum status, every expense whose splits do not add
        up, and every record the reducer could not attribute.
        """
        snapshot = await self._storage.get_snapshot(group_id)
        result = await self._compute(snapshot, correlation_id)

        invalid_expenses = [
            ExpenseSplitError(
                expense_id=expense.id,
                description=expense.description,
                amount_cents=expense.amount_cents,
                split_sum_cents=expense.split_total_cents,
                error=(
                    f"Split sum ({expense.split_total_cents}) != "
                    f"expense amount ({expense.amount_cents})"
                ),
            )
            for expense in snapshot.expenses
            if not expense.splits_balanced
        ]

        return LedgerReport(
            group_id=group_id,
            sum_of_balances=result.sum_of_balances,
            invariant_valid=result.invariant_valid,
            balances=result.balances,
            formatted_balances={
                b.member_id: format_cents(b.net_balance, self._settings.currency_symbol)
                for b in result.balances
            },
            invalid_expenses=invalid_expenses,
            inconsistencies=result.inconsistencies,
            closed_months=snapshot.closed_months,
            expense_count=len(snapshot.expenses),
            settlement_count=len(snapshot.settlements),
        )


# =============================================================================
# EXPENSES
# =============================================================================

class ExpenseFlow:
    """
    Orchestrates expense writes.

    Flow:
    1. Build splits (explicit, or from a split mode)
    2. Take the group write lock, read a fresh snapshot
    3. Two-stage validation
    4. Save and audit

    Split mismatches are never repaired. The user gets the error.
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        validator: Optional[ExpenseValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = ledger_storage
        self._validator = validator or ExpenseValidator()
        self._audit_logger = audit_logger

    async def _reject(
        self,
        expense: Expense,
        result: ValidationResult,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Audit a failed validation and raise the matching error."""
        if self._audit_logger:
            await self._audit_logger.log_expense_rejected(
                group_id=expense.group_id,
                expense_id=expense.id,
                issues=[
                    {"field": i.field, "type": i.issue_type, "message": i.message}
                    for i in result.issues
                    if i.severity == "error"
                ],
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        message = result.first_error or "Expense is invalid"
        if any(i.issue_type == "month_closed" for i in result.issues):
            raise MonthClosedError(message)
        raise ExpenseRejectedError(message, validation=result)

    async def _validate(
        self,
        expense: Expense,
        snapshot: LedgerSnapshot,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> ValidationResult:
        result = self._validator.validate(expense, snapshot)
        if not result.is_valid:
            await self._reject(expense, result, actor_id, correlation_id)
        return result

    async def create_expense(
        self,
        group_id: str,
        description: str,
        paid_by_id: str,
        amount_cents: int,
        month: str,
        splits: Optional[Sequence[Split]] = None,
        split_mode: SplitMode = SplitMode.EQUAL,
        participant_ids: Optional[Sequence[str]] = None,
        shares: Optional[dict] = None,
        category: ExpenseCategory = ExpenseCategory.OTHER,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Expense, ValidationResult]:
        """
        Add an expense to the group.

        Give either explicit ``splits`` or a ``split_mode`` with
        ``participant_ids`` (default: every member) and ``shares``.

        Returns:
            (saved_expense, validation_result). Warnings in the result
            did not block the save but should be shown.

        Raises:
            ExpenseRejectedError: Invalid input or split arithmetic
            MonthClosedError: The month is locked
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            snapshot = await self._storage.get_snapshot(group_id)

            if splits is None:
                participants = list(participant_ids or [m.id for m in snapshot.members])
                try:
                    splits = build_splits(amount_cents, split_mode, participants, shares)
                except MoneyError as e:
                    raise ExpenseRejectedError(str(e))

            try:
                expense = Expense(
                    group_id=group_id,
                    description=description,
                    paid_by_id=paid_by_id,
                    amount_cents=amount_cents,
                    splits=list(splits),
                    month=month,
                    category=category,
                    notes=notes,
                )
            except ValidationError as e:
                raise ExpenseRejectedError(_first_pydantic_error(e))

            result = await self._validate(expense, snapshot, actor_id, correlation_id)
            try:
                await self._storage.save_expense(expense)
            except StorageError as e:
                if self._audit_logger:
                    await self._audit_logger.log_storage_error(
                        operation="save_expense",
                        error_message=str(e),
                        group_id=group_id,
                        correlation_id=correlation_id,
                    )
                raise
            await _remember_for_undo(
                self._storage, actor_id, UndoActionType.EXPENSE_ADDED, expense
            )

        if self._audit_logger:
            await self._audit_logger.log_expense_created(
                group_id=group_id,
                expense_id=expense.id,
                description=expense.description,
                amount_cents=expense.amount_cents,
                paid_by_id=expense.paid_by_id,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        return expense, result

    async def update_expense(
        self,
        group_id: str,
        expense_id: str,
        description: Optional[str] = None,
        amount_cents: Optional[int] = None,
        paid_by_id: Optional[str] = None,
        splits: Optional[Sequence[Split]] = None,
        category: Optional[ExpenseCategory] = None,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Expense, ValidationResult]:
        """
        Edit an expense. Its splits are replaced as a whole.

        Changing the amount without sending new splits fails validation,
        since the old splits no longer add up.

        Raises:
            RecordNotFoundError: No such expense in this group
            ExpenseRejectedError: Recurring expense, or invalid edit
            MonthClosedError: The expense's month is locked
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            existing = await self._storage.get_expense(expense_id)
            if existing is None or existing.group_id != group_id:
                raise RecordNotFoundError("Expense not found")
            if existing.is_recurring:
                raise ExpenseRejectedError("Cannot edit recurring expenses")

            changes = {
                "description": description,
                "amount_cents": amount_cents,
                "paid_by_id": paid_by_id,
                "category": category,
                "notes": notes,
            }
            data = existing.model_dump()
            data.update({k: v for k, v in changes.items() if v is not None})
            if splits is not None:
                data["splits"] = [split.model_dump() for split in splits]

            try:
                updated = Expense.model_validate(data)
            except ValidationError as e:
                raise ExpenseRejectedError(_first_pydantic_error(e))

            snapshot = await self._storage.get_snapshot(group_id)
            result = await self._validate(updated, snapshot, actor_id, correlation_id)
            try:
                await self._storage.update_expense(updated)
            except StorageError as e:
                if self._audit_logger:
                    await self._audit_logger.log_storage_error(
                        operation="update_expense",
                        error_message=str(e),
                        group_id=group_id,
                        correlation_id=correlation_id,
                    )
                raise

        if self._audit_logger:
            await self._audit_logger.log_expense_updated(
                group_id=group_id,
                expense_id=expense_id,
                previous_amount_cents=existing.amount_cents,
                amount_cents=updated.amount_cents,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        return updated, result

    async def delete_expense(
        self,
        group_id: str,
        expense_id: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Expense:
        """Delete an expense and its splits. Returns what was deleted."""
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            expense = await self._storage.get_expense(expense_id)
            if expense is None or expense.group_id != group_id:
                raise RecordNotFoundError("Expense not found")
            if expense.month in await self._storage.list_closed_months(group_id):
                raise MonthClosedError(f"Month {expense.month} is closed.")

            await self._storage.delete_expense(expense_id)
            await _remember_for_undo(
                self._storage, actor_id, UndoActionType.EXPENSE_DELETED, expense
            )

        if self._audit_logger:
            await self._audit_logger.log_expense_deleted(
                group_id=group_id,
                expense_id=expense.id,
                description=expense.description,
                amount_cents=expense.amount_cents,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        return expense

    async def generate_recurring_expense(
        self,
        template: RecurringExpenseTemplate,
        month: str,
        paid_by_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[Expense]:
        """
        Create this month's expense from a recurring template.

        Idempotent: at most one expense per template and month.

        Returns:
            The new expense, or None if the template is inactive or the
            month was already generated.
        """
        correlation_id = correlation_id or create_correlation_id()

        if not template.active:
            return None

        group_id = template.group_id
        async with self._storage.group_write_lock(group_id):
            snapshot = await self._storage.get_snapshot(group_id)

            already_generated = any(
                e.recurring_id == template.id and e.month == month
                for e in snapshot.expenses
            )
            if already_generated:
                logger.info(
                    "recurring_already_generated",
                    recurring_id=template.id,
                    month=month,
                )
                return None

            try:
                splits = template.build_splits([m.id for m in snapshot.members])
                expense = Expense(
                    group_id=group_id,
                    description=f"{template.name} - {month}",
                    paid_by_id=paid_by_id,
                    amount_cents=template.amount_cents,
                    splits=splits,
                    month=month,
                    category=template.category,
                    is_recurring=True,
                    recurring_id=template.id,
                )
            except MoneyError as e:
                raise ExpenseRejectedError(str(e))
            except ValidationError as e:
                raise ExpenseRejectedError(_first_pydantic_error(e))

            await self._validate(expense, snapshot, None, correlation_id)
            await self._storage.save_expense(expense)

        if self._audit_logger:
            await self._audit_logger.log_recurring_expense_generated(
                group_id=group_id,
                expense_id=expense.id,
                recurring_id=template.id,
                month=month,
                correlation_id=correlation_id,
            )

        return expense


# =============================================================================
# SETTLEMENTS
# =============================================================================

class SettlementFlow:
    """
    Orchestrates settlement writes.

    CRITICAL: validate and insert happen in ONE critical section against
    a snapshot read inside it. Two payments racing for the same debt
    are serialized; the second one sees the first.
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        validator: Optional[SettlementValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = ledger_storage
        self._validator = validator or SettlementValidator()
        self._audit_logger = audit_logger

    async def record_settlement(
        self,
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_cents: int,
        month: str,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Settlement, SettlementValidation]:
        """
        Record that one member paid another.

        Returns:
            (saved_settlement, validation) with before/after balances

        Raises:
            SettlementRejectedError: The payment does not match a real debt
            MonthClosedError: The month is locked
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            snapshot = await self._storage.get_snapshot(group_id)
            validation = self._validator.validate(
                snapshot,
                from_member_id,
                to_member_id,
                amount_cents,
                month,
            )

            if not validation.valid:
                if self._audit_logger:
                    await self._audit_logger.log_settlement_rejected(
                        group_id=group_id,
                        from_member_id=from_member_id,
                        to_member_id=to_member_id,
                        amount_cents=amount_cents if isinstance(amount_cents, int) else 0,
                        error=validation.error,
                        validation=validation.model_dump(),
                        actor_id=actor_id,
                        correlation_id=correlation_id,
                    )
                if snapshot.is_month_closed(month):
                    raise MonthClosedError(validation.error)
                raise SettlementRejectedError(validation.error, validation=validation)

            try:
                settlement = Settlement(
                    group_id=group_id,
                    from_member_id=from_member_id,
                    to_member_id=to_member_id,
                    amount_cents=amount_cents,
                    month=month,
                    payment_method=payment_method,
                )
            except ValidationError as e:
                raise SettlementRejectedError(_first_pydantic_error(e), validation=validation)

            try:
                await self._storage.save_settlement(settlement)
            except StorageError as e:
                if self._audit_logger:
                    await self._audit_logger.log_storage_error(
                        operation="save_settlement",
                        error_message=str(e),
                        group_id=group_id,
                        correlation_id=correlation_id,
                    )
                raise
            await _remember_for_undo(
                self._storage, actor_id, UndoActionType.SETTLEMENT_ADDED, settlement
            )

        if self._audit_logger:
            await self._audit_logger.log_settlement_recorded(
                group_id=group_id,
                settlement_id=settlement.id,
                from_member_id=from_member_id,
                to_member_id=to_member_id,
                amount_cents=settlement.amount_cents,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        return settlement, validation

    async def delete_settlement(
        self,
        group_id: str,
        settlement_id: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Settlement:
        """Undo a settlement. The debt it paid comes back."""
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            settlement = await self._storage.get_settlement(settlement_id)
            if settlement is None or settlement.group_id != group_id:
                raise RecordNotFoundError("Settlement not found")
            if settlement.month in await self._storage.list_closed_months(group_id):
                raise MonthClosedError(f"Month {settlement.month} is closed.")

            await self._storage.delete_settlement(settlement_id)
            await _remember_for_undo(
                self._storage, actor_id, UndoActionType.SETTLEMENT_DELETED, settlement
            )

        if self._audit_logger:
            await self._audit_logger.log_settlement_deleted(
                group_id=group_id,
                settlement_id=settlement.id,
                amount_cents=settlement.amount_cents,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        return settlement


# =============================================================================
# UNDO
# =============================================================================

async def _remember_for_undo(
    storage: LedgerStorageInterface,
    actor_id: Optional[str],
    action_type: UndoActionType,
    record,
) -> None:
    """
    Store an undo entry for a member's write.

    Runs inside the write's group lock. The write itself has already
    succeeded, so a failure here costs the undo, not the write.
    """
    if actor_id is None:
        return
    action = UndoAction(
        group_id=record.group_id,
        member_id=actor_id,
        action_type=action_type,
        entity_id=record.id,
        entity_data=record.model_dump(mode="json"),
    )
    try:
        await storage.save_undo_action(action)
    except StorageError as e:
        logger.warning(
            "undo_not_recorded",
            group_id=record.group_id,
            action_type=action_type.value,
            entity_id=record.id,
            error=str(e),
        )


class UndoFlow:
    """
    Take back your own last write within UNDO_WINDOW (5 minutes).

    Undo is a write like any other. It runs inside the group lock, and a
    record it brings back is validated again against a snapshot read
    inside that lock: a settlement deleted a few minutes ago may no
    longer match a real debt.
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        expense_validator: Optional[ExpenseValidator] = None,
        settlement_validator: Optional[SettlementValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = ledger_storage
        self._expense_validator = expense_validator or ExpenseValidator()
        self._settlement_validator = settlement_validator or SettlementValidator()
        self._audit_logger = audit_logger

    async def undo_last_action(
        self,
        group_id: str,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> UndoAction:
        """
        Undo the actor's most recent undoable write in this group.

        Only the actor's own writes count. Each entry can be used once.

        Returns:
            The undo entry that was applied

        Raises:
            RecordNotFoundError: Nothing to undo, or it expired
            MonthClosedError: The record's month is locked
            ExpenseRejectedError: A restored expense no longer validates
            SettlementRejectedError: A restored settlement no longer
                matches a real debt
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            action = await self._storage.get_latest_undo_action(
                group_id, actor_id, datetime.utcnow()
            )
            if action is None:
                raise RecordNotFoundError("Undo action not found or expired")

            snapshot = await self._storage.get_snapshot(group_id)

            if action.action_type == UndoActionType.EXPENSE_ADDED:
                await self._remove_expense(action, snapshot)
            elif action.action_type == UndoActionType.EXPENSE_DELETED:
                await self._restore_expense(action, snapshot, correlation_id)
            elif action.action_type == UndoActionType.SETTLEMENT_ADDED:
                await self._remove_settlement(action, snapshot)
            else:
                await self._restore_settlement(action, snapshot, correlation_id)

            await self._storage.mark_undo_used(action.id)

        if self._audit_logger:
            await self._audit_logger.log_action_undone(
                group_id=group_id,
                action_type=action.action_type.value,
                entity_type=action.entity_type,
                entity_id=action.entity_id,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        return action

    async def _save(self, save, record, operation: str, correlation_id: UUID) -> None:
        try:
            await save(record)
        except DuplicateError:
            raise LedgerOperationError(
                f"{type(record).__name__} already exists", status_code=409
            )
        except StorageError as e:
            if self._audit_logger:
                await self._audit_logger.log_storage_error(
                    operation=operation,
                    error_message=str(e),
                    group_id=record.group_id,
                    correlation_id=correlation_id,
                )
            raise

    async def _remove_expense(self, action: UndoAction, snapshot: LedgerSnapshot) -> None:
        expense = next((e for e in snapshot.expenses if e.id == action.entity_id), None)
        if expense is None:
            # Deleted since; nothing left to take back
            return
        if snapshot.is_month_closed(expense.month):
            raise MonthClosedError(f"Month {expense.month} is closed.")
        await self._storage.delete_expense(expense.id)

    async def _restore_expense(
        self,
        action: UndoAction,
        snapshot: LedgerSnapshot,
        correlation_id: UUID,
    ) -> None:
        try:
            expense = Expense.model_validate(action.entity_data)
        except ValidationError as e:
            raise ExpenseRejectedError(_first_pydantic_error(e))

        result = self._expense_validator.validate(expense, snapshot)
        if not result.is_valid:
            if self._audit_logger:
                await self._audit_logger.log_expense_rejected(
                    group_id=expense.group_id,
                    expense_id=expense.id,
                    issues=[
                        {"field": i.field, "type": i.issue_type, "message": i.message}
                        for i in result.issues
                        if i.severity == "error"
                    ],
                    actor_id=action.member_id,
                    correlation_id=correlation_id,
                )
            message = result.first_error or "Expense is invalid"
            if any(i.issue_type == "month_closed" for i in result.issues):
                raise MonthClosedError(message)
            raise ExpenseRejectedError(message, validation=result)

        await self._save(self._storage.save_expense, expense, "undo_expense_deleted", correlation_id)

    async def _remove_settlement(self, action: UndoAction, snapshot: LedgerSnapshot) -> None:
        settlement = next(
            (s for s in snapshot.settlements if s.id == action.entity_id), None
        )
        if settlement is None:
            return
        if snapshot.is_month_closed(settlement.month):
            raise MonthClosedError(f"Month {settlement.month} is closed.")
        await self._storage.delete_settlement(settlement.id)

    async def _restore_settlement(
        self,
        action: UndoAction,
        snapshot: LedgerSnapshot,
        correlation_id: UUID,
    ) -> None:
        try:
            settlement = Settlement.model_validate(action.entity_data)
        except ValidationError as e:
            raise SettlementRejectedError(_first_pydantic_error(e))

        validation = self._settlement_validator.validate(
            snapshot,
            settlement.from_member_id,
            settlement.to_member_id,
            settlement.amount_cents,
            settlement.month,
        )
        if not validation.valid:
            if self._audit_logger:
                await self._audit_logger.log_settlement_rejected(
                    group_id=settlement.group_id,
                    from_member_id=settlement.from_member_id,
                    to_member_id=settlement.to_member_id,
                    amount_cents=settlement.amount_cents,
                    error=validation.error,
                    validation=validation.model_dump(),
                    actor_id=action.member_id,
                    correlation_id=correlation_id,
                )
            if snapshot.is_month_closed(settlement.month):
                raise MonthClosedError(validation.error)
            raise SettlementRejectedError(validation.error, validation=validation)

        await self._save(
            self._storage.save_settlement, settlement, "undo_settlement_deleted", correlation_id
        )


# =============================================================================
# GROUP ADMINISTRATION
# =============================================================================

MEMBER_HAS_TRANSACTIONS = (
    "Cannot remove member with expenses or settlements. "
    "Delete their transactions first."
)


class GroupAdminFlow:
    """Member removal and month locks."""

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = ledger_storage
        self._audit_logger = audit_logger

    async def remove_member(
        self,
        group_id: str,
        member_id: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Remove a member from the group.

        Refused while any expense, split or settlement still references
        the member: deleting them would orphan money and break the
        zero-sum property of the ledger.
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            snapshot = await self._storage.get_snapshot(group_id)
            member = snapshot.get_member(member_id)
            if member is None:
                raise RecordNotFoundError("Member not found")

            reason = None
            status_code = None
            if actor_id == member_id:
                reason, status_code = "Cannot remove yourself", 400
            elif member.is_admin:
                reason, status_code = "Cannot remove other admins", 400
            else:
                referenced = any(
                    e.paid_by_id == member_id
                    or any(s.member_id == member_id for s in e.splits)
                    for e in snapshot.expenses
                ) or any(
                    s.from_member_id == member_id or s.to_member_id == member_id
                    for s in snapshot.settlements
                )
                if referenced:
                    reason = MEMBER_HAS_TRANSACTIONS

            if reason is not None:
                if self._audit_logger:
                    await self._audit_logger.log_member_removal_blocked(
                        group_id=group_id,
                        member_id=member_id,
                        reason=reason,
                        actor_id=actor_id,
                        correlation_id=correlation_id,
                    )
                raise MemberRemovalError(reason, status_code)

            await self._storage.delete_member(member_id)

        if self._audit_logger:
            await self._audit_logger.log_member_removed(
                group_id=group_id,
                member_id=member_id,
                display_name=member.display_name,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

    async def close_month(
        self,
        group_id: str,
        month: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Lock a month: no expense or settlement in it may change."""
        correlation_id = correlation_id or create_correlation_id()

        if not re.match(MONTH_PATTERN, month or ""):
            raise LedgerOperationError("Invalid month format. Use YYYY-MM")

        async with self._storage.group_write_lock(group_id):
            try:
                await self._storage.close_month(group_id, month)
            except DuplicateError:
                raise LedgerOperationError("Month is already closed")

        if self._audit_logger:
            await self._audit_logger.log_month_closed(
                group_id=group_id,
                month=month,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

    async def reopen_month(
        self,
        group_id: str,
        month: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        correlation_id = correlation_id or create_correlation_id()

        async with self._storage.group_write_lock(group_id):
            reopened = await self._storage.reopen_month(group_id, month)
        if not reopened:
            raise RecordNotFoundError(f"Month {month} is not closed")

        if self._audit_logger:
            await self._audit_logger.log_month_reopened(
                group_id=group_id,
                month=month,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )


def create_app_components(
    storage_backend: Optional[str] = None,
) -> tuple[
    BalanceFlow, ExpenseFlow, SettlementFlow, UndoFlow, GroupAdminFlow, LedgerStorageInterface
]:
    """
    Factory function to create all application components.

    Args:
        storage_backend: "memory" or "google_sheets". Defaults to the
                        configured AppSettings.storage_backend.

    Returns:
        (balance_flow, expense_flow, settlement_flow, undo_flow, admin_flow,
         ledger_storage)
    """
    settings = get_settings()
    backend = storage_backend or settings.app.storage_backend

    ledger_storage = None
    audit_logger = None

    if backend == "google_sheets":
        try:
            sheets_client = GoogleSheetsClient()
            ledger_storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            ledger_storage = None

    if ledger_storage is None:
        ledger_storage = InMemoryLedgerStorage()
        audit_logger = AuditLogger(InMemoryAuditStorage())

    ledger_settings = settings.ledger

    balance_flow = BalanceFlow(
        ledger_storage,
        audit_logger=audit_logger,
        settings=ledger_settings,
    )
    expense_flow = ExpenseFlow(
        ledger_storage,
        validator=ExpenseValidator(ledger_settings),
        audit_logger=audit_logger,
    )
    settlement_flow = SettlementFlow(
        ledger_storage,
        validator=SettlementValidator(ledger_settings),
        audit_logger=audit_logger,
    )
    undo_flow = UndoFlow(
        ledger_storage,
        expense_validator=ExpenseValidator(ledger_settings),
        settlement_validator=SettlementValidator(ledger_settings),
        audit_logger=audit_logger,
    )
    admin_flow = GroupAdminFlow(
        ledger_storage,
        audit_logger=audit_logger,
    )

    return balance_flow, expense_flow, settlement_flow, undo_flow, admin_flow, ledger_storage
