"""
In-Memory Storage Implementation

Used for tests and for running locally without Google credentials.
Records are copied on the way in and on the way out, so callers can
never mutate stored state by accident.
"""

from datetime import datetime
from typing import Optional

from src.models.audit import AuditEvent
from src.models.ledger import Expense, Member, Settlement, UndoAction
from src.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dictionary-backed ledger storage."""

    def __init__(self):
        self._members: dict[str, Member] = {}
        self._expenses: dict[str, Expense] = {}
        self._settlements: dict[str, Settlement] = {}
        self._closed_months: dict[str, set[str]] = {}
        self._undo_actions: dict[str, UndoAction] = {}

    async def list_members(self, group_id: str) -> list[Member]:
        members = [m for m in self._members.values() if m.group_id == group_id]
        members.sort(key=lambda m: (m.joined_at, m.id))
        return [m.model_copy(deep=True) for m in members]

    async def save_member(self, member: Member) -> bool:
        if member.id in self._members:
            raise DuplicateError(f"Member already exists: {member.id}")
        self._members[member.id] = member.model_copy(deep=True)
        return True

    async def delete_member(self, member_id: str) -> bool:
        return self._members.pop(member_id, None) is not None

    async def list_expenses(
        self,
        group_id: str,
        month: Optional[str] = None,
    ) -> list[Expense]:
        expenses = [
            e for e in self._expenses.values()
            if e.group_id == group_id and (month is None or e.month == month)
        ]
        expenses.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [e.model_copy(deep=True) for e in expenses]

    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        expense = self._expenses.get(expense_id)
        return expense.model_copy(deep=True) if expense else None

    async def save_expense(self, expense: Expense) -> bool:
        if expense.id in self._expenses:
            raise DuplicateError(f"Expense already exists: {expense.id}")
        self._expenses[expense.id] = expense.model_copy(deep=True)
        return True

    async def update_expense(self, expense: Expense) -> bool:
        if expense.id not in self._expenses:
            raise NotFoundError(f"Expense not found: {expense.id}")
        self._expenses[expense.id] = expense.model_copy(deep=True)
        return True

    async def delete_expense(self, expense_id: str) -> bool:
        return self._expenses.pop(expense_id, None) is not None

    async def list_settlements(
        self,
        group_id: str,
        month: Optional[str] = None,
    ) -> list[Settlement]:
        settlements = [
            s for s in self._settlements.values()
            if s.group_id == group_id and (month is None or s.month == month)
        ]
        settlements.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return [s.model_copy(deep=True) for s in settlements]

    async def get_settlement(self, settlement_id: str) -> Optional[Settlement]:
        settlement = self._settlements.get(settlement_id)
        return settlement.model_copy(deep=True) if settlement else None

    async def save_settlement(self, settlement: Settlement) -> bool:
        if settlement.id in self._settlements:
            raise DuplicateError(f"Settlement already exists: {settlement.id}")
        self._settlements[settlement.id] = settlement.model_copy(deep=True)
        return True

    async def delete_settlement(self, settlement_id: str) -> bool:
        return self._settlements.pop(settlement_id, None) is not None

    async def list_closed_months(self, group_id: str) -> list[str]:
        return sorted(self._closed_months.get(group_id, set()), reverse=True)

    async def close_month(self, group_id: str, month: str) -> bool:
        closed = self._closed_months.setdefault(group_id, set())
        if month in closed:
            raise DuplicateError(f"Month is already closed: {month}")
        closed.add(month)
        return True

    async def reopen_month(self, group_id: str, month: str) -> bool:
        closed = self._closed_months.get(group_id, set())
        if month not in closed:
            return False
        closed.remove(month)
        return True

    async def save_undo_action(self, action: UndoAction) -> bool:
        if action.id in self._undo_actions:
            raise DuplicateError(f"Undo action already exists: {action.id}")
        self._undo_actions[action.id] = action.model_copy(deep=True)
        return True

    async def get_latest_undo_action(
        self,
        group_id: str,
        member_id: str,
        now: datetime,
    ) -> Optional[UndoAction]:
        # Dicts keep insertion order: the last match is the newest
        for action in reversed(list(self._undo_actions.values())):
            if (
                action.group_id == group_id
                and action.member_id == member_id
                and action.is_available(now)
            ):
                return action.model_copy(deep=True)
        return None

    async def mark_undo_used(self, action_id: str) -> bool:
        action = self._undo_actions.get(action_id)
        if action is None:
            return False
        action.can_undo = False
        return True


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        group_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if group_id is None or e.group_id == group_id
        ]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
