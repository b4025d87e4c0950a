"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the ledger core decoupled from storage implementation

The ledger never writes to storage itself. Storage hands the flows a
LedgerSnapshot (one consistent read) and the flows persist what the
validators accept.

CONCURRENCY: Creating a settlement is check-then-act. Two requests that
both validate against the same stale balance could jointly overpay a
debt. Every write path therefore runs inside group_write_lock(group_id),
and re-reads the snapshot INSIDE the lock before validating.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from src.models.audit import AuditEvent
from src.models.ledger import (
    Expense,
    LedgerSnapshot,
    Member,
    Settlement,
    UndoAction,
)


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger record storage.

    Any storage implementation (Google Sheets, PostgreSQL, etc.)
    must implement these methods.
    """

    _group_locks: Optional[dict[str, asyncio.Lock]] = None

    @asynccontextmanager
    async def group_write_lock(self, group_id: str) -> AsyncIterator[None]:
        """
        Serialize writes that affect one group's ledger.

        The default is an in-process asyncio.Lock per group. Backends that
        are shared between processes should override this with a database
        transaction or row lock.
        """
        if self._group_locks is None:
            self._group_locks = {}
        lock = self._group_locks.setdefault(group_id, asyncio.Lock())
        async with lock:
            yield

    # -- Members --------------------------------------------------------------

    @abstractmethod
    async def list_members(self, group_id: str) -> list[Member]:
        """
        List a group's members, oldest first.

        Ordering is deterministic so balances always come out in the
        same order.
        """
        pass

    @abstractmethod
    async def save_member(self, member: Member) -> bool:
        """
        Add a member to their group.

        Raises:
            DuplicateError: If the member id already exists
        """
        pass

    @abstractmethod
    async def delete_member(self, member_id: str) -> bool:
        """
        Remove a member.

        The "no removal while money is attached" rule lives in the flows,
        not here.

        Returns:
            True if a member was deleted
        """
        pass

    # -- Expenses -------------------------------------------------------------

    @abstractmethod
    async def list_expenses(
        self,
        group_id: str,
        month: Optional[str] = None,
    ) -> list[Expense]:
        """
        List a group's expenses with their splits, newest first.

        Args:
            group_id: Group to read
            month: Only this YYYY-MM month, if given
        """
        pass

    @abstractmethod
    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        pass

    @abstractmethod
    async def save_expense(self, expense: Expense) -> bool:
        """
        Save a new expense together with its splits.

        Raises:
            DuplicateError: If the expense id already exists
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def update_expense(self, expense: Expense) -> bool:
        """
        Replace an expense and all of its splits.

        Raises:
            NotFoundError: If expense doesn't exist
        """
        pass

    @abstractmethod
    async def delete_expense(self, expense_id: str) -> bool:
        """Delete an expense and its splits. True if something was deleted."""
        pass

    # -- Settlements ----------------------------------------------------------

    @abstractmethod
    async def list_settlements(
        self,
        group_id: str,
        month: Optional[str] = None,
    ) -> list[Settlement]:
        """List a group's settlements, newest first."""
        pass

    @abstractmethod
    async def get_settlement(self, settlement_id: str) -> Optional[Settlement]:
        pass

    @abstractmethod
    async def save_settlement(self, settlement: Settlement) -> bool:
        """
        Save a new settlement.

        Call only inside group_write_lock, after validating against a
        snapshot read inside the same lock.
        """
        pass

    @abstractmethod
    async def delete_settlement(self, settlement_id: str) -> bool:
        pass

    # -- Closed months --------------------------------------------------------

    @abstractmethod
    async def list_closed_months(self, group_id: str) -> list[str]:
        """Closed YYYY-MM months of a group, newest first."""
        pass

    @abstractmethod
    async def close_month(self, group_id: str, month: str) -> bool:
        """
        Mark a month closed.

        Raises:
            DuplicateError: If the month is already closed
        """
        pass

    @abstractmethod
    async def reopen_month(self, group_id: str, month: str) -> bool:
        """True if the month was closed and is now open."""
        pass

    # -- Undo history ---------------------------------------------------------

    @abstractmethod
    async def save_undo_action(self, action: UndoAction) -> bool:
        """Remember a write so its author can take it back."""
        pass

    @abstractmethod
    async def get_latest_undo_action(
        self,
        group_id: str,
        member_id: str,
        now: datetime,
    ) -> Optional[UndoAction]:
        """
        The member's most recently saved action that can still be undone.

        Used or expired actions are skipped.
        """
        pass

    @abstractmethod
    async def mark_undo_used(self, action_id: str) -> bool:
        """Set can_undo to False. True if the action exists."""
        pass

    # -- Snapshot -------------------------------------------------------------

    async def get_snapshot(self, group_id: str) -> LedgerSnapshot:
        """
        Read everything the ledger needs for one group.

        Backends with real transactions should override this to read all
        four collections in one read transaction.
        """
        members = await self.list_members(group_id)
        expenses = await self.list_expenses(group_id)
        settlements = await self.list_settlements(group_id)
        closed_months = await self.list_closed_months(group_id)
        return LedgerSnapshot(
            group_id=group_id,
            members=members,
            expenses=expenses,
            settlements=settlements,
            closed_months=closed_months,
        )


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """All events for one entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        group_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).

        Args:
            group_id: Only events of this group, if given
            limit: Maximum number of events to return
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
