"""
Audit Models for the Household Ledger

Every write to the ledger, every rejected write and every detected
inconsistency is logged for audit purposes.
This provides:
1. Complete traceability of who changed money and when
2. A record of blocked settlements (for "why was my payment refused?")
3. Early warning when the zero-sum invariant breaks
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Expenses
    EXPENSE_CREATED = "expense_created"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"
    EXPENSE_REJECTED = "expense_rejected"
    RECURRING_EXPENSE_GENERATED = "recurring_expense_generated"

    # Settlements
    SETTLEMENT_RECORDED = "settlement_recorded"
    SETTLEMENT_REJECTED = "settlement_rejected"
    SETTLEMENT_DELETED = "settlement_deleted"

    # Undo
    ACTION_UNDONE = "action_undone"

    # Ledger reads
    LEDGER_INVARIANT_VIOLATION = "ledger_invariant_violation"
    SMART_SETTLE_SUGGESTED = "smart_settle_suggested"

    # Group administration
    MONTH_CLOSED = "month_closed"
    MONTH_REOPENED = "month_reopened"
    MEMBER_REMOVED = "member_removed"
    MEMBER_REMOVAL_BLOCKED = "member_removal_blocked"

    # System events
    STORAGE_ERROR = "storage_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    group_id: Optional[str] = Field(
        default=None,
        description="Household group the event belongs to"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'settlement', 'member')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., everything in one request)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # Who did it
    actor_id: Optional[str] = Field(
        default=None,
        description="Member who triggered the event, if any"
    )

    @property
    def is_user_action(self) -> bool:
        return self.actor_id is not None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "group_id": self.group_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "actor_id": self.actor_id,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, group_id, entity_type,
         entity_id, correlation_id, description, details_json, error_message,
         actor_id]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.group_id or "",
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details) if self.details else "",
            self.error_message or "",
            self.actor_id or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_created(group_id, expense_id, ...)
        event = AuditEventBuilder.settlement_rejected(group_id, ...)
    """

    @staticmethod
    def expense_created(
        group_id: str,
        expense_id: str,
        description: str,
        amount_cents: int,
        paid_by_id: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_CREATED,
            group_id=group_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense added: {description}",
            details={
                "amount_cents": amount_cents,
                "paid_by_id": paid_by_id,
            },
            actor_id=actor_id,
        )

    @staticmethod
    def expense_updated(
        group_id: str,
        expense_id: str,
        previous_amount_cents: int,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_UPDATED,
            group_id=group_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description="Expense updated",
            details={
                "previous_amount_cents": previous_amount_cents,
                "amount_cents": amount_cents,
            },
            actor_id=actor_id,
        )

    @staticmethod
    def expense_deleted(
        group_id: str,
        expense_id: str,
        description: str,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            group_id=group_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense deleted: {description}",
            details={"amount_cents": amount_cents},
            actor_id=actor_id,
        )

    @staticmethod
    def expense_rejected(
        group_id: str,
        expense_id: str,
        issues: list[dict],
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_REJECTED,
            severity=AuditSeverity.WARNING,
            group_id=group_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense rejected with {len(issues)} issues",
            details={"issues": issues},
            actor_id=actor_id,
        )

    @staticmethod
    def recurring_expense_generated(
        group_id: str,
        expense_id: str,
        recurring_id: str,
        month: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_EXPENSE_GENERATED,
            group_id=group_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Recurring expense generated for {month}",
            details={"recurring_id": recurring_id, "month": month},
        )

    @staticmethod
    def settlement_recorded(
        group_id: str,
        settlement_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_RECORDED,
            group_id=group_id,
            entity_type="settlement",
            entity_id=settlement_id,
            correlation_id=correlation_id,
            description="Settlement recorded",
            details={
                "from_member_id": from_member_id,
                "to_member_id": to_member_id,
                "amount_cents": amount_cents,
            },
            actor_id=actor_id,
        )

    @staticmethod
    def settlement_rejected(
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_cents: int,
        error: str,
        validation: dict,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_REJECTED,
            severity=AuditSeverity.WARNING,
            group_id=group_id,
            entity_type="settlement",
            correlation_id=correlation_id,
            description=f"Settlement blocked: {error}",
            error_message=error,
            details={
                "from_member_id": from_member_id,
                "to_member_id": to_member_id,
                "amount_cents": amount_cents,
                "validation": validation,
            },
            actor_id=actor_id,
        )

    @staticmethod
    def settlement_deleted(
        group_id: str,
        settlement_id: str,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_DELETED,
            group_id=group_id,
            entity_type="settlement",
            entity_id=settlement_id,
            correlation_id=correlation_id,
            description="Settlement deleted",
            details={"amount_cents": amount_cents},
            actor_id=actor_id,
        )

    @staticmethod
    def action_undone(
        group_id: str,
        action_type: str,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_UNDONE,
            group_id=group_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Undone: {action_type.replace('_', ' ')}",
            details={"action_type": action_type},
            actor_id=actor_id,
        )

    @staticmethod
    def ledger_invariant_violation(
        group_id: str,
        sum_of_balances: int,
        inconsistencies: list[dict],
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_INVARIANT_VIOLATION,
            severity=AuditSeverity.ERROR,
            group_id=group_id,
            entity_type="group",
            entity_id=group_id,
            correlation_id=correlation_id,
            description=(
                f"Ledger inconsistent: sum of balances = {sum_of_balances} cents, "
                f"{len(inconsistencies)} problem records"
            ),
            error_code="LEDGER_INVARIANT",
            details={
                "sum_of_balances": sum_of_balances,
                "inconsistencies": inconsistencies,
            },
        )

    @staticmethod
    def smart_settle_suggested(
        group_id: str,
        transaction_count: int,
        total_cents: int,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SMART_SETTLE_SUGGESTED,
            severity=AuditSeverity.DEBUG,
            group_id=group_id,
            entity_type="group",
            entity_id=group_id,
            correlation_id=correlation_id,
            description=f"Smart settle suggested {transaction_count} payments",
            details={
                "transaction_count": transaction_count,
                "total_cents": total_cents,
            },
        )

    @staticmethod
    def month_closed(
        group_id: str,
        month: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_CLOSED,
            group_id=group_id,
            entity_type="month",
            entity_id=month,
            correlation_id=correlation_id,
            description=f"Month {month} closed",
            actor_id=actor_id,
        )

    @staticmethod
    def month_reopened(
        group_id: str,
        month: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_REOPENED,
            group_id=group_id,
            entity_type="month",
            entity_id=month,
            correlation_id=correlation_id,
            description=f"Month {month} reopened",
            actor_id=actor_id,
        )

    @staticmethod
    def member_removed(
        group_id: str,
        member_id: str,
        display_name: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MEMBER_REMOVED,
            group_id=group_id,
            entity_type="member",
            entity_id=member_id,
            correlation_id=correlation_id,
            description=f"Member removed: {display_name}",
            actor_id=actor_id,
        )

    @staticmethod
    def member_removal_blocked(
        group_id: str,
        member_id: str,
        reason: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MEMBER_REMOVAL_BLOCKED,
            severity=AuditSeverity.WARNING,
            group_id=group_id,
            entity_type="member",
            entity_id=member_id,
            correlation_id=correlation_id,
            description="Member removal blocked",
            error_message=reason,
            actor_id=actor_id,
        )

    @staticmethod
    def storage_error(
        operation: str,
        error_message: str,
        group_id: Optional[str],
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            group_id=group_id,
            description=f"Storage error during {operation}",
            error_message=error_message,
            details={"operation": operation},
            correlation_id=correlation_id,
        )
