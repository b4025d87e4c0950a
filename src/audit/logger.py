"""
Audit Logger

DESIGN DECISION: Every change to the ledger is logged.
This provides:
1. Complete traceability of money movements
2. Debugging capability when balances look wrong
3. Housemates can see who changed what

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from src.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from src.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        # Always log locally
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        # Persist to storage if available
        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_expense_created(
        self,
        group_id: str,
        expense_id: str,
        description: str,
        amount_cents: int,
        paid_by_id: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a new expense."""
        event = AuditEventBuilder.expense_created(
            group_id=group_id,
            expense_id=expense_id,
            description=description,
            amount_cents=amount_cents,
            paid_by_id=paid_by_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_expense_updated(
        self,
        group_id: str,
        expense_id: str,
        previous_amount_cents: int,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.expense_updated(
            group_id=group_id,
            expense_id=expense_id,
            previous_amount_cents=previous_amount_cents,
            amount_cents=amount_cents,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_expense_deleted(
        self,
        group_id: str,
        expense_id: str,
        description: str,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.expense_deleted(
            group_id=group_id,
            expense_id=expense_id,
            description=description,
            amount_cents=amount_cents,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_expense_rejected(
        self,
        group_id: str,
        expense_id: str,
        issues: list[dict],
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log an expense that failed validation."""
        event = AuditEventBuilder.expense_rejected(
            group_id=group_id,
            expense_id=expense_id,
            issues=issues,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_recurring_expense_generated(
        self,
        group_id: str,
        expense_id: str,
        recurring_id: str,
        month: str,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.recurring_expense_generated(
            group_id=group_id,
            expense_id=expense_id,
            recurring_id=recurring_id,
            month=month,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_settlement_recorded(
        self,
        group_id: str,
        settlement_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log an accepted settlement."""
        event = AuditEventBuilder.settlement_recorded(
            group_id=group_id,
            settlement_id=settlement_id,
            from_member_id=from_member_id,
            to_member_id=to_member_id,
            amount_cents=amount_cents,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_settlement_rejected(
        self,
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_cents: int,
        error: str,
        validation: dict,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a settlement that was blocked."""
        event = AuditEventBuilder.settlement_rejected(
            group_id=group_id,
            from_member_id=from_member_id,
            to_member_id=to_member_id,
            amount_cents=amount_cents,
            error=error,
            validation=validation,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_settlement_deleted(
        self,
        group_id: str,
        settlement_id: str,
        amount_cents: int,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.settlement_deleted(
            group_id=group_id,
            settlement_id=settlement_id,
            amount_cents=amount_cents,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_action_undone(
        self,
        group_id: str,
        action_type: str,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a write its author took back."""
        event = AuditEventBuilder.action_undone(
            group_id=group_id,
            action_type=action_type,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_invariant_violation(
        self,
        group_id: str,
        sum_of_balances: int,
        inconsistencies: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a ledger whose balances do not add up."""
        event = AuditEventBuilder.ledger_invariant_violation(
            group_id=group_id,
            sum_of_balances=sum_of_balances,
            inconsistencies=inconsistencies,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_smart_settle_suggested(
        self,
        group_id: str,
        transaction_count: int,
        total_cents: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.smart_settle_suggested(
            group_id=group_id,
            transaction_count=transaction_count,
            total_cents=total_cents,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_month_closed(
        self,
        group_id: str,
        month: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.month_closed(
            group_id=group_id,
            month=month,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_month_reopened(
        self,
        group_id: str,
        month: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.month_reopened(
            group_id=group_id,
            month=month,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_member_removed(
        self,
        group_id: str,
        member_id: str,
        display_name: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.member_removed(
            group_id=group_id,
            member_id=member_id,
            display_name=display_name,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_member_removal_blocked(
        self,
        group_id: str,
        member_id: str,
        reason: str,
        actor_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.member_removal_blocked(
            group_id=group_id,
            member_id=member_id,
            reason=reason,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_storage_error(
        self,
        operation: str,
        error_message: str,
        group_id: Optional[str],
        correlation_id: Optional[UUID],
    ) -> None:
        """Log a failed storage call."""
        event = AuditEventBuilder.storage_error(
            operation=operation,
            error_message=error_message,
            group_id=group_id,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., recording a payment).
    Pass it through all subsequent operations.
    """
    return uuid4()
