"""
Audit Logger

DESIGN DECISION: Every ledger mutation is logged.
This provides:
1. Traceability of every change to an aggregate
2. Debugging capability when a partial commit leaves drift behind
3. A record of every integrity violation the sweeps corrected

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the engine if logging fails)
- Supports correlation IDs to trace the events of one operation
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from budget_ledger.models.audit import AuditEvent, AuditEventBuilder
from budget_ledger.services.storage import AuditStorageInterface


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
    2. Audit storage, when configured (for persistence)
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
        self._logger = structlog.get_logger("budget_ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        elif event.severity.value == "debug":
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

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

    async def log_ledger_initialized(
        self,
        owner_id: str,
        total_budget: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.ledger_initialized(
            owner_id=owner_id,
            total_budget=total_budget,
            correlation_id=correlation_id,
        ))

    async def log_categories_seeded(
        self,
        owner_id: str,
        names: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.categories_seeded(
            owner_id=owner_id,
            names=names,
            correlation_id=correlation_id,
        ))

    async def log_category_created(
        self,
        owner_id: str,
        category_id: str,
        name: str,
        allocated: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.category_created(
            owner_id=owner_id,
            category_id=category_id,
            name=name,
            allocated=allocated,
            correlation_id=correlation_id,
        ))

    async def log_expense_added(
        self,
        owner_id: str,
        expense_id: str,
        category_id: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_added(
            owner_id=owner_id,
            expense_id=expense_id,
            category_id=category_id,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_expense_edited(
        self,
        owner_id: str,
        expense_id: str,
        old_category_id: str,
        new_category_id: str,
        old_amount: str,
        new_amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_edited(
            owner_id=owner_id,
            expense_id=expense_id,
            old_category_id=old_category_id,
            new_category_id=new_category_id,
            old_amount=old_amount,
            new_amount=new_amount,
            correlation_id=correlation_id,
        ))

    async def log_expense_deleted(
        self,
        owner_id: str,
        expense_id: str,
        category_id: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_deleted(
            owner_id=owner_id,
            expense_id=expense_id,
            category_id=category_id,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_duplicate_submission(
        self,
        owner_id: str,
        expense_id: str,
        idempotency_key: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.duplicate_submission(
            owner_id=owner_id,
            expense_id=expense_id,
            idempotency_key=idempotency_key,
            correlation_id=correlation_id,
        ))

    async def log_total_budget_set(
        self,
        owner_id: str,
        old_total: str,
        new_total: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.total_budget_set(
            owner_id=owner_id,
            old_total=old_total,
            new_total=new_total,
            correlation_id=correlation_id,
        ))

    async def log_ledger_reset(
        self,
        owner_id: str,
        expenses_removed: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.ledger_reset(
            owner_id=owner_id,
            expenses_removed=expenses_removed,
            correlation_id=correlation_id,
        ))

    async def log_category_reconciled(
        self,
        owner_id: str,
        category_id: str,
        previous: str,
        recomputed: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.category_reconciled(
            owner_id=owner_id,
            category_id=category_id,
            previous=previous,
            recomputed=recomputed,
            correlation_id=correlation_id,
        ))

    async def log_integrity_violation(
        self,
        owner_id: str,
        category_id: str,
        recorded: str,
        derived: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.integrity_violation_corrected(
            owner_id=owner_id,
            category_id=category_id,
            recorded=recorded,
            derived=derived,
            correlation_id=correlation_id,
        ))

    async def log_category_flagged(
        self,
        category_id: str,
        reason: str,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.category_flagged(
            category_id=category_id,
            reason=reason,
            owner_id=owner_id,
            correlation_id=correlation_id,
        ))

    async def log_expense_rolled_back(
        self,
        owner_id: str,
        expense_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_rolled_back(
            owner_id=owner_id,
            expense_id=expense_id,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        operation: str,
        message: str,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.validation_failed(
            operation=operation,
            message=message,
            owner_id=owner_id,
            correlation_id=correlation_id,
        ))

    async def log_storage_error(
        self,
        operation: str,
        error_message: str,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.storage_error(
            operation=operation,
            error_message=error_message,
            owner_id=owner_id,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a client request (e.g. add expense).
    Pass it through all subsequent operations.
    """
    return uuid4()
