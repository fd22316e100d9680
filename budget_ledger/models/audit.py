"""
Audit Models for the Budget Ledger

Every mutation of a ledger is logged for audit purposes.
This provides:
1. Complete traceability of who changed which aggregate and why
2. Debugging information when a partial commit leaves drift behind
3. A record of every integrity violation the sweeps corrected

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budget_ledger.models.ledger import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Ledger setup
    LEDGER_INITIALIZED = "ledger_initialized"
    CATEGORIES_SEEDED = "categories_seeded"
    CATEGORY_CREATED = "category_created"

    # Expense mutations
    EXPENSE_ADDED = "expense_added"
    EXPENSE_EDITED = "expense_edited"
    EXPENSE_DELETED = "expense_deleted"
    DUPLICATE_SUBMISSION = "duplicate_submission"

    # Budget mutations
    TOTAL_BUDGET_SET = "total_budget_set"
    LEDGER_RESET = "ledger_reset"

    # Reconciliation
    CATEGORY_RECONCILED = "category_reconciled"
    INTEGRITY_VIOLATION_CORRECTED = "integrity_violation_corrected"
    CATEGORY_FLAGGED = "category_flagged"
    EXPENSE_ROLLED_BACK = "expense_rolled_back"

    # Failures
    VALIDATION_FAILED = "validation_failed"
    STORAGE_ERROR = "storage_error"
    SYSTEM_ERROR = "system_error"


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

    Every ledger mutation creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
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

    # Context
    owner_id: Optional[str] = Field(
        default=None,
        description="Owner whose ledger was touched"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'category', 'settings')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking the events of one operation
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
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

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a client request?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "owner_id": self.owner_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, owner_id, entity_type,
         entity_id, correlation_id, description, details_json, error_message,
         is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.owner_id or "",
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_added(owner_id, expense, correlation_id)
        event = AuditEventBuilder.category_reconciled(result, correlation_id)
    """

    @staticmethod
    def ledger_initialized(
        owner_id: str,
        total_budget: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_INITIALIZED,
            owner_id=owner_id,
            entity_type="settings",
            entity_id=owner_id,
            correlation_id=correlation_id,
            description=f"Ledger created with total budget {total_budget}",
            details={"total_budget": total_budget},
        )

    @staticmethod
    def categories_seeded(
        owner_id: str,
        names: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORIES_SEEDED,
            owner_id=owner_id,
            entity_type="category",
            correlation_id=correlation_id,
            description=f"Seeded {len(names)} default categories",
            details={"categories": names},
        )

    @staticmethod
    def category_created(
        owner_id: str,
        category_id: str,
        name: str,
        allocated: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_CREATED,
            owner_id=owner_id,
            entity_type="category",
            entity_id=category_id,
            correlation_id=correlation_id,
            description=f"Category created: {name}",
            details={"name": name, "allocated_amount": allocated},
            is_user_action=True,
        )

    @staticmethod
    def expense_added(
        owner_id: str,
        expense_id: str,
        category_id: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_ADDED,
            owner_id=owner_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense added: {amount}",
            details={"category_id": category_id, "amount": amount},
            is_user_action=True,
        )

    @staticmethod
    def expense_edited(
        owner_id: str,
        expense_id: str,
        old_category_id: str,
        new_category_id: str,
        old_amount: str,
        new_amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_EDITED,
            owner_id=owner_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense edited: {old_amount} -> {new_amount}",
            details={
                "old_category_id": old_category_id,
                "new_category_id": new_category_id,
                "old_amount": old_amount,
                "new_amount": new_amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_deleted(
        owner_id: str,
        expense_id: str,
        category_id: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            owner_id=owner_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"Expense deleted: {amount}",
            details={"category_id": category_id, "amount": amount},
            is_user_action=True,
        )

    @staticmethod
    def duplicate_submission(
        owner_id: str,
        expense_id: str,
        idempotency_key: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATE_SUBMISSION,
            owner_id=owner_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description="Re-submitted expense ignored",
            details={"idempotency_key": idempotency_key},
            is_user_action=True,
        )

    @staticmethod
    def total_budget_set(
        owner_id: str,
        old_total: str,
        new_total: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TOTAL_BUDGET_SET,
            owner_id=owner_id,
            entity_type="settings",
            entity_id=owner_id,
            correlation_id=correlation_id,
            description=f"Total budget changed: {old_total} -> {new_total}",
            details={"old_total": old_total, "new_total": new_total},
            is_user_action=True,
        )

    @staticmethod
    def ledger_reset(
        owner_id: str,
        expenses_removed: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_RESET,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="settings",
            entity_id=owner_id,
            correlation_id=correlation_id,
            description=f"Ledger reset, {expenses_removed} expenses removed",
            details={"expenses_removed": expenses_removed},
            is_user_action=True,
        )

    @staticmethod
    def category_reconciled(
        owner_id: str,
        category_id: str,
        previous: str,
        recomputed: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_RECONCILED,
            severity=AuditSeverity.DEBUG,
            owner_id=owner_id,
            entity_type="category",
            entity_id=category_id,
            correlation_id=correlation_id,
            description="Category spent amount re-derived from expenses",
            details={"previous_spent": previous, "recomputed_spent": recomputed},
        )

    @staticmethod
    def integrity_violation_corrected(
        owner_id: str,
        category_id: str,
        recorded: str,
        derived: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEGRITY_VIOLATION_CORRECTED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="category",
            entity_id=category_id,
            correlation_id=correlation_id,
            description=f"Spent amount drift corrected: {recorded} -> {derived}",
            details={"recorded_spent": recorded, "derived_spent": derived},
        )

    @staticmethod
    def category_flagged(
        category_id: str,
        reason: str,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_FLAGGED,
            severity=AuditSeverity.ERROR,
            owner_id=owner_id,
            entity_type="category",
            entity_id=category_id,
            correlation_id=correlation_id,
            description="Category needs reconciliation",
            error_message=reason,
        )

    @staticmethod
    def expense_rolled_back(
        owner_id: str,
        expense_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_ROLLED_BACK,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description="Expense insert rolled back after aggregate update failed",
        )

    @staticmethod
    def validation_failed(
        operation: str,
        message: str,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.INFO,
            owner_id=owner_id,
            correlation_id=correlation_id,
            description=f"{operation} rejected",
            error_message=message,
            details={"operation": operation},
            is_user_action=True,
        )

    @staticmethod
    def storage_error(
        operation: str,
        error_message: str,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            owner_id=owner_id,
            correlation_id=correlation_id,
            description=f"Storage error during {operation}",
            error_message=error_message,
            details={"operation": operation},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
