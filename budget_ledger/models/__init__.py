"""
Data Models Package

This package contains all Pydantic models used by the budget ledger.
All data flowing through the engine must conform to these schemas.
"""

from budget_ledger.models.ledger import (
    CENT,
    BudgetCategory,
    BudgetSettings,
    BudgetSummary,
    CatalogEntry,
    CategorySummary,
    Expense,
    LedgerSnapshot,
    ReconciliationResult,
    new_id,
    to_money,
    utc_now,
)
from budget_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "CENT",
    "BudgetCategory",
    "BudgetSettings",
    "BudgetSummary",
    "CatalogEntry",
    "CategorySummary",
    "Expense",
    "LedgerSnapshot",
    "ReconciliationResult",
    "new_id",
    "to_money",
    "utc_now",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
