"""Reconciliation engine package."""

from budget_ledger.reconciliation.engine import ReconciliationEngine
from budget_ledger.reconciliation.locks import CategoryLockRegistry

__all__ = ["CategoryLockRegistry", "ReconciliationEngine"]
