"""
Abstract Storage Interface (Persistence Gateway)

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the reconciliation logic decoupled from the backing store

Backends differ in what they can guarantee:
- supports_transactions: multi-row writes inside `transaction()` either
  all land or none do. When False the engine falls back to its
  compensating re-derivation protocol.
- increment_spent should be atomic (UPDATE ... SET spent = spent + ?)
  where the backend can do it. The engine serializes per category anyway.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional
from uuid import UUID

from budget_ledger.models.ledger import (
    BudgetCategory,
    BudgetSettings,
    Expense,
    to_money,
)
from budget_ledger.models.audit import AuditEvent


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation (Google Sheets, PostgreSQL, etc.)
    must implement these methods. Rows are keyed by opaque string ids
    and scoped to an owner.
    """

    supports_transactions: bool = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Group writes so they commit together.

        Backends without transactions must not be asked for one.
        """
        raise StorageError(
            f"{type(self).__name__} does not support transactions"
        )
        yield  # pragma: no cover

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_settings(self, owner_id: str) -> Optional[BudgetSettings]:
        """Return the owner's settings row, or None if it was never created."""
        pass

    @abstractmethod
    async def save_settings(self, settings: BudgetSettings) -> BudgetSettings:
        """Insert or replace the owner's settings row."""
        pass

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_categories(self, owner_id: str) -> list[BudgetCategory]:
        """List every category of an owner."""
        pass

    @abstractmethod
    async def get_category(self, category_id: str) -> Optional[BudgetCategory]:
        """Retrieve a category by its ID."""
        pass

    @abstractmethod
    async def insert_categories(
        self,
        categories: list[BudgetCategory],
    ) -> list[BudgetCategory]:
        """
        Insert new categories.

        Raises:
            DuplicateError: If an owner already has a category of that name
        """
        pass

    @abstractmethod
    async def update_allocations(
        self,
        owner_id: str,
        allocations: dict[str, Decimal],
    ) -> list[BudgetCategory]:
        """
        Set allocated_amount for the given category ids.

        spent_amount is never touched. Returns the updated categories.
        """
        pass

    @abstractmethod
    async def increment_spent(
        self,
        category_id: str,
        delta: Decimal,
    ) -> BudgetCategory:
        """
        Add delta (possibly negative) to a category's spent_amount.

        Raises:
            RowNotFoundError: If the category doesn't exist
        """
        pass

    @abstractmethod
    async def set_spent(
        self,
        category_id: str,
        value: Decimal,
    ) -> BudgetCategory:
        """
        Overwrite a category's spent_amount.

        Raises:
            RowNotFoundError: If the category doesn't exist
        """
        pass

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_expense(self, expense: Expense) -> Expense:
        """Insert a new expense row."""
        pass

    @abstractmethod
    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        """Retrieve an expense by its ID."""
        pass

    @abstractmethod
    async def find_expense_by_idempotency_key(
        self,
        owner_id: str,
        idempotency_key: str,
    ) -> Optional[Expense]:
        """Find an owner's expense recorded under a client idempotency key."""
        pass

    @abstractmethod
    async def update_expense(self, expense: Expense) -> Expense:
        """
        Replace an existing expense row.

        Raises:
            RowNotFoundError: If the expense doesn't exist
        """
        pass

    @abstractmethod
    async def delete_expense(self, expense_id: str) -> bool:
        """Delete an expense. Returns False if it was already gone."""
        pass

    @abstractmethod
    async def list_expenses(
        self,
        owner_id: str,
        category_id: Optional[str] = None,
    ) -> list[Expense]:
        """List an owner's expenses, optionally for one category."""
        pass

    @abstractmethod
    async def delete_expenses(self, owner_id: str) -> int:
        """Delete every expense of an owner. Returns the number removed."""
        pass

    async def sum_expenses(
        self,
        owner_id: str,
        category_id: str,
    ) -> tuple[Decimal, int]:
        """
        Sum a category's expenses directly from the expense rows.

        Backends with a native SUM() should override this.

        Returns:
            (total, expense_count)
        """
        expenses = await self.list_expenses(owner_id, category_id=category_id)
        total = sum((e.amount for e in expenses), Decimal("0"))
        return to_money(total), len(expenses)


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
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events of one operation in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class RowNotFoundError(StorageError):
    """Row not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate row."""
    pass


class StorageConnectionError(StorageError):
    """Could not reach the storage backend."""
    pass
