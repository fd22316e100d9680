"""
In-Memory Storage Implementation

Used for tests, local development and as the default backend when no
external store is configured.

Writes made inside `transaction()` are journaled as per-field inverse
operations. If the block raises, the journal is replayed in reverse so
none of the block's writes stay visible. Inverses are field-level
(e.g. "subtract the delta again") so rolling back one owner's operation
never clobbers a concurrent write to another row.

Fault injection (`fail_next`, `slow_down`) lets tests simulate a store
that times out or fails between two writes of one operation.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from decimal import Decimal
from typing import AsyncIterator, Callable, Optional
from uuid import UUID

from budget_ledger.models.ledger import (
    BudgetCategory,
    BudgetSettings,
    Expense,
    to_money,
    utc_now,
)
from budget_ledger.models.audit import AuditEvent
from budget_ledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    RowNotFoundError,
    StorageConnectionError,
    StorageError,
)


_journal: ContextVar[Optional[list[Callable[[], None]]]] = ContextVar(
    "ledger_memory_journal", default=None
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """
    Dict-backed ledger storage.

    increment_spent is atomic: the read and the write happen without an
    await in between, so concurrent increments cannot interleave.
    """

    def __init__(self, transactional: bool = True):
        self.supports_transactions = transactional
        self._settings: dict[str, BudgetSettings] = {}
        self._categories: dict[str, BudgetCategory] = {}
        self._expenses: dict[str, Expense] = {}
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._delays: dict[str, float] = {}

    # -------------------------------------------------------------------------
    # Fault injection
    # -------------------------------------------------------------------------

    def fail_next(
        self,
        method: str,
        error: Optional[BaseException] = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of `method` raise `error`."""
        error = error or StorageConnectionError(f"{method}: store unavailable")
        self._failures[method].extend([error] * times)

    def slow_down(self, method: str, seconds: float) -> None:
        """Delay every call of `method` by `seconds`."""
        self._delays[method] = seconds

    def clear_faults(self) -> None:
        self._failures.clear()
        self._delays.clear()

    async def _checkpoint(self, method: str) -> None:
        delay = self._delays.get(method, 0)
        # Always yield so concurrent callers interleave as they would on a network store
        await asyncio.sleep(delay)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self.supports_transactions:
            raise StorageError("Transactions are disabled on this store")

        outer = _journal.get()
        if outer is not None:
            # Nested blocks join the outer transaction
            yield
            return

        journal: list[Callable[[], None]] = []
        token = _journal.set(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            raise
        finally:
            _journal.reset(token)

    def _record(self, undo: Callable[[], None]) -> None:
        journal = _journal.get()
        if journal is not None:
            journal.append(undo)

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def get_settings(self, owner_id: str) -> Optional[BudgetSettings]:
        await self._checkpoint("get_settings")
        settings = self._settings.get(owner_id)
        return settings.model_copy() if settings else None

    async def save_settings(self, settings: BudgetSettings) -> BudgetSettings:
        await self._checkpoint("save_settings")
        previous = self._settings.get(settings.owner_id)
        stored = settings.model_copy(update={"updated_at": utc_now()})
        self._settings[settings.owner_id] = stored

        def undo():
            if previous is None:
                self._settings.pop(settings.owner_id, None)
            else:
                self._settings[settings.owner_id] = previous

        self._record(undo)
        return stored.model_copy()

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def list_categories(self, owner_id: str) -> list[BudgetCategory]:
        await self._checkpoint("list_categories")
        return [
            c.model_copy()
            for c in self._categories.values()
            if c.owner_id == owner_id
        ]

    async def get_category(self, category_id: str) -> Optional[BudgetCategory]:
        await self._checkpoint("get_category")
        category = self._categories.get(category_id)
        return category.model_copy() if category else None

    async def insert_categories(
        self,
        categories: list[BudgetCategory],
    ) -> list[BudgetCategory]:
        await self._checkpoint("insert_categories")
        taken = {(c.owner_id, c.name) for c in self._categories.values()}
        for category in categories:
            key = (category.owner_id, category.name)
            if key in taken or category.id in self._categories:
                raise DuplicateError(
                    f"Category already exists for owner {category.owner_id}: {category.name}"
                )
            taken.add(key)

        for category in categories:
            self._categories[category.id] = category.model_copy()

        ids = [c.id for c in categories]

        def undo():
            for category_id in ids:
                self._categories.pop(category_id, None)

        self._record(undo)
        return [c.model_copy() for c in categories]

    async def update_allocations(
        self,
        owner_id: str,
        allocations: dict[str, Decimal],
    ) -> list[BudgetCategory]:
        await self._checkpoint("update_allocations")
        previous: dict[str, Decimal] = {}
        updated = []
        for category_id, amount in allocations.items():
            category = self._categories.get(category_id)
            if category is None or category.owner_id != owner_id:
                continue
            previous[category_id] = category.allocated_amount
            category = category.model_copy(update={
                "allocated_amount": to_money(amount),
                "updated_at": utc_now(),
            })
            self._categories[category_id] = category
            updated.append(category.model_copy())

        def undo():
            for category_id, amount in previous.items():
                if category_id in self._categories:
                    self._categories[category_id] = self._categories[category_id].model_copy(
                        update={"allocated_amount": amount}
                    )

        self._record(undo)
        return updated

    async def increment_spent(
        self,
        category_id: str,
        delta: Decimal,
    ) -> BudgetCategory:
        await self._checkpoint("increment_spent")
        category = self._categories.get(category_id)
        if category is None:
            raise RowNotFoundError(f"Category not found: {category_id}")
        delta = to_money(delta)
        category = category.model_copy(update={
            "spent_amount": to_money(category.spent_amount + delta),
            "updated_at": utc_now(),
        })
        self._categories[category_id] = category

        def undo():
            current = self._categories.get(category_id)
            if current is not None:
                self._categories[category_id] = current.model_copy(
                    update={"spent_amount": to_money(current.spent_amount - delta)}
                )

        self._record(undo)
        return category.model_copy()

    async def set_spent(
        self,
        category_id: str,
        value: Decimal,
    ) -> BudgetCategory:
        await self._checkpoint("set_spent")
        category = self._categories.get(category_id)
        if category is None:
            raise RowNotFoundError(f"Category not found: {category_id}")
        previous = category.spent_amount
        category = category.model_copy(update={
            "spent_amount": to_money(value),
            "updated_at": utc_now(),
        })
        self._categories[category_id] = category

        def undo():
            current = self._categories.get(category_id)
            if current is not None:
                self._categories[category_id] = current.model_copy(
                    update={"spent_amount": previous}
                )

        self._record(undo)
        return category.model_copy()

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def insert_expense(self, expense: Expense) -> Expense:
        await self._checkpoint("insert_expense")
        if expense.id in self._expenses:
            raise DuplicateError(f"Expense already exists: {expense.id}")
        self._expenses[expense.id] = expense.model_copy()
        self._record(lambda: self._expenses.pop(expense.id, None))
        return expense.model_copy()

    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        await self._checkpoint("get_expense")
        expense = self._expenses.get(expense_id)
        return expense.model_copy() if expense else None

    async def find_expense_by_idempotency_key(
        self,
        owner_id: str,
        idempotency_key: str,
    ) -> Optional[Expense]:
        await self._checkpoint("find_expense_by_idempotency_key")
        for expense in self._expenses.values():
            if expense.owner_id == owner_id and expense.idempotency_key == idempotency_key:
                return expense.model_copy()
        return None

    async def update_expense(self, expense: Expense) -> Expense:
        await self._checkpoint("update_expense")
        previous = self._expenses.get(expense.id)
        if previous is None:
            raise RowNotFoundError(f"Expense not found: {expense.id}")
        stored = expense.model_copy(update={"updated_at": utc_now()})
        self._expenses[expense.id] = stored

        def undo():
            self._expenses[expense.id] = previous

        self._record(undo)
        return stored.model_copy()

    async def delete_expense(self, expense_id: str) -> bool:
        await self._checkpoint("delete_expense")
        previous = self._expenses.pop(expense_id, None)
        if previous is None:
            return False

        def undo():
            self._expenses[expense_id] = previous

        self._record(undo)
        return True

    async def list_expenses(
        self,
        owner_id: str,
        category_id: Optional[str] = None,
    ) -> list[Expense]:
        await self._checkpoint("list_expenses")
        return [
            e.model_copy()
            for e in self._expenses.values()
            if e.owner_id == owner_id
            and (category_id is None or e.category_id == category_id)
        ]

    async def delete_expenses(self, owner_id: str) -> int:
        await self._checkpoint("delete_expenses")
        removed = {
            expense_id: expense
            for expense_id, expense in self._expenses.items()
            if expense.owner_id == owner_id
        }
        for expense_id in removed:
            del self._expenses[expense_id]

        def undo():
            self._expenses.update(removed)

        self._record(undo)
        return len(removed)

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def corrupt_spent(self, category_id: str, value: Decimal) -> None:
        """Overwrite spent_amount behind the engine's back (simulates drift)."""
        category = self._categories[category_id]
        self._categories[category_id] = category.model_copy(
            update={"spent_amount": to_money(value)}
        )


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]
