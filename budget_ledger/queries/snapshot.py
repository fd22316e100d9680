"""
Snapshot Reader

DESIGN DECISION: Reads are DETERMINISTIC and never take category locks.
A snapshot is assembled from whatever the store returns right now, so it
may lag an in-flight write by one operation. The change notifier tells
clients when to fetch another one.

Nothing here computes an aggregate that the store does not already hold,
except the dashboard summary which is derived purely from the snapshot.
"""

from decimal import Decimal
from typing import Iterable

from budget_ledger.errors import NotFoundError
from budget_ledger.models.ledger import (
    BudgetSummary,
    CategorySummary,
    LedgerSnapshot,
    to_money,
)
from budget_ledger.services.storage import LedgerStorageInterface


class SnapshotReader:
    """
    Builds LedgerSnapshot read models from storage.

    GUARANTEES:
    - Categories are ordered by name
    - Expenses are ordered newest first (expense_date, then created_at)
    - Only the requested owner's rows are returned
    """

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def read(
        self,
        owner_id: str,
        pending_reconciliation: Iterable[str] = (),
    ) -> LedgerSnapshot:
        """
        Read the owner's settings, categories and expenses.

        Raises:
            NotFoundError: If the owner has no ledger yet
        """
        settings = await self._storage.get_settings(owner_id)
        if settings is None:
            raise NotFoundError("owner", owner_id)

        categories = await self._storage.list_categories(owner_id)
        expenses = await self._storage.list_expenses(owner_id)

        category_ids = {c.id for c in categories}
        pending = sorted(cid for cid in set(pending_reconciliation) if cid in category_ids)

        return LedgerSnapshot(
            settings=settings,
            categories=sorted(categories, key=lambda c: c.name),
            expenses=sorted(
                expenses,
                key=lambda e: (e.expense_date, e.created_at),
                reverse=True,
            ),
            pending_reconciliation=pending,
        )


def summarize_snapshot(snapshot: LedgerSnapshot) -> BudgetSummary:
    """Header and per-category figures for the dashboard."""
    counts: dict[str, int] = {}
    for expense in snapshot.expenses:
        counts[expense.category_id] = counts.get(expense.category_id, 0) + 1

    categories = [
        CategorySummary(
            category_id=c.id,
            name=c.name,
            allocated_amount=c.allocated_amount,
            spent_amount=c.spent_amount,
            remaining_amount=c.remaining_amount,
            utilization_percent=c.utilization_percent,
            is_overspent=c.is_overspent,
            expense_count=counts.get(c.id, 0),
        )
        for c in snapshot.categories
    ]

    total_allocated = sum((c.allocated_amount for c in snapshot.categories), Decimal("0"))
    total_spent = sum((c.spent_amount for c in snapshot.categories), Decimal("0"))
    total_budget = snapshot.settings.total_budget

    return BudgetSummary(
        owner_id=snapshot.settings.owner_id,
        total_budget=total_budget,
        total_allocated=to_money(total_allocated),
        total_spent=to_money(total_spent),
        remaining_budget=to_money(total_budget - total_spent),
        categories=categories,
    )
