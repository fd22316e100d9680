"""
Allocation Policy

Turns a total budget into per-category allocated amounts using the
catalog's percentage weights, and seeds catalog categories an owner
does not have yet.

allocated_amount is a cached projection: it is refreshed here, on seeding
and on "set total budget", and nowhere else.
"""

from decimal import Decimal
from typing import Optional

import structlog

from budget_ledger.allocation.catalog import Catalog
from budget_ledger.errors import NotFoundError
from budget_ledger.models.ledger import BudgetCategory, to_money
from budget_ledger.services.storage import DuplicateError, LedgerStorageInterface


logger = structlog.get_logger(__name__)


class AllocationPolicy:
    """
    Percentage-based allocation backed by a static catalog.

    Categories outside the catalog keep whatever allocation they were
    created with.
    """

    def __init__(self, storage: LedgerStorageInterface, catalog: Catalog):
        self._storage = storage
        self._catalog = catalog

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @staticmethod
    def allocation_for(total_budget: Decimal, weight: Decimal) -> Decimal:
        """total_budget * weight / 100, rounded to cents."""
        return to_money(Decimal(total_budget) * Decimal(weight) / Decimal("100"))

    async def seed_missing_categories(
        self,
        owner_id: str,
        total_budget: Optional[Decimal] = None,
    ) -> list[BudgetCategory]:
        """
        Create every catalog category the owner is missing.

        Idempotent: once all catalog categories exist, nothing is created.

        Args:
            owner_id: Owner whose ledger to seed
            total_budget: Current total; read from storage when omitted

        Returns:
            The categories created by this call (empty if none were missing)
        """
        if total_budget is None:
            settings = await self._storage.get_settings(owner_id)
            if settings is None:
                raise NotFoundError("owner", owner_id)
            total_budget = settings.total_budget

        existing = {c.name for c in await self._storage.list_categories(owner_id)}
        missing = [
            BudgetCategory(
                owner_id=owner_id,
                name=entry.name,
                allocated_amount=self.allocation_for(total_budget, entry.weight),
                spent_amount=Decimal("0"),
            )
            for entry in self._catalog.entries
            if entry.name not in existing
        ]
        if not missing:
            return []

        try:
            created = await self._storage.insert_categories(missing)
        except DuplicateError:
            # Another session seeded first; the owner now has the catalog
            logger.info("seed_race_lost", owner_id=owner_id)
            return []

        logger.info(
            "categories_seeded",
            owner_id=owner_id,
            categories=[c.name for c in created],
        )
        return created

    async def reallocate(
        self,
        owner_id: str,
        new_total_budget: Decimal,
    ) -> list[BudgetCategory]:
        """
        Recompute allocated_amount of every catalog-backed category.

        spent_amount is never touched.

        Returns:
            All of the owner's categories after reallocation
        """
        categories = await self._storage.list_categories(owner_id)

        allocations = {}
        for category in categories:
            weight = self._catalog.weight_for(category.name)
            if weight is not None:
                allocations[category.id] = self.allocation_for(new_total_budget, weight)

        updated = {}
        if allocations:
            updated = {
                c.id: c
                for c in await self._storage.update_allocations(owner_id, allocations)
            }

        return [updated.get(c.id, c) for c in categories]
