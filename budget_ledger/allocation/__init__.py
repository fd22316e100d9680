"""Allocation policy and category catalog."""

from budget_ledger.allocation.catalog import Catalog, load_catalog, parse_catalog
from budget_ledger.allocation.policy import AllocationPolicy

__all__ = ["AllocationPolicy", "Catalog", "load_catalog", "parse_catalog"]
