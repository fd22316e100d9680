"""
Ledger Error Taxonomy

Every failure the engine reports to a caller is one of these.

- ValidationError / NotFoundError: local and terminal, never mutate state.
- ConflictError: the caller should refetch and retry.
- StorageUnavailableError: the store failed mid-operation. Raised only after
  the affected categories were re-derived or flagged for the next sweep.
- IntegrityViolation: drift found during a sweep. Recorded in the audit
  trail and corrected, never raised to a caller.
"""

from decimal import Decimal
from typing import Iterable, Optional


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ValidationError(LedgerError):
    """Bad input (negative amount, negative budget, duplicate category name...)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(LedgerError):
    """Unknown category, expense or owner."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(LedgerError):
    """The target changed underneath the caller (e.g. concurrently deleted)."""
    pass


class StorageUnavailableError(LedgerError):
    """
    The backing store timed out or was unreachable.

    Always retryable from the caller's side. `flagged_categories` lists the
    categories that could not be repaired and await the next sweep.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        flagged_categories: Iterable[str] = (),
    ):
        super().__init__(message)
        self.flagged_categories = sorted(set(flagged_categories))


class IntegrityViolation(LedgerError):
    """A category's spent_amount disagreed with the sum of its expenses."""

    def __init__(
        self,
        category_id: str,
        recorded: Decimal,
        derived: Decimal,
    ):
        super().__init__(
            f"Category {category_id} recorded {recorded} spent, "
            f"expenses sum to {derived}"
        )
        self.category_id = category_id
        self.recorded = recorded
        self.derived = derived

    @property
    def drift(self) -> Decimal:
        return self.recorded - self.derived


class CatalogError(LedgerError):
    """The category catalog configuration is malformed."""
    pass
