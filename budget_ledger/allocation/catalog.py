"""
Category Catalog

The catalog is configuration, not code: an ordered list of
{name, weight} pairs loaded at startup whose weights sum to 100.
"""

import json
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from budget_ledger.errors import CatalogError
from budget_ledger.models.ledger import CatalogEntry


class Catalog(BaseModel):
    """An ordered, validated set of default categories."""

    entries: list[CatalogEntry] = Field(..., min_length=1)

    @model_validator(mode='after')
    def validate_entries(self) -> 'Catalog':
        names = [entry.name for entry in self.entries]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate catalog categories: {', '.join(duplicates)}")

        total = sum((entry.weight for entry in self.entries), Decimal("0"))
        if total != Decimal("100"):
            raise ValueError(f"Catalog weights must sum to 100, got {total}")
        return self

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def weight_for(self, name: str) -> Optional[Decimal]:
        """Weight of a catalog category, or None for categories outside the catalog."""
        for entry in self.entries:
            if entry.name == name:
                return entry.weight
        return None

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self.entries)


def parse_catalog(raw: Union[str, list]) -> Catalog:
    """
    Build a catalog from JSON text or an already-decoded list.

    Raises:
        CatalogError: If the data is not a valid catalog
    """
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError as e:
        raise CatalogError(f"Catalog is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise CatalogError("Catalog must be a list of {name, weight} objects")

    try:
        return Catalog(entries=data)
    except ValidationError as e:
        raise CatalogError(f"Invalid catalog: {e}") from e


def load_catalog(path: Union[str, Path]) -> Catalog:
    """
    Load the catalog file configured for this deployment.

    Raises:
        CatalogError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise CatalogError(f"Cannot read catalog file {path}: {e}") from e
    return parse_catalog(raw)
