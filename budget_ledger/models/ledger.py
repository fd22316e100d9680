"""
Core Data Models for the Budget Ledger

These models define the strict schemas for everything the ledger stores
or hands back to the dashboard:
1. BudgetSettings - one total budget per owner
2. BudgetCategory - a named spending bucket with allocated/spent aggregates
3. Expense - a single spend recorded against a category
4. Read models - snapshots, summaries and reconciliation results

DESIGN DECISION: Amounts are Decimal quantized to cents everywhere.
Float arithmetic would make the sum invariant (spent == sum of expenses)
unverifiable by exact comparison.
"""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)


CENT = Decimal("0.01")

Money = Annotated[Decimal, Field(decimal_places=2)]


def to_money(value) -> Decimal:
    """Convert an int/str/float/Decimal to a cent-quantized Decimal."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def new_id() -> str:
    """Opaque string id for ledger rows."""
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CATALOG
# =============================================================================

class CatalogEntry(BaseModel):
    """
    One default category and its share of the total budget.

    Weights are percentages; a full catalog sums to 100.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Category name"
    )
    weight: Decimal = Field(
        ...,
        gt=0,
        le=100,
        description="Percentage of the total budget"
    )


# =============================================================================
# LEDGER ROWS
# =============================================================================

class BudgetSettings(BaseModel):
    """
    The owner's total event budget.

    Created with a default value on first access, changed only by an
    explicit "set total budget", never deleted while the owner exists.
    """

    owner_id: str = Field(
        ...,
        min_length=1,
        description="Owner (planner) this budget belongs to"
    )
    total_budget: Money = Field(
        ...,
        ge=0,
        description="Total event budget"
    )
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('total_budget', mode='before')
    @classmethod
    def quantize_total(cls, v):
        return to_money(v)


class BudgetCategory(BaseModel):
    """
    A named spending bucket.

    allocated_amount is a cached projection of total_budget * weight / 100,
    refreshed only by seeding and "set total budget".
    spent_amount must equal the sum of the category's expenses. It may
    exceed allocated_amount: overspend is surfaced, not blocked.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(
        default_factory=new_id,
        description="Unique category ID"
    )
    owner_id: str = Field(..., min_length=1)
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Category name (unique per owner)"
    )
    allocated_amount: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Share of the total budget assigned to this category"
    )
    # Unconstrained: a drifted value must be loadable so reconciliation can repair it
    spent_amount: Money = Field(
        default=Decimal("0.00"),
        description="Sum of the category's expenses"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('allocated_amount', 'spent_amount', mode='before')
    @classmethod
    def quantize_amounts(cls, v):
        return to_money(v)

    @computed_field
    @property
    def remaining_amount(self) -> Decimal:
        return self.allocated_amount - self.spent_amount

    @computed_field
    @property
    def is_overspent(self) -> bool:
        return self.spent_amount > self.allocated_amount

    @computed_field
    @property
    def utilization_percent(self) -> Decimal:
        """Spent as a percentage of allocated (0 when nothing is allocated)."""
        if self.allocated_amount <= 0:
            return Decimal("0.0")
        return (self.spent_amount / self.allocated_amount * 100).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )


class Expense(BaseModel):
    """
    A single expense recorded against one of the owner's categories.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(
        default_factory=new_id,
        description="Unique expense ID"
    )
    owner_id: str = Field(..., min_length=1)
    category_id: str = Field(
        ...,
        min_length=1,
        description="Category this expense is charged to"
    )
    description: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="What the money was spent on"
    )
    amount: Money = Field(
        ...,
        gt=0,
        description="Amount spent"
    )
    expense_date: date = Field(
        ...,
        description="Date of the expense"
    )
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Client-supplied key that makes re-submission safe"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('amount', mode='before')
    @classmethod
    def quantize_amount(cls, v):
        return to_money(v)


# =============================================================================
# READ MODELS
# =============================================================================

class LedgerSnapshot(BaseModel):
    """
    Everything a client needs to render the budget panel.

    Pull-based: clients fetch a fresh snapshot whenever the change
    notifier signals. It may be slightly stale relative to an in-flight write.
    """

    settings: BudgetSettings
    categories: list[BudgetCategory] = Field(default_factory=list)
    expenses: list[Expense] = Field(default_factory=list)
    pending_reconciliation: list[str] = Field(
        default_factory=list,
        description="Category ids flagged as needing reconciliation"
    )
    taken_at: datetime = Field(default_factory=utc_now)

    def category_by_id(self, category_id: str) -> Optional[BudgetCategory]:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    def category_by_name(self, name: str) -> Optional[BudgetCategory]:
        for category in self.categories:
            if category.name == name:
                return category
        return None

    def expenses_for(self, category_id: str) -> list[Expense]:
        return [e for e in self.expenses if e.category_id == category_id]


class ReconciliationResult(BaseModel):
    """Outcome of re-deriving one category's spent_amount from its expenses."""

    category_id: str
    owner_id: str
    previous_spent: Money
    recomputed_spent: Money
    expense_count: int = Field(ge=0)
    reconciled_at: datetime = Field(default_factory=utc_now)

    @property
    def drift(self) -> Decimal:
        return self.previous_spent - self.recomputed_spent

    @property
    def corrected(self) -> bool:
        """True if the stored aggregate was wrong and has been rewritten."""
        return self.drift != 0


class CategorySummary(BaseModel):
    """Per-category figures shown in the dashboard charts."""

    category_id: str
    name: str
    allocated_amount: Money
    spent_amount: Money
    remaining_amount: Money
    utilization_percent: Decimal
    is_overspent: bool
    expense_count: int = Field(ge=0)


class BudgetSummary(BaseModel):
    """
    Header figures of the budget panel.

    remaining_budget is total_budget minus total_spent, and may go negative.
    """

    owner_id: str
    total_budget: Money
    total_allocated: Money
    total_spent: Money
    remaining_budget: Money
    categories: list[CategorySummary] = Field(default_factory=list)

    @property
    def overspent_categories(self) -> list[str]:
        return [c.name for c in self.categories if c.is_overspent]

    @property
    def is_over_budget(self) -> bool:
        return self.total_spent > self.total_budget
