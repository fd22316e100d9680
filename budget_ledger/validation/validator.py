"""
Input Validation

DESIGN DECISION: Every client-supplied value is validated before the
engine touches storage.

- Amounts must be finite decimals with at most two decimal places
- Expense amounts must be strictly positive
- Total budgets and allocations must be zero or more
- Descriptions and category names must be non-empty after stripping
- Dates may be date objects or ISO-8601 strings

IMPORTANT: Validation NEVER silently fixes values (no rounding of
"12.345" to "12.35"). It rejects them with a ValidationError naming the
offending field, and the engine makes no state change.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from budget_ledger.errors import ValidationError
from budget_ledger.models.ledger import CENT


AmountInput = Union[Decimal, int, float, str]
DateInput = Union[date, str]

MAX_DESCRIPTION_LENGTH = 500
MAX_CATEGORY_NAME_LENGTH = 100


class LedgerValidator:
    """
    Normalizes and validates operation inputs.

    Each method returns the normalized value or raises ValidationError.
    """

    def parse_amount(self, value: AmountInput, field: str = "amount") -> Decimal:
        """Parse a money value to a Decimal with two decimal places."""
        if isinstance(value, bool) or value is None:
            raise ValidationError(f"{field} must be a number", field=field)
        try:
            amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"{field} is not a valid amount: {value!r}", field=field)

        if not amount.is_finite():
            raise ValidationError(f"{field} must be finite", field=field)
        if amount != amount.quantize(CENT):
            raise ValidationError(
                f"{field} has more than two decimal places: {value}",
                field=field,
            )
        return amount.quantize(CENT)

    def validate_expense_amount(self, value: AmountInput) -> Decimal:
        amount = self.parse_amount(value, field="amount")
        if amount <= 0:
            raise ValidationError("amount must be greater than zero", field="amount")
        return amount

    def validate_total_budget(self, value: AmountInput) -> Decimal:
        total = self.parse_amount(value, field="total_budget")
        if total < 0:
            raise ValidationError("total_budget cannot be negative", field="total_budget")
        return total

    def validate_allocation(self, value: AmountInput) -> Decimal:
        allocated = self.parse_amount(value, field="allocated_amount")
        if allocated < 0:
            raise ValidationError(
                "allocated_amount cannot be negative",
                field="allocated_amount",
            )
        return allocated

    def validate_description(self, value: Optional[str]) -> str:
        description = (value or "").strip()
        if not description:
            raise ValidationError("description is required", field="description")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"description is longer than {MAX_DESCRIPTION_LENGTH} characters",
                field="description",
            )
        return description

    def validate_category_name(self, value: Optional[str]) -> str:
        name = (value or "").strip()
        if not name:
            raise ValidationError("category name is required", field="name")
        if len(name) > MAX_CATEGORY_NAME_LENGTH:
            raise ValidationError(
                f"category name is longer than {MAX_CATEGORY_NAME_LENGTH} characters",
                field="name",
            )
        return name

    def validate_date(self, value: DateInput, field: str = "expense_date") -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip())
            except ValueError:
                raise ValidationError(f"{field} is not an ISO date: {value!r}", field=field)
        raise ValidationError(f"{field} must be a date", field=field)

    def validate_id(self, value: Optional[str], field: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} is required", field=field)
        return value.strip()

    def validate_idempotency_key(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        key = value.strip()
        if not key:
            raise ValidationError("idempotency_key cannot be blank", field="idempotency_key")
        if len(key) > 200:
            raise ValidationError("idempotency_key is too long", field="idempotency_key")
        return key
