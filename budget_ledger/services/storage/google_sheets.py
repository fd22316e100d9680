"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is offered as a durable backend because:
1. Planners can view their budget directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- No transactions: supports_transactions is False, so the engine uses its
  compensating re-derivation protocol on partial failure
- increment_spent is a read-modify-write of one cell; the engine's
  per-category locks keep it from losing updates within one process
- Limited query capabilities (we filter in Python)

The implementation follows the abstract interface, so we can swap
to PostgreSQL/SQLite later without changing the engine.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from budget_ledger.config import GoogleSheetsSettings, get_settings
from budget_ledger.models.ledger import (
    BudgetCategory,
    BudgetSettings,
    Expense,
    to_money,
    utc_now,
)
from budget_ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from budget_ledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    RowNotFoundError,
    StorageConnectionError,
    StorageError,
)


SETTINGS_COLUMNS = [
    "owner_id",
    "total_budget",
    "updated_at",
]

CATEGORY_COLUMNS = [
    "id",
    "owner_id",
    "name",
    "allocated_amount",
    "spent_amount",
    "created_at",
    "updated_at",
]

EXPENSE_COLUMNS = [
    "id",
    "owner_id",
    "category_id",
    "description",
    "amount",
    "expense_date",
    "idempotency_key",
    "created_at",
    "updated_at",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "owner_id",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

# Column positions used when updating single cells (1-based, as gspread expects)
CATEGORY_ALLOCATED_COL = CATEGORY_COLUMNS.index("allocated_amount") + 1
CATEGORY_SPENT_COL = CATEGORY_COLUMNS.index("spent_amount") + 1
CATEGORY_UPDATED_COL = CATEGORY_COLUMNS.index("updated_at") + 1

sheets_retry = retry(
    retry=retry_if_not_exception_type((RowNotFoundError, DuplicateError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _safe_get(row: list, index: int, default: str = "") -> str:
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and creates missing worksheets with headers.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @sheets_retry
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_settings_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.settings_sheet_name, SETTINGS_COLUMNS, 200)

    def get_categories_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.categories_sheet_name, CATEGORY_COLUMNS, 1000)

    def get_expenses_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.expenses_sheet_name, EXPENSE_COLUMNS, 5000)

    def get_audit_sheet(self) -> gspread.Worksheet:
        # More rows for audit log
        return self._get_or_create(self._settings.audit_sheet_name, AUDIT_COLUMNS, 5000)


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of ledger storage.

    One worksheet per table, one row per record, header in row 1.
    """

    supports_transactions = False

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _settings_to_row(settings: BudgetSettings) -> list:
        return [
            settings.owner_id,
            str(settings.total_budget),
            settings.updated_at.isoformat(),
        ]

    @staticmethod
    def _row_to_settings(row: list) -> BudgetSettings:
        return BudgetSettings(
            owner_id=_safe_get(row, 0),
            total_budget=Decimal(_safe_get(row, 1, "0")),
            updated_at=datetime.fromisoformat(_safe_get(row, 2)) if _safe_get(row, 2) else utc_now(),
        )

    @staticmethod
    def _category_to_row(category: BudgetCategory) -> list:
        return [
            category.id,
            category.owner_id,
            category.name,
            str(category.allocated_amount),
            str(category.spent_amount),
            category.created_at.isoformat(),
            category.updated_at.isoformat(),
        ]

    @staticmethod
    def _row_to_category(row: list) -> BudgetCategory:
        return BudgetCategory(
            id=_safe_get(row, 0),
            owner_id=_safe_get(row, 1),
            name=_safe_get(row, 2),
            allocated_amount=Decimal(_safe_get(row, 3, "0")),
            spent_amount=Decimal(_safe_get(row, 4, "0")),
            created_at=datetime.fromisoformat(_safe_get(row, 5)),
            updated_at=datetime.fromisoformat(_safe_get(row, 6)),
        )

    @staticmethod
    def _expense_to_row(expense: Expense) -> list:
        return [
            expense.id,
            expense.owner_id,
            expense.category_id,
            expense.description,
            str(expense.amount),
            expense.expense_date.isoformat(),
            expense.idempotency_key or "",
            expense.created_at.isoformat(),
            expense.updated_at.isoformat(),
        ]

    @staticmethod
    def _row_to_expense(row: list) -> Expense:
        return Expense(
            id=_safe_get(row, 0),
            owner_id=_safe_get(row, 1),
            category_id=_safe_get(row, 2),
            description=_safe_get(row, 3),
            amount=Decimal(_safe_get(row, 4)),
            expense_date=date.fromisoformat(_safe_get(row, 5)),
            idempotency_key=_safe_get(row, 6) or None,
            created_at=datetime.fromisoformat(_safe_get(row, 7)),
            updated_at=datetime.fromisoformat(_safe_get(row, 8)),
        )

    @staticmethod
    def _find_row(all_rows: list[list], key: str, column: int = 0) -> Optional[tuple[int, list]]:
        """Return (sheet_row_number, row) for the first row whose column matches key."""
        for idx, row in enumerate(all_rows[1:], start=2):  # Row 1 is the header
            if row and len(row) > column and row[column] == key:
                return idx, row
        return None

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    @sheets_retry
    async def get_settings(self, owner_id: str) -> Optional[BudgetSettings]:
        try:
            all_rows = self._client.get_settings_sheet().get_all_values()
            found = self._find_row(all_rows, owner_id)
            return self._row_to_settings(found[1]) if found else None
        except Exception as e:
            raise StorageError(f"Failed to get settings: {e}")

    @sheets_retry
    async def save_settings(self, settings: BudgetSettings) -> BudgetSettings:
        try:
            sheet = self._client.get_settings_sheet()
            stored = settings.model_copy(update={"updated_at": utc_now()})
            row = self._settings_to_row(stored)
            found = self._find_row(sheet.get_all_values(), settings.owner_id)
            if found:
                sheet.update(
                    range_name=f"A{found[0]}:C{found[0]}",
                    values=[row],
                    value_input_option="RAW",
                )
            else:
                sheet.append_row(row, value_input_option="RAW")
            return stored
        except Exception as e:
            raise StorageError(f"Failed to save settings: {e}")

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    @sheets_retry
    async def list_categories(self, owner_id: str) -> list[BudgetCategory]:
        try:
            all_rows = self._client.get_categories_sheet().get_all_values()[1:]
            categories = []
            for row in all_rows:
                if not row or not row[0]:  # Skip empty rows
                    continue
                if _safe_get(row, 1) != owner_id:
                    continue
                categories.append(self._row_to_category(row))
            return categories
        except Exception as e:
            raise StorageError(f"Failed to list categories: {e}")

    @sheets_retry
    async def get_category(self, category_id: str) -> Optional[BudgetCategory]:
        try:
            all_rows = self._client.get_categories_sheet().get_all_values()
            found = self._find_row(all_rows, category_id)
            return self._row_to_category(found[1]) if found else None
        except Exception as e:
            raise StorageError(f"Failed to get category: {e}")

    async def insert_categories(
        self,
        categories: list[BudgetCategory],
    ) -> list[BudgetCategory]:
        # Not retried: a retry after a partial append would duplicate rows
        try:
            sheet = self._client.get_categories_sheet()
            existing = {
                (_safe_get(row, 1), _safe_get(row, 2))
                for row in sheet.get_all_values()[1:]
                if row
            }
            for category in categories:
                if (category.owner_id, category.name) in existing:
                    raise DuplicateError(
                        f"Category already exists for owner {category.owner_id}: {category.name}"
                    )
            sheet.append_rows(
                [self._category_to_row(c) for c in categories],
                value_input_option="RAW",
            )
            return categories
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to insert categories: {e}")

    @sheets_retry
    async def update_allocations(
        self,
        owner_id: str,
        allocations: dict[str, Decimal],
    ) -> list[BudgetCategory]:
        try:
            sheet = self._client.get_categories_sheet()
            all_rows = sheet.get_all_values()
            now = utc_now().isoformat()
            updated = []
            for category_id, amount in allocations.items():
                found = self._find_row(all_rows, category_id)
                if not found or _safe_get(found[1], 1) != owner_id:
                    continue
                idx, row = found
                sheet.update_cell(idx, CATEGORY_ALLOCATED_COL, str(to_money(amount)))
                sheet.update_cell(idx, CATEGORY_UPDATED_COL, now)
                category = self._row_to_category(row)
                updated.append(category.model_copy(update={
                    "allocated_amount": to_money(amount),
                }))
            return updated
        except Exception as e:
            raise StorageError(f"Failed to update allocations: {e}")

    async def increment_spent(
        self,
        category_id: str,
        delta: Decimal,
    ) -> BudgetCategory:
        # Not retried: re-applying a delta that did land would double count
        try:
            sheet = self._client.get_categories_sheet()
            found = self._find_row(sheet.get_all_values(), category_id)
            if not found:
                raise RowNotFoundError(f"Category not found: {category_id}")
            idx, row = found
            category = self._row_to_category(row)
            new_spent = to_money(category.spent_amount + delta)
            sheet.update_cell(idx, CATEGORY_SPENT_COL, str(new_spent))
            sheet.update_cell(idx, CATEGORY_UPDATED_COL, utc_now().isoformat())
            return category.model_copy(update={"spent_amount": new_spent})
        except RowNotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to increment spent amount: {e}")

    @sheets_retry
    async def set_spent(
        self,
        category_id: str,
        value: Decimal,
    ) -> BudgetCategory:
        try:
            sheet = self._client.get_categories_sheet()
            found = self._find_row(sheet.get_all_values(), category_id)
            if not found:
                raise RowNotFoundError(f"Category not found: {category_id}")
            idx, row = found
            sheet.update_cell(idx, CATEGORY_SPENT_COL, str(to_money(value)))
            sheet.update_cell(idx, CATEGORY_UPDATED_COL, utc_now().isoformat())
            return self._row_to_category(row).model_copy(
                update={"spent_amount": to_money(value)}
            )
        except RowNotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to set spent amount: {e}")

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def insert_expense(self, expense: Expense) -> Expense:
        try:
            sheet = self._client.get_expenses_sheet()
            sheet.append_row(self._expense_to_row(expense), value_input_option="RAW")
            return expense
        except Exception as e:
            raise StorageError(f"Failed to insert expense: {e}")

    @sheets_retry
    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        try:
            all_rows = self._client.get_expenses_sheet().get_all_values()
            found = self._find_row(all_rows, expense_id)
            return self._row_to_expense(found[1]) if found else None
        except Exception as e:
            raise StorageError(f"Failed to get expense: {e}")

    @sheets_retry
    async def find_expense_by_idempotency_key(
        self,
        owner_id: str,
        idempotency_key: str,
    ) -> Optional[Expense]:
        try:
            all_rows = self._client.get_expenses_sheet().get_all_values()[1:]
            for row in all_rows:
                if _safe_get(row, 1) == owner_id and _safe_get(row, 6) == idempotency_key:
                    return self._row_to_expense(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to look up idempotency key: {e}")

    @sheets_retry
    async def update_expense(self, expense: Expense) -> Expense:
        try:
            sheet = self._client.get_expenses_sheet()
            found = self._find_row(sheet.get_all_values(), expense.id)
            if not found:
                raise RowNotFoundError(f"Expense not found: {expense.id}")
            idx, _ = found
            stored = expense.model_copy(update={"updated_at": utc_now()})
            sheet.update(
                range_name=f"A{idx}:I{idx}",
                values=[self._expense_to_row(stored)],
                value_input_option="RAW",
            )
            return stored
        except RowNotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update expense: {e}")

    @sheets_retry
    async def delete_expense(self, expense_id: str) -> bool:
        try:
            sheet = self._client.get_expenses_sheet()
            found = self._find_row(sheet.get_all_values(), expense_id)
            if not found:
                return False
            sheet.delete_rows(found[0])
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete expense: {e}")

    @sheets_retry
    async def list_expenses(
        self,
        owner_id: str,
        category_id: Optional[str] = None,
    ) -> list[Expense]:
        try:
            all_rows = self._client.get_expenses_sheet().get_all_values()[1:]
            expenses = []
            for row in all_rows:
                if not row or not row[0]:
                    continue
                if _safe_get(row, 1) != owner_id:
                    continue
                if category_id and _safe_get(row, 2) != category_id:
                    continue
                expenses.append(self._row_to_expense(row))
            return expenses
        except Exception as e:
            raise StorageError(f"Failed to list expenses: {e}")

    @sheets_retry
    async def delete_expenses(self, owner_id: str) -> int:
        try:
            sheet = self._client.get_expenses_sheet()
            all_rows = sheet.get_all_values()
            matches = [
                idx
                for idx, row in enumerate(all_rows[1:], start=2)
                if _safe_get(row, 1) == owner_id
            ]
            # Bottom-up so earlier row numbers stay valid
            for idx in reversed(matches):
                sheet.delete_rows(idx)
            return len(matches)
        except Exception as e:
            raise StorageError(f"Failed to delete expenses: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_safe_get(row, 0)),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            owner_id=_safe_get(row, 4) or None,
            entity_type=_safe_get(row, 5) or None,
            entity_id=_safe_get(row, 6) or None,
            correlation_id=UUID(_safe_get(row, 7)) if _safe_get(row, 7) else None,
            description=_safe_get(row, 8),
            details=json.loads(_safe_get(row, 9)) if _safe_get(row, 9) else {},
            error_message=_safe_get(row, 10) or None,
            is_user_action=_safe_get(row, 11).lower() == "true",
        )

    def _all_events(self) -> list[AuditEvent]:
        events = []
        for row in self._client.get_audit_sheet().get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, json.JSONDecodeError):
                continue  # Skip malformed rows
        return events

    @sheets_retry
    async def append_event(self, event: AuditEvent) -> bool:
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = [e for e in self._all_events() if e.correlation_id == correlation_id]
            events.sort(key=lambda e: e.timestamp)
            return events
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._all_events()
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
            events.sort(key=lambda e: e.timestamp)
            return events
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = self._all_events()
            events.sort(key=lambda e: e.timestamp, reverse=True)
            return events[:limit]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
