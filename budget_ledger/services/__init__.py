"""Services package."""

from budget_ledger.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    RowNotFoundError,
    StorageConnectionError,
    StorageError,
)

__all__ = [
    "AuditStorageInterface",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "LedgerStorageInterface",
    "RowNotFoundError",
    "StorageConnectionError",
    "StorageError",
]
