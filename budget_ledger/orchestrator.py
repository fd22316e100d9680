"""
Main Orchestrator for the Budget Ledger

Ties the components together:
1. Storage (in-memory or Google Sheets, per LEDGER_STORAGE_BACKEND)
2. Audit logger (persisting to the same backend when it has an audit sheet)
3. Catalog + allocation policy
4. Change notifier
5. Reconciliation engine, the only writer of the ledger

DESIGN DECISION: Clients (the Streamlit dashboard, tests, scripts) never
build these pieces themselves. They call create_app_components() and talk
to the engine it returns.
"""

from dataclasses import dataclass
from typing import Literal, Optional

import structlog

from budget_ledger.allocation import AllocationPolicy, Catalog, load_catalog
from budget_ledger.audit import AuditLogger
from budget_ledger.config import LedgerSettings, get_settings
from budget_ledger.notifier import ChangeNotifier
from budget_ledger.reconciliation import ReconciliationEngine
from budget_ledger.services.storage import (
    AuditStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
)


logger = structlog.get_logger(__name__)


@dataclass
class LedgerComponents:
    """Everything a client needs, wired together."""

    engine: ReconciliationEngine
    notifier: ChangeNotifier
    storage: LedgerStorageInterface
    audit_logger: AuditLogger
    catalog: Catalog
    settings: LedgerSettings
    sheets_client: Optional[GoogleSheetsClient] = None


def create_app_components(
    backend: Optional[Literal["memory", "google_sheets"]] = None,
    ledger_settings: Optional[LedgerSettings] = None,
    catalog: Optional[Catalog] = None,
) -> LedgerComponents:
    """
    Factory function to create all application components.

    Args:
        backend: Storage backend; defaults to LEDGER_STORAGE_BACKEND.
                 If Google Sheets cannot be configured, falls back to
                 in-memory storage with a warning.
        ledger_settings: Engine settings; loaded from the environment if omitted.
        catalog: Category catalog; loaded from the configured file if omitted.

    Returns:
        LedgerComponents
    """
    ledger_settings = ledger_settings or get_settings().ledger
    backend = backend or ledger_settings.storage_backend
    catalog = catalog or load_catalog(ledger_settings.resolved_catalog_path)

    sheets_client = None
    storage: LedgerStorageInterface
    audit_storage: AuditStorageInterface

    if backend == "google_sheets":
        try:
            sheets_client = GoogleSheetsClient()
            storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_storage = GoogleSheetsAuditStorage(sheets_client)
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("google_sheets_unavailable", error=str(e), fallback="memory")
            sheets_client = None
            storage = InMemoryLedgerStorage()
            audit_storage = InMemoryAuditStorage()
    else:
        storage = InMemoryLedgerStorage()
        audit_storage = InMemoryAuditStorage()

    audit_logger = AuditLogger(audit_storage)
    notifier = ChangeNotifier(coalesce_seconds=ledger_settings.notify_coalesce_seconds)
    policy = AllocationPolicy(storage, catalog)
    engine = ReconciliationEngine(
        storage=storage,
        policy=policy,
        notifier=notifier,
        audit_logger=audit_logger,
        settings=ledger_settings,
    )

    logger.info(
        "ledger_components_created",
        backend="google_sheets" if sheets_client else "memory",
        transactional=storage.supports_transactions,
        catalog=catalog.names,
    )

    return LedgerComponents(
        engine=engine,
        notifier=notifier,
        storage=storage,
        audit_logger=audit_logger,
        catalog=catalog,
        settings=ledger_settings,
        sheets_client=sheets_client,
    )
