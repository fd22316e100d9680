"""
Shared fixtures.

Everything runs against the in-memory store; no test touches Google Sheets
over the network.
"""

from decimal import Decimal

import pytest

from budget_ledger.allocation import AllocationPolicy, load_catalog
from budget_ledger.audit import AuditLogger
from budget_ledger.config import DEFAULT_CATALOG_PATH, LedgerSettings
from budget_ledger.notifier import ChangeNotifier
from budget_ledger.reconciliation import ReconciliationEngine
from budget_ledger.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage


OWNER = "planner-1"
OTHER_OWNER = "planner-2"


@pytest.fixture
def catalog():
    return load_catalog(DEFAULT_CATALOG_PATH)


@pytest.fixture
def ledger_settings():
    """Fast timeouts and no retry backoff so failure paths finish quickly."""
    return LedgerSettings(
        default_total_budget=Decimal("100000"),
        store_timeout_seconds=1.0,
        reconcile_retry_attempts=3,
        reconcile_retry_min_wait=0,
        reconcile_retry_max_wait=0,
        notify_coalesce_seconds=0.01,
    )


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
async def notifier():
    notifier = ChangeNotifier(coalesce_seconds=0.01)
    yield notifier
    await notifier.close()


@pytest.fixture
def make_engine(catalog, ledger_settings, audit_storage, notifier):
    """Build an engine over any store (transactional or not)."""

    def _make(storage):
        return ReconciliationEngine(
            storage=storage,
            policy=AllocationPolicy(storage, catalog),
            notifier=notifier,
            audit_logger=AuditLogger(audit_storage),
            settings=ledger_settings,
        )

    return _make


@pytest.fixture
def engine(make_engine, storage):
    return make_engine(storage)


@pytest.fixture
def plain_storage():
    """A store without transactions, like Google Sheets."""
    return InMemoryLedgerStorage(transactional=False)


@pytest.fixture
def plain_engine(make_engine, plain_storage):
    return make_engine(plain_storage)
