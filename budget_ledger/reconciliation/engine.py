"""
Reconciliation Engine

The single writer of the ledger. Every operation that changes an expense
or a category aggregate goes through here.

INVARIANTS kept by this module:
- A category's spent_amount equals the sum of its expenses' amounts
- Catalog categories are allocated total_budget * weight / 100
- An expense's category belongs to the expense's owner

HOW:
1. Inputs are validated before storage is touched
2. The affected categories are locked in ascending id order
3. The expense row and the aggregate deltas are written as one unit:
   inside a store transaction when the store has them, otherwise step by
   step with compensating writes if a later step fails
4. After any failure mid-write the touched categories are re-derived
   from their expenses (with retries). Categories that still cannot be
   repaired are flagged for the next sweep
5. Subscribers are notified only after the write committed

Mutations run shielded from caller cancellation: once started they run
to completion (or to their failure path) even if the client goes away.
"""

import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from budget_ledger.allocation import AllocationPolicy
from budget_ledger.audit import AuditLogger, create_correlation_id
from budget_ledger.config import LedgerSettings
from budget_ledger.errors import (
    ConflictError,
    IntegrityViolation,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from budget_ledger.models.ledger import (
    BudgetCategory,
    BudgetSettings,
    Expense,
    LedgerSnapshot,
    ReconciliationResult,
    utc_now,
)
from budget_ledger.notifier import ChangeNotifier
from budget_ledger.queries import SnapshotReader
from budget_ledger.reconciliation.locks import CategoryLockRegistry
from budget_ledger.services.storage import (
    DuplicateError,
    LedgerStorageInterface,
    RowNotFoundError,
    StorageError,
)
from budget_ledger.validation import LedgerValidator


logger = structlog.get_logger(__name__)


@dataclass
class _Step:
    """One store write of a multi-write operation and its inverse."""

    name: str
    apply: Callable[[], Awaitable[Any]]
    compensate: Optional[Callable[[], Awaitable[Any]]] = None


class ReconciliationEngine:
    """
    Serialises writes per category and keeps aggregates equal to their
    expenses.

    Usage:
        engine = ReconciliationEngine(storage, policy, notifier)
        expense = await engine.add_expense(owner, category_id, "Deposit", "500.00", date.today())
        snapshot = await engine.get_snapshot(owner)
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        policy: AllocationPolicy,
        notifier: Optional[ChangeNotifier] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        validator: Optional[LedgerValidator] = None,
    ):
        self._storage = storage
        self._policy = policy
        self._notifier = notifier
        self._audit_logger = audit_logger
        self._settings = settings or LedgerSettings()
        self._validator = validator or LedgerValidator()
        self._reader = SnapshotReader(storage)
        self._locks = CategoryLockRegistry()

        # category_id -> owner_id of categories awaiting reconciliation
        self._flagged: dict[str, str] = {}
        self._initialized: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def add_expense(
        self,
        owner_id: str,
        category_id: str,
        description: str,
        amount,
        expense_date,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Expense:
        """
        Record an expense and add its amount to the category's spent total.

        Retrying with the same idempotency_key returns the expense recorded
        by the first attempt instead of recording it twice.

        Raises:
            ValidationError: Non-positive amount, blank description, bad date
            NotFoundError: Category unknown or owned by someone else
            StorageUnavailableError: The store failed; safe to retry
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            owner_id = self._validator.validate_id(owner_id, "owner_id")
            category_id = self._validator.validate_id(category_id, "category_id")
            description = self._validator.validate_description(description)
            amount = self._validator.validate_expense_amount(amount)
            expense_date = self._validator.validate_date(expense_date)
            idempotency_key = self._validator.validate_idempotency_key(idempotency_key)
        except ValidationError as e:
            await self._log_validation_failed("add_expense", e, owner_id, correlation_id)
            raise

        return await self._run_shielded(self._add_expense(
            owner_id,
            category_id,
            description,
            amount,
            expense_date,
            idempotency_key,
            self._timeout(timeout),
            correlation_id,
        ))

    async def edit_expense(
        self,
        owner_id: str,
        expense_id: str,
        new_category_id: Optional[str] = None,
        new_amount=None,
        new_description: Optional[str] = None,
        new_date=None,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Expense:
        """
        Change an expense's amount, category, description or date.

        Fields left as None keep their current value. Moving an expense
        between categories updates both aggregates in the same unit of work.

        Raises:
            ValidationError: Bad new values
            NotFoundError: Expense or target category unknown to this owner
            ConflictError: The expense was deleted or moved concurrently
            StorageUnavailableError: The store failed; safe to retry
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            owner_id = self._validator.validate_id(owner_id, "owner_id")
            expense_id = self._validator.validate_id(expense_id, "expense_id")
            if new_category_id is not None:
                new_category_id = self._validator.validate_id(new_category_id, "category_id")
            if new_amount is not None:
                new_amount = self._validator.validate_expense_amount(new_amount)
            if new_description is not None:
                new_description = self._validator.validate_description(new_description)
            if new_date is not None:
                new_date = self._validator.validate_date(new_date)
        except ValidationError as e:
            await self._log_validation_failed("edit_expense", e, owner_id, correlation_id)
            raise

        return await self._run_shielded(self._edit_expense(
            owner_id,
            expense_id,
            new_category_id,
            new_amount,
            new_description,
            new_date,
            self._timeout(timeout),
            correlation_id,
        ))

    async def delete_expense(
        self,
        owner_id: str,
        expense_id: str,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Expense:
        """
        Remove an expense and subtract its amount from its category.

        Returns:
            The expense as it was before deletion

        Raises:
            NotFoundError: Expense unknown to this owner
            ConflictError: The expense was deleted or moved concurrently
            StorageUnavailableError: The store failed; safe to retry
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            owner_id = self._validator.validate_id(owner_id, "owner_id")
            expense_id = self._validator.validate_id(expense_id, "expense_id")
        except ValidationError as e:
            await self._log_validation_failed("delete_expense", e, owner_id, correlation_id)
            raise

        return await self._run_shielded(self._delete_expense(
            owner_id, expense_id, self._timeout(timeout), correlation_id,
        ))

    async def set_total_budget(
        self,
        owner_id: str,
        new_total,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> BudgetSettings:
        """
        Change the owner's total budget and reallocate catalog categories.

        spent_amount of every category is left untouched.

        Raises:
            ValidationError: Negative total
            StorageUnavailableError: The store failed; safe to retry
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            owner_id = self._validator.validate_id(owner_id, "owner_id")
            new_total = self._validator.validate_total_budget(new_total)
        except ValidationError as e:
            await self._log_validation_failed("set_total_budget", e, owner_id, correlation_id)
            raise

        return await self._run_shielded(self._set_total_budget(
            owner_id, new_total, self._timeout(timeout), correlation_id,
        ))

    async def reset_ledger(
        self,
        owner_id: str,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> int:
        """
        Delete every expense of the owner and zero every spent_amount.

        Categories, allocations and the total budget survive.

        Returns:
            Number of expenses removed
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            owner_id = self._validator.validate_id(owner_id, "owner_id")
        except ValidationError as e:
            await self._log_validation_failed("reset_ledger", e, owner_id, correlation_id)
            raise

        return await self._run_shielded(self._reset_ledger(
            owner_id, self._timeout(timeout), correlation_id,
        ))

    async def create_category(
        self,
        owner_id: str,
        name: str,
        allocated_amount=Decimal("0"),
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> BudgetCategory:
        """
        Add a custom category outside the catalog.

        Its allocation is kept as given; set_total_budget does not touch it.

        Raises:
            ValidationError: Blank or duplicate name, negative allocation
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            owner_id = self._validator.validate_id(owner_id, "owner_id")
            name = self._validator.validate_category_name(name)
            allocated_amount = self._validator.validate_allocation(allocated_amount)
        except ValidationError as e:
            await self._log_validation_failed("create_category", e, owner_id, correlation_id)
            raise

        return await self._run_shielded(self._create_category(
            owner_id, name, allocated_amount, self._timeout(timeout), correlation_id,
        ))

    async def reconcile_category(
        self,
        category_id: str,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationResult:
        """
        Recompute spent_amount from the category's expenses and overwrite it
        if it drifted.

        Raises:
            NotFoundError: Unknown category
            StorageUnavailableError: The store failed; the category stays flagged
        """
        correlation_id = correlation_id or create_correlation_id()
        category_id = self._validator.validate_id(category_id, "category_id")
        return await self._run_shielded(self._reconcile_category(
            category_id, self._timeout(timeout), correlation_id,
        ))

    async def get_snapshot(
        self,
        owner_id: str,
        timeout: Optional[float] = None,
    ) -> LedgerSnapshot:
        """
        Settings, categories (by name) and expenses (newest first) of the owner.

        The first read of a new owner creates their ledger with the default
        total budget and the catalog categories.
        """
        owner_id = self._validator.validate_id(owner_id, "owner_id")
        timeout = self._timeout(timeout)
        await self._run_shielded(self._ensure_ledger(owner_id, timeout, create_correlation_id()))
        pending = [cid for cid, owner in self._flagged.items() if owner == owner_id]
        return await self._call(self._reader.read(owner_id, pending), timeout)

    async def ensure_ledger(self, owner_id: str, timeout: Optional[float] = None) -> BudgetSettings:
        """Create the owner's settings and seed catalog categories if missing."""
        owner_id = self._validator.validate_id(owner_id, "owner_id")
        return await self._run_shielded(self._ensure_ledger(
            owner_id, self._timeout(timeout), create_correlation_id(), force=True,
        ))

    def pending_reconciliation(self, owner_id: Optional[str] = None) -> list[str]:
        """Ids of categories flagged for the next sweep."""
        return sorted(
            cid for cid, owner in self._flagged.items()
            if owner_id is None or owner == owner_id
        )

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def sweep(
        self,
        owner_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> list[ReconciliationResult]:
        """
        Reconcile flagged categories.

        With an owner_id, every category of that owner is checked as well,
        so drift that was never flagged is still found.

        Failures leave the category flagged and are logged; the sweep
        carries on with the next category.
        """
        timeout = self._timeout(timeout)
        targets = set(self.pending_reconciliation(owner_id))
        if owner_id is not None:
            categories = await self._call(self._storage.list_categories(owner_id), timeout)
            targets.update(c.id for c in categories)

        results = []
        for category_id in sorted(targets):
            try:
                results.append(await self.reconcile_category(category_id, timeout=timeout))
            except StorageUnavailableError as e:
                logger.warning("sweep_category_failed", category_id=category_id, error=str(e))
            except NotFoundError:
                self._flagged.pop(category_id, None)

        logger.info(
            "sweep_completed",
            owner_id=owner_id,
            checked=len(targets),
            corrected=sum(1 for r in results if r.corrected),
            still_flagged=len(self.pending_reconciliation(owner_id)),
        )
        return results

    def start_periodic_sweep(self, interval: Optional[float] = None) -> asyncio.Task:
        """Run sweep() every `interval` seconds until stop_periodic_sweep()."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        interval = interval or self._settings.sweep_interval_seconds
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(interval))
        return self._sweeper

    async def stop_periodic_sweep(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("periodic_sweep_failed", error=str(e))
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        error_type=type(e).__name__,
                        error_message=str(e),
                        details={"operation": "periodic_sweep"},
                    )

    async def wait_idle(self) -> None:
        """Wait for mutations still running after their callers went away."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Operation bodies (run shielded)
    # -------------------------------------------------------------------------

    async def _add_expense(
        self,
        owner_id: str,
        category_id: str,
        description: str,
        amount: Decimal,
        expense_date: date,
        idempotency_key: Optional[str],
        timeout: float,
        correlation_id: UUID,
    ) -> Expense:
        await self._ensure_ledger(owner_id, timeout, correlation_id)
        args = (
            owner_id, category_id, description, amount, expense_date,
            idempotency_key, timeout, correlation_id,
        )

        if idempotency_key is None:
            return await self._insert_expense(*args)
        # A key resubmitted against another category must still insert once
        async with self._locks.owner(owner_id, f"idempotency:{idempotency_key}"):
            return await self._insert_expense(*args)

    async def _insert_expense(
        self,
        owner_id: str,
        category_id: str,
        description: str,
        amount: Decimal,
        expense_date: date,
        idempotency_key: Optional[str],
        timeout: float,
        correlation_id: UUID,
    ) -> Expense:
        async with self._locks.categories(owner_id, [category_id]):
            if idempotency_key:
                existing = await self._call(
                    self._storage.find_expense_by_idempotency_key(owner_id, idempotency_key),
                    timeout,
                )
                if existing is not None:
                    if self._audit_logger:
                        await self._audit_logger.log_duplicate_submission(
                            owner_id=owner_id,
                            expense_id=existing.id,
                            idempotency_key=idempotency_key,
                            correlation_id=correlation_id,
                        )
                    return existing

            await self._load_category(owner_id, category_id, timeout)

            expense = Expense(
                owner_id=owner_id,
                category_id=category_id,
                description=description,
                amount=amount,
                expense_date=expense_date,
                idempotency_key=idempotency_key,
            )

            async def rollback_insert():
                await self._storage.delete_expense(expense.id)
                if self._audit_logger:
                    await self._audit_logger.log_expense_rolled_back(
                        owner_id=owner_id,
                        expense_id=expense.id,
                        correlation_id=correlation_id,
                    )

            results = await self._execute(
                owner_id,
                "add_expense",
                [
                    _Step(
                        "insert_expense",
                        lambda: self._storage.insert_expense(expense),
                        rollback_insert,
                    ),
                    _Step(
                        "increment_spent",
                        lambda: self._storage.increment_spent(category_id, amount),
                        lambda: self._storage.increment_spent(category_id, -amount),
                    ),
                ],
                [category_id],
                timeout,
                correlation_id,
            )
            saved = results[0]

        if self._audit_logger:
            await self._audit_logger.log_expense_added(
                owner_id=owner_id,
                expense_id=saved.id,
                category_id=category_id,
                amount=str(amount),
                correlation_id=correlation_id,
            )
        self._publish(owner_id)
        return saved

    async def _edit_expense(
        self,
        owner_id: str,
        expense_id: str,
        new_category_id: Optional[str],
        new_amount: Optional[Decimal],
        new_description: Optional[str],
        new_date: Optional[date],
        timeout: float,
        correlation_id: UUID,
    ) -> Expense:
        current = await self._load_expense(owner_id, expense_id, timeout)
        target_category_id = new_category_id or current.category_id

        async with self._locks.categories(owner_id, [current.category_id, target_category_id]):
            # Re-read under the lock: another session may have won the race
            latest = await self._call(self._storage.get_expense(expense_id), timeout)
            if latest is None:
                raise ConflictError(f"Expense {expense_id} was deleted by another session")
            if latest.category_id != current.category_id:
                raise ConflictError(f"Expense {expense_id} was moved by another session")

            if target_category_id != latest.category_id:
                await self._load_category(owner_id, target_category_id, timeout)

            updated = latest.model_copy(update={
                "category_id": target_category_id,
                "amount": new_amount if new_amount is not None else latest.amount,
                "description": new_description if new_description is not None else latest.description,
                "expense_date": new_date if new_date is not None else latest.expense_date,
                "updated_at": utc_now(),
            })

            steps = [
                _Step(
                    "update_expense",
                    lambda: self._storage.update_expense(updated),
                    lambda: self._storage.update_expense(latest),
                ),
            ]
            steps.extend(self._transfer_steps(
                latest.category_id, latest.amount, updated.category_id, updated.amount,
            ))

            results = await self._execute(
                owner_id,
                "edit_expense",
                steps,
                [latest.category_id, updated.category_id],
                timeout,
                correlation_id,
            )
            saved = results[0]

        if self._audit_logger:
            await self._audit_logger.log_expense_edited(
                owner_id=owner_id,
                expense_id=expense_id,
                old_category_id=latest.category_id,
                new_category_id=saved.category_id,
                old_amount=str(latest.amount),
                new_amount=str(saved.amount),
                correlation_id=correlation_id,
            )
        self._publish(owner_id)
        return saved

    def _transfer_steps(
        self,
        old_category_id: str,
        old_amount: Decimal,
        new_category_id: str,
        new_amount: Decimal,
    ) -> list[_Step]:
        """Aggregate deltas for moving old_amount out of one category and new_amount into another."""
        if old_category_id == new_category_id:
            delta = new_amount - old_amount
            if delta == 0:
                return []
            return [_Step(
                "increment_spent",
                lambda: self._storage.increment_spent(old_category_id, delta),
                lambda: self._storage.increment_spent(old_category_id, -delta),
            )]

        return [
            _Step(
                "decrement_old_category",
                lambda: self._storage.increment_spent(old_category_id, -old_amount),
                lambda: self._storage.increment_spent(old_category_id, old_amount),
            ),
            _Step(
                "increment_new_category",
                lambda: self._storage.increment_spent(new_category_id, new_amount),
                lambda: self._storage.increment_spent(new_category_id, -new_amount),
            ),
        ]

    async def _delete_expense(
        self,
        owner_id: str,
        expense_id: str,
        timeout: float,
        correlation_id: UUID,
    ) -> Expense:
        current = await self._load_expense(owner_id, expense_id, timeout)

        async with self._locks.categories(owner_id, [current.category_id]):
            latest = await self._call(self._storage.get_expense(expense_id), timeout)
            if latest is None:
                raise ConflictError(f"Expense {expense_id} was already deleted by another session")
            if latest.category_id != current.category_id:
                raise ConflictError(f"Expense {expense_id} was moved by another session")

            await self._execute(
                owner_id,
                "delete_expense",
                [
                    _Step(
                        "delete_expense",
                        lambda: self._storage.delete_expense(expense_id),
                        lambda: self._storage.insert_expense(latest),
                    ),
                    _Step(
                        "decrement_spent",
                        lambda: self._storage.increment_spent(latest.category_id, -latest.amount),
                        lambda: self._storage.increment_spent(latest.category_id, latest.amount),
                    ),
                ],
                [latest.category_id],
                timeout,
                correlation_id,
            )

        if self._audit_logger:
            await self._audit_logger.log_expense_deleted(
                owner_id=owner_id,
                expense_id=expense_id,
                category_id=latest.category_id,
                amount=str(latest.amount),
                correlation_id=correlation_id,
            )
        self._publish(owner_id)
        return latest

    async def _set_total_budget(
        self,
        owner_id: str,
        new_total: Decimal,
        timeout: float,
        correlation_id: UUID,
    ) -> BudgetSettings:
        await self._ensure_ledger(owner_id, timeout, correlation_id)

        async with self._locks.owner(owner_id, "ledger"):
            previous = await self._call(self._storage.get_settings(owner_id), timeout)
            if previous is None:
                raise NotFoundError("owner", owner_id)
            updated = BudgetSettings(owner_id=owner_id, total_budget=new_total)

            results = await self._execute(
                owner_id,
                "set_total_budget",
                [
                    _Step(
                        "save_settings",
                        lambda: self._storage.save_settings(updated),
                        lambda: self._storage.save_settings(previous),
                    ),
                    _Step(
                        "reallocate",
                        lambda: self._policy.reallocate(owner_id, new_total),
                        lambda: self._policy.reallocate(owner_id, previous.total_budget),
                    ),
                ],
                [],
                timeout,
                correlation_id,
            )
            saved = results[0]

        if self._audit_logger:
            await self._audit_logger.log_total_budget_set(
                owner_id=owner_id,
                old_total=str(previous.total_budget),
                new_total=str(new_total),
                correlation_id=correlation_id,
            )
        self._publish(owner_id)
        return saved

    async def _reset_ledger(
        self,
        owner_id: str,
        timeout: float,
        correlation_id: UUID,
    ) -> int:
        await self._ensure_ledger(owner_id, timeout, correlation_id)

        # The ledger lock keeps new categories out until the reset is done,
        # since delete_expenses removes expenses of every category the owner has
        async with self._locks.owner(owner_id, "ledger"):
            removed = await self._reset_locked_ledger(owner_id, timeout, correlation_id)

        if self._audit_logger:
            await self._audit_logger.log_ledger_reset(
                owner_id=owner_id,
                expenses_removed=removed,
                correlation_id=correlation_id,
            )
        self._publish(owner_id)
        return removed

    async def _reset_locked_ledger(
        self,
        owner_id: str,
        timeout: float,
        correlation_id: UUID,
    ) -> int:
        categories = await self._call(self._storage.list_categories(owner_id), timeout)
        category_ids = [c.id for c in categories]

        async with self._locks.categories(owner_id, category_ids) as locked:
            # Fresh reads under the locks so compensation restores what was really there
            expenses = await self._call(self._storage.list_expenses(owner_id), timeout)
            categories = [
                c for c in await self._call(self._storage.list_categories(owner_id), timeout)
                if c.id in locked
            ]

            async def restore_expenses():
                for expense in expenses:
                    await self._storage.insert_expense(expense)

            steps = [
                _Step(
                    "delete_expenses",
                    lambda: self._storage.delete_expenses(owner_id),
                    restore_expenses,
                ),
            ]
            for category in categories:
                if category.spent_amount != 0:
                    steps.append(self._zero_spent_step(category))

            results = await self._execute(
                owner_id,
                "reset_ledger",
                steps,
                [c.id for c in categories],
                timeout,
                correlation_id,
            )
        return results[0]

    def _zero_spent_step(self, category: BudgetCategory) -> _Step:
        return _Step(
            "zero_spent",
            lambda: self._storage.set_spent(category.id, Decimal("0")),
            lambda: self._storage.set_spent(category.id, category.spent_amount),
        )

    async def _create_category(
        self,
        owner_id: str,
        name: str,
        allocated_amount: Decimal,
        timeout: float,
        correlation_id: UUID,
    ) -> BudgetCategory:
        await self._ensure_ledger(owner_id, timeout, correlation_id)

        async with self._locks.owner(owner_id, "ledger"):
            existing = await self._call(self._storage.list_categories(owner_id), timeout)
            if any(c.name.casefold() == name.casefold() for c in existing):
                raise ValidationError(f"Category '{name}' already exists", field="name")

            category = BudgetCategory(
                owner_id=owner_id,
                name=name,
                allocated_amount=allocated_amount,
            )
            try:
                created = await self._call(self._storage.insert_categories([category]), timeout)
            except DuplicateError:
                raise ValidationError(f"Category '{name}' already exists", field="name")

        if self._audit_logger:
            await self._audit_logger.log_category_created(
                owner_id=owner_id,
                category_id=category.id,
                name=name,
                allocated=str(allocated_amount),
                correlation_id=correlation_id,
            )
        self._publish(owner_id)
        return created[0]

    async def _reconcile_category(
        self,
        category_id: str,
        timeout: float,
        correlation_id: UUID,
    ) -> ReconciliationResult:
        category = await self._call(self._storage.get_category(category_id), timeout)
        if category is None:
            raise NotFoundError("category", category_id)

        async with self._locks.categories(category.owner_id, [category_id]):
            try:
                result = await self._rederive(category_id, timeout, correlation_id)
            except StorageUnavailableError as e:
                await self._flag(category_id, category.owner_id, str(e), correlation_id)
                raise StorageUnavailableError(
                    f"Could not reconcile category {category_id}: {e}",
                    flagged_categories=[category_id],
                ) from e

        if result.corrected:
            self._publish(category.owner_id)
        return result

    # -------------------------------------------------------------------------
    # Ledger bootstrap
    # -------------------------------------------------------------------------

    async def _ensure_ledger(
        self,
        owner_id: str,
        timeout: float,
        correlation_id: UUID,
        force: bool = False,
    ) -> Optional[BudgetSettings]:
        if owner_id in self._initialized and not force:
            return None

        async with self._locks.owner(owner_id, "ledger"):
            settings = await self._call(self._storage.get_settings(owner_id), timeout)
            if settings is None:
                settings = await self._call(
                    self._storage.save_settings(BudgetSettings(
                        owner_id=owner_id,
                        total_budget=self._settings.default_total_budget,
                    )),
                    timeout,
                )
                logger.info(
                    "ledger_initialized",
                    owner_id=owner_id,
                    total_budget=str(settings.total_budget),
                )
                if self._audit_logger:
                    await self._audit_logger.log_ledger_initialized(
                        owner_id=owner_id,
                        total_budget=str(settings.total_budget),
                        correlation_id=correlation_id,
                    )

            created = await self._call(
                self._policy.seed_missing_categories(owner_id, settings.total_budget),
                timeout,
            )
            if created and self._audit_logger:
                await self._audit_logger.log_categories_seeded(
                    owner_id=owner_id,
                    names=[c.name for c in created],
                    correlation_id=correlation_id,
                )

        self._initialized.add(owner_id)
        return settings

    # -------------------------------------------------------------------------
    # Write execution
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        owner_id: str,
        operation: str,
        steps: list[_Step],
        touched: Iterable[str],
        timeout: float,
        correlation_id: UUID,
    ) -> list[Any]:
        """
        Apply the steps as one unit of work.

        On failure the partial writes are undone (by the store's transaction
        or by running the compensations of completed steps in reverse), the
        touched categories are re-derived, and StorageUnavailableError is
        raised listing any category that could not be repaired.
        """
        try:
            if self._storage.supports_transactions:
                async with self._storage.transaction():
                    return [await self._call(step.apply(), timeout) for step in steps]

            results = []
            completed: list[_Step] = []
            try:
                for step in steps:
                    results.append(await self._call(step.apply(), timeout))
                    completed.append(step)
            except (StorageUnavailableError, ConflictError):
                await self._compensate(owner_id, operation, completed, timeout)
                raise
            return results

        except (StorageUnavailableError, ConflictError) as e:
            logger.warning(
                "write_failed",
                operation=operation,
                owner_id=owner_id,
                error=str(e),
            )
            if self._audit_logger:
                await self._audit_logger.log_storage_error(
                    operation=operation,
                    error_message=str(e),
                    owner_id=owner_id,
                    correlation_id=correlation_id,
                )
            flagged = await self._settle(owner_id, touched, timeout, correlation_id)
            if isinstance(e, ConflictError):
                raise
            raise StorageUnavailableError(
                f"{operation} failed: {e}",
                flagged_categories=flagged,
            ) from e

    async def _compensate(
        self,
        owner_id: str,
        operation: str,
        completed: list[_Step],
        timeout: float,
    ) -> None:
        """Undo completed steps in reverse. Failures are logged; re-derivation follows."""
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                await self._call(step.compensate(), timeout)
            except (StorageUnavailableError, ConflictError) as e:
                logger.error(
                    "compensation_failed",
                    operation=operation,
                    step=step.name,
                    owner_id=owner_id,
                    error=str(e),
                )

    async def _settle(
        self,
        owner_id: str,
        category_ids: Iterable[str],
        timeout: float,
        correlation_id: UUID,
    ) -> list[str]:
        """Re-derive each category; return the ids that had to be flagged."""
        flagged = []
        for category_id in sorted(set(category_ids)):
            try:
                await self._rederive(category_id, timeout, correlation_id)
            except (StorageUnavailableError, ConflictError) as e:
                await self._flag(category_id, owner_id, str(e), correlation_id)
                flagged.append(category_id)
            except NotFoundError:
                logger.warning("settle_category_missing", category_id=category_id)
        return flagged

    async def _rederive(
        self,
        category_id: str,
        timeout: float,
        correlation_id: UUID,
    ) -> ReconciliationResult:
        """Reconcile one category, retrying while the store is unavailable. Caller holds the lock."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.reconcile_retry_attempts),
            wait=wait_exponential(
                multiplier=self._settings.reconcile_retry_min_wait,
                min=self._settings.reconcile_retry_min_wait,
                max=self._settings.reconcile_retry_max_wait,
            ),
            retry=retry_if_exception_type(StorageUnavailableError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._rederive_once(category_id, timeout, correlation_id)

    async def _rederive_once(
        self,
        category_id: str,
        timeout: float,
        correlation_id: UUID,
    ) -> ReconciliationResult:
        category = await self._call(self._storage.get_category(category_id), timeout)
        if category is None:
            raise NotFoundError("category", category_id)

        derived, count = await self._call(
            self._storage.sum_expenses(category.owner_id, category_id),
            timeout,
        )

        if derived != category.spent_amount:
            await self._call(self._storage.set_spent(category_id, derived), timeout)
            violation = IntegrityViolation(category_id, category.spent_amount, derived)
            logger.warning(
                "integrity_violation_corrected",
                owner_id=category.owner_id,
                category_id=category_id,
                recorded=str(violation.recorded),
                derived=str(violation.derived),
                drift=str(violation.drift),
            )
            if self._audit_logger:
                await self._audit_logger.log_integrity_violation(
                    owner_id=category.owner_id,
                    category_id=category_id,
                    recorded=str(violation.recorded),
                    derived=str(violation.derived),
                    correlation_id=correlation_id,
                )

        self._flagged.pop(category_id, None)
        if self._audit_logger:
            await self._audit_logger.log_category_reconciled(
                owner_id=category.owner_id,
                category_id=category_id,
                previous=str(category.spent_amount),
                recomputed=str(derived),
                correlation_id=correlation_id,
            )

        return ReconciliationResult(
            category_id=category_id,
            owner_id=category.owner_id,
            previous_spent=category.spent_amount,
            recomputed_spent=derived,
            expense_count=count,
        )

    async def _flag(
        self,
        category_id: str,
        owner_id: str,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        self._flagged[category_id] = owner_id
        logger.error(
            "category_flagged",
            owner_id=owner_id,
            category_id=category_id,
            reason=reason,
        )
        if self._audit_logger:
            await self._audit_logger.log_category_flagged(
                category_id=category_id,
                reason=reason,
                owner_id=owner_id,
                correlation_id=correlation_id,
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self._settings.store_timeout_seconds

    async def _call(self, awaitable: Awaitable[Any], timeout: float) -> Any:
        """Await one store call, translating store failures into ledger errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailableError(f"Store did not answer within {timeout}s") from e
        except RowNotFoundError as e:
            raise ConflictError(f"Row disappeared during the operation: {e}") from e
        except DuplicateError:
            raise
        except StorageError as e:
            raise StorageUnavailableError(f"Store failed: {e}") from e

    async def _run_shielded(self, coro: Awaitable[Any]) -> Any:
        """Run coro to completion even if the awaiting caller is cancelled."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(task)

    async def _load_category(
        self,
        owner_id: str,
        category_id: str,
        timeout: float,
    ) -> BudgetCategory:
        category = await self._call(self._storage.get_category(category_id), timeout)
        if category is None or category.owner_id != owner_id:
            raise NotFoundError("category", category_id)
        return category

    async def _load_expense(
        self,
        owner_id: str,
        expense_id: str,
        timeout: float,
    ) -> Expense:
        expense = await self._call(self._storage.get_expense(expense_id), timeout)
        if expense is None or expense.owner_id != owner_id:
            raise NotFoundError("expense", expense_id)
        return expense

    def _publish(self, owner_id: str) -> None:
        if self._notifier is not None:
            self._notifier.publish(owner_id)

    async def _log_validation_failed(
        self,
        operation: str,
        error: ValidationError,
        owner_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        logger.info(
            "validation_failed",
            operation=operation,
            field=error.field,
            error=str(error),
        )
        if self._audit_logger:
            await self._audit_logger.log_validation_failed(
                operation=operation,
                message=str(error),
                owner_id=owner_id if isinstance(owner_id, str) else None,
                correlation_id=correlation_id,
            )
