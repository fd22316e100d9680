"""
Tests for the reconciliation engine.

Most tests run twice: against a transactional store and against one
without transactions (the Google Sheets case), where the engine relies on
compensating writes and re-derivation.
"""

import asyncio

import pytest
from datetime import date
from decimal import Decimal

from budget_ledger.errors import (
    ConflictError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from budget_ledger.models.audit import AuditEventType
from budget_ledger.models.ledger import to_money
from budget_ledger.services.storage import InMemoryLedgerStorage, StorageConnectionError


OWNER = "planner-1"
OTHER_OWNER = "planner-2"
TODAY = date(2024, 6, 1)


@pytest.fixture(params=[True, False], ids=["transactional", "compensating"])
def ledger(request, make_engine):
    """(engine, storage) over both kinds of store."""
    storage = InMemoryLedgerStorage(transactional=request.param)
    return make_engine(storage), storage


async def assert_spent_matches_expenses(storage, owner_id):
    """Every category's spent_amount equals the sum of its expenses."""
    for category in await storage.list_categories(owner_id):
        expenses = await storage.list_expenses(owner_id, category_id=category.id)
        total = sum((e.amount for e in expenses), Decimal("0"))
        assert category.spent_amount == total, category.name


async def category_named(engine, name, owner_id=OWNER):
    snapshot = await engine.get_snapshot(owner_id)
    return snapshot.category_by_name(name)


def fail_on_call(monkeypatch, storage, method, call_number):
    """Make only the n-th call of a store method fail."""
    original = getattr(storage, method)
    calls = {"count": 0}

    async def wrapper(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == call_number:
            raise StorageConnectionError(f"{method}: store unavailable")
        return await original(*args, **kwargs)

    monkeypatch.setattr(storage, method, wrapper)


def event_types(audit_storage):
    return [event.event_type for event in audit_storage.events]


class TestScenario:
    """The end-to-end budget walkthrough."""

    async def test_budget_walkthrough(self, ledger):
        """Test seeding, add, move, delete, reallocation and reset."""
        engine, storage = ledger

        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.settings.total_budget == Decimal("100000.00")
        allocations = {c.name: c.allocated_amount for c in snapshot.categories}
        assert allocations == {
            "Catering": Decimal("25000.00"),
            "Decoration": Decimal("15000.00"),
            "Entertainment": Decimal("15000.00"),
            "Photography": Decimal("10000.00"),
            "Venue": Decimal("35000.00"),
        }
        assert all(c.spent_amount == 0 for c in snapshot.categories)
        venue = snapshot.category_by_name("Venue")
        catering = snapshot.category_by_name("Catering")

        expense = await engine.add_expense(OWNER, venue.id, "Hall deposit", "5000", TODAY)
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("5000.00")

        await engine.edit_expense(
            OWNER, expense.id, new_category_id=catering.id, new_amount="3000",
        )
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("0.00")
        assert (await category_named(engine, "Catering")).spent_amount == Decimal("3000.00")

        await engine.delete_expense(OWNER, expense.id)
        assert (await category_named(engine, "Catering")).spent_amount == Decimal("0.00")

        settings = await engine.set_total_budget(OWNER, "200000")
        assert settings.total_budget == Decimal("200000.00")
        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.category_by_name("Venue").allocated_amount == Decimal("70000.00")
        assert snapshot.category_by_name("Photography").allocated_amount == Decimal("20000.00")
        assert all(c.spent_amount == 0 for c in snapshot.categories)

        await engine.reset_ledger(OWNER)
        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.expenses == []
        assert all(c.spent_amount == 0 for c in snapshot.categories)
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_snapshot_ordering(self, engine):
        """Test that categories are sorted by name and expenses newest first."""
        venue = await category_named(engine, "Venue")
        await engine.add_expense(OWNER, venue.id, "Old", "10", date(2024, 1, 1))
        await engine.add_expense(OWNER, venue.id, "New", "10", date(2024, 3, 1))
        await engine.add_expense(OWNER, venue.id, "Middle", "10", date(2024, 2, 1))

        snapshot = await engine.get_snapshot(OWNER)

        names = [c.name for c in snapshot.categories]
        assert names == sorted(names)
        assert [e.description for e in snapshot.expenses] == ["New", "Middle", "Old"]


class TestExpenseOperations:
    """Add, edit and delete keep aggregates equal to their expenses."""

    async def test_add_edit_delete_keep_sums(self, ledger):
        """Test that each mutation leaves spent == sum of expenses."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")
        decoration = await category_named(engine, "Decoration")

        first = await engine.add_expense(OWNER, venue.id, "Deposit", "1200.50", TODAY)
        second = await engine.add_expense(OWNER, venue.id, "Chairs", Decimal("300"), TODAY)
        await assert_spent_matches_expenses(storage, OWNER)

        await engine.edit_expense(OWNER, first.id, new_amount="1000")
        await assert_spent_matches_expenses(storage, OWNER)
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("1300.00")

        await engine.edit_expense(OWNER, second.id, new_category_id=decoration.id)
        await assert_spent_matches_expenses(storage, OWNER)

        removed = await engine.delete_expense(OWNER, first.id)
        assert removed.id == first.id
        await assert_spent_matches_expenses(storage, OWNER)
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("0.00")
        assert (await category_named(engine, "Decoration")).spent_amount == Decimal("300.00")

    async def test_edit_description_and_date_only(self, engine):
        """Test that editing non-monetary fields leaves aggregates alone."""
        venue = await category_named(engine, "Venue")
        expense = await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)

        edited = await engine.edit_expense(
            OWNER, expense.id, new_description="Hall deposit", new_date="2024-07-15",
        )

        assert edited.description == "Hall deposit"
        assert edited.expense_date == date(2024, 7, 15)
        assert edited.amount == Decimal("500.00")
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("500.00")

    async def test_overspend_is_allowed(self, engine):
        """Test that spending past the allocation is recorded and surfaced."""
        photography = await category_named(engine, "Photography")

        await engine.add_expense(OWNER, photography.id, "Photographer", "12000", TODAY)

        category = await category_named(engine, "Photography")
        assert category.is_overspent is True
        assert category.remaining_amount == Decimal("-2000.00")

    async def test_idempotent_add(self, ledger, audit_storage):
        """Test that a re-submitted expense is recorded once."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")

        first = await engine.add_expense(
            OWNER, venue.id, "Deposit", "500", TODAY, idempotency_key="form-1",
        )
        second = await engine.add_expense(
            OWNER, venue.id, "Deposit", "500", TODAY, idempotency_key="form-1",
        )

        assert first.id == second.id
        assert len(await storage.list_expenses(OWNER)) == 1
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("500.00")
        assert AuditEventType.DUPLICATE_SUBMISSION in event_types(audit_storage)

    async def test_concurrent_duplicate_submissions(self, engine, storage):
        """Test that simultaneous submissions with one key record one expense."""
        venue = await category_named(engine, "Venue")

        results = await asyncio.gather(*[
            engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY, idempotency_key="tap")
            for _ in range(5)
        ])

        assert len({e.id for e in results}) == 1
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("500.00")


class TestValidationAndOwnership:
    """Bad input and foreign references never change state."""

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "1.234", None, "NaN"])
    async def test_invalid_amount(self, engine, storage, amount):
        """Test that invalid amounts are rejected before any write."""
        venue = await category_named(engine, "Venue")

        with pytest.raises(ValidationError):
            await engine.add_expense(OWNER, venue.id, "Deposit", amount, TODAY)

        assert await storage.list_expenses(OWNER) == []

    async def test_blank_description(self, engine):
        """Test that a blank description is rejected."""
        venue = await category_named(engine, "Venue")
        with pytest.raises(ValidationError) as exc_info:
            await engine.add_expense(OWNER, venue.id, "   ", "10", TODAY)
        assert exc_info.value.field == "description"

    async def test_invalid_date(self, engine):
        """Test that a malformed date is rejected."""
        venue = await category_named(engine, "Venue")
        with pytest.raises(ValidationError):
            await engine.add_expense(OWNER, venue.id, "Deposit", "10", "01/06/2024")

    async def test_negative_total_budget(self, engine, audit_storage):
        """Test that a negative total is rejected and the old total kept."""
        await engine.get_snapshot(OWNER)

        with pytest.raises(ValidationError):
            await engine.set_total_budget(OWNER, "-1")

        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.settings.total_budget == Decimal("100000.00")
        assert AuditEventType.VALIDATION_FAILED in event_types(audit_storage)

    async def test_edit_with_invalid_amount_keeps_expense(self, engine):
        """Test that a rejected edit leaves the expense untouched."""
        venue = await category_named(engine, "Venue")
        expense = await engine.add_expense(OWNER, venue.id, "Deposit", "10", TODAY)

        with pytest.raises(ValidationError):
            await engine.edit_expense(OWNER, expense.id, new_amount="0")

        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.expenses[0].amount == Decimal("10.00")

    async def test_unknown_category(self, engine):
        """Test that adding to an unknown category fails."""
        await engine.get_snapshot(OWNER)
        with pytest.raises(NotFoundError):
            await engine.add_expense(OWNER, "no-such-category", "Deposit", "10", TODAY)

    async def test_foreign_category(self, engine, storage):
        """Test that an owner cannot charge another owner's category."""
        foreign = await category_named(engine, "Venue", owner_id=OTHER_OWNER)

        with pytest.raises(NotFoundError):
            await engine.add_expense(OWNER, foreign.id, "Deposit", "10", TODAY)

        assert await storage.list_expenses(OWNER) == []
        assert await storage.list_expenses(OTHER_OWNER) == []

    async def test_move_to_foreign_category(self, engine):
        """Test that an expense cannot be moved to another owner's category."""
        venue = await category_named(engine, "Venue")
        foreign = await category_named(engine, "Venue", owner_id=OTHER_OWNER)
        expense = await engine.add_expense(OWNER, venue.id, "Deposit", "10", TODAY)

        with pytest.raises(NotFoundError):
            await engine.edit_expense(OWNER, expense.id, new_category_id=foreign.id)

        assert (await category_named(engine, "Venue")).spent_amount == Decimal("10.00")

    async def test_foreign_expense(self, engine):
        """Test that another owner's expense is invisible."""
        venue = await category_named(engine, "Venue", owner_id=OTHER_OWNER)
        expense = await engine.add_expense(OTHER_OWNER, venue.id, "Deposit", "10", TODAY)

        with pytest.raises(NotFoundError):
            await engine.delete_expense(OWNER, expense.id)
        with pytest.raises(NotFoundError):
            await engine.edit_expense(OWNER, expense.id, new_amount="20")

    async def test_owners_are_isolated(self, engine):
        """Test that one owner's expenses never show in another's snapshot."""
        venue = await category_named(engine, "Venue")
        await engine.add_expense(OWNER, venue.id, "Deposit", "10", TODAY)

        other = await engine.get_snapshot(OTHER_OWNER)

        assert other.expenses == []
        assert all(c.spent_amount == 0 for c in other.categories)


class TestConflicts:
    """Edits racing with other sessions."""

    async def test_edit_of_concurrently_deleted_expense(self, engine, storage, monkeypatch):
        """Test that editing an expense deleted after it was read raises ConflictError."""
        venue = await category_named(engine, "Venue")
        expense = await engine.add_expense(OWNER, venue.id, "Deposit", "10", TODAY)

        original = storage.get_expense
        calls = {"count": 0}

        async def get_then_delete(expense_id):
            calls["count"] += 1
            result = await original(expense_id)
            if calls["count"] == 1:
                # Another session deletes it between our read and our lock
                await storage.delete_expense(expense_id)
                await storage.increment_spent(venue.id, -result.amount)
            return result

        monkeypatch.setattr(storage, "get_expense", get_then_delete)

        with pytest.raises(ConflictError):
            await engine.edit_expense(OWNER, expense.id, new_amount="20")

        await assert_spent_matches_expenses(storage, OWNER)

    async def test_edit_of_concurrently_moved_expense(self, engine, storage, monkeypatch):
        """Test that an expense moved by another session raises ConflictError."""
        venue = await category_named(engine, "Venue")
        catering = await category_named(engine, "Catering")
        expense = await engine.add_expense(OWNER, venue.id, "Deposit", "10", TODAY)

        original = storage.get_expense
        calls = {"count": 0}

        async def get_then_move(expense_id):
            calls["count"] += 1
            result = await original(expense_id)
            if calls["count"] == 1:
                await storage.update_expense(result.model_copy(update={"category_id": catering.id}))
            return result

        monkeypatch.setattr(storage, "get_expense", get_then_move)

        with pytest.raises(ConflictError):
            await engine.delete_expense(OWNER, expense.id)

    async def test_delete_twice(self, engine):
        """Test that deleting an already deleted expense reports NotFoundError."""
        venue = await category_named(engine, "Venue")
        expense = await engine.add_expense(OWNER, venue.id, "Deposit", "10", TODAY)
        await engine.delete_expense(OWNER, expense.id)

        with pytest.raises(NotFoundError):
            await engine.delete_expense(OWNER, expense.id)


class TestConcurrency:
    """Concurrent writers never lose an update."""

    async def test_concurrent_adds_same_category(self, ledger):
        """Test that N concurrent adds sum exactly."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")

        await asyncio.gather(*[
            engine.add_expense(OWNER, venue.id, f"Item {i}", Decimal(i), TODAY)
            for i in range(1, 51)
        ])

        assert (await category_named(engine, "Venue")).spent_amount == Decimal("1275.00")
        assert len(await storage.list_expenses(OWNER)) == 50
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_same_key_in_two_categories_inserts_once(self, ledger):
        """Test that one idempotency key submitted to two categories at once records one expense."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")
        catering = await category_named(engine, "Catering")
        storage.slow_down("insert_expense", 0.05)

        first, second = await asyncio.gather(
            engine.add_expense(OWNER, venue.id, "Deposit", "100", TODAY, idempotency_key="form-1"),
            engine.add_expense(OWNER, catering.id, "Deposit", "100", TODAY, idempotency_key="form-1"),
        )

        assert first.id == second.id
        assert len(await storage.list_expenses(OWNER)) == 1
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_crossing_moves_do_not_deadlock(self, ledger):
        """Test that moves in opposite directions between two categories both complete."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")
        catering = await category_named(engine, "Catering")
        to_catering = await engine.add_expense(OWNER, venue.id, "Tables", "100", TODAY)
        to_venue = await engine.add_expense(OWNER, catering.id, "Cake", "40", TODAY)

        await asyncio.wait_for(
            asyncio.gather(
                engine.edit_expense(OWNER, to_catering.id, new_category_id=catering.id),
                engine.edit_expense(OWNER, to_venue.id, new_category_id=venue.id),
            ),
            timeout=5,
        )

        assert (await category_named(engine, "Venue")).spent_amount == Decimal("40.00")
        assert (await category_named(engine, "Catering")).spent_amount == Decimal("100.00")
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_mixed_concurrent_mutations(self, ledger):
        """Test adds, edits and deletes racing across categories."""
        engine, storage = ledger
        snapshot = await engine.get_snapshot(OWNER)
        ids = [c.id for c in snapshot.categories]
        seeded = [
            await engine.add_expense(OWNER, ids[i % len(ids)], f"Seed {i}", "25", TODAY)
            for i in range(10)
        ]

        operations = []
        for i, expense in enumerate(seeded):
            if i % 3 == 0:
                operations.append(engine.delete_expense(OWNER, expense.id))
            else:
                operations.append(engine.edit_expense(
                    OWNER, expense.id, new_category_id=ids[(i + 1) % len(ids)], new_amount=str(10 + i),
                ))
            operations.append(engine.add_expense(OWNER, ids[i % len(ids)], f"New {i}", "7.25", TODAY))

        await asyncio.gather(*operations)

        await assert_spent_matches_expenses(storage, OWNER)


class TestTotalBudget:
    """Reallocation on total budget changes."""

    @pytest.mark.parametrize("total", ["0", "1", "123456.78", "999999.99"])
    async def test_allocations_follow_total(self, engine, catalog, total):
        """Test that every catalog category is total * weight / 100 after a change."""
        await engine.set_total_budget(OWNER, total)

        snapshot = await engine.get_snapshot(OWNER)
        for category in snapshot.categories:
            expected = to_money(Decimal(total) * catalog.weight_for(category.name) / 100)
            assert abs(category.allocated_amount - expected) <= Decimal("0.01")

    async def test_spent_untouched(self, engine):
        """Test that a total change never touches spent amounts."""
        venue = await category_named(engine, "Venue")
        await engine.add_expense(OWNER, venue.id, "Deposit", "5000", TODAY)

        await engine.set_total_budget(OWNER, "50000")

        venue = await category_named(engine, "Venue")
        assert venue.spent_amount == Decimal("5000.00")
        assert venue.allocated_amount == Decimal("17500.00")

    async def test_custom_category_keeps_allocation(self, engine):
        """Test that non-catalog categories keep their allocation."""
        flowers = await engine.create_category(OWNER, "Flowers", "2500")
        await engine.add_expense(OWNER, flowers.id, "Roses", "300", TODAY)

        await engine.set_total_budget(OWNER, "300000")

        flowers = await category_named(engine, "Flowers")
        assert flowers.allocated_amount == Decimal("2500.00")
        assert flowers.spent_amount == Decimal("300.00")

    async def test_duplicate_category_name(self, engine):
        """Test that category names are unique per owner."""
        with pytest.raises(ValidationError):
            await engine.create_category(OWNER, "venue", "100")

    async def test_total_rolled_back_when_reallocation_fails(self, make_engine, monkeypatch):
        """Test that a failed reallocation restores the previous total on a plain store."""
        storage = InMemoryLedgerStorage(transactional=False)
        engine = make_engine(storage)
        await engine.get_snapshot(OWNER)
        fail_on_call(monkeypatch, storage, "update_allocations", 1)

        with pytest.raises(StorageUnavailableError):
            await engine.set_total_budget(OWNER, "200000")

        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.settings.total_budget == Decimal("100000.00")
        assert snapshot.category_by_name("Venue").allocated_amount == Decimal("35000.00")


class TestReset:
    """Reset removes every expense and zeroes spent amounts."""

    async def test_reset(self, ledger):
        """Test that reset keeps allocations and the total."""
        engine, storage = ledger
        await engine.set_total_budget(OWNER, "80000")
        before = await engine.get_snapshot(OWNER)
        for category in before.categories:
            await engine.add_expense(OWNER, category.id, "Something", "99.99", TODAY)
        other_venue = await category_named(engine, "Venue", owner_id=OTHER_OWNER)
        await engine.add_expense(OTHER_OWNER, other_venue.id, "Theirs", "10", TODAY)

        removed = await engine.reset_ledger(OWNER)

        after = await engine.get_snapshot(OWNER)
        assert removed == 5
        assert after.expenses == []
        assert all(c.spent_amount == 0 for c in after.categories)
        assert after.settings.total_budget == Decimal("80000.00")
        assert {c.id: c.allocated_amount for c in after.categories} == {
            c.id: c.allocated_amount for c in before.categories
        }
        assert len(await storage.list_expenses(OTHER_OWNER)) == 1

    async def test_category_created_during_reset(self, ledger):
        """Test that a category added while a reset runs keeps spent equal to its expenses."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")
        await engine.add_expense(OWNER, venue.id, "Deposit", "100", TODAY)
        storage.slow_down("delete_expenses", 0.2)

        reset = asyncio.create_task(engine.reset_ledger(OWNER))
        await asyncio.sleep(0.05)
        florist = await engine.create_category(OWNER, "Florist", "1000")
        await engine.add_expense(OWNER, florist.id, "Bouquets", "250", TODAY)

        assert await reset == 1
        assert (await category_named(engine, "Florist")).spent_amount == Decimal("250.00")
        assert len(await storage.list_expenses(OWNER)) == 1
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_reset_failure_restores_expenses(self, plain_engine, plain_storage, monkeypatch):
        """Test that a reset failing halfway puts the expenses back."""
        venue = await category_named(plain_engine, "Venue")
        catering = await category_named(plain_engine, "Catering")
        await plain_engine.add_expense(OWNER, venue.id, "Deposit", "100", TODAY)
        await plain_engine.add_expense(OWNER, catering.id, "Cake", "50", TODAY)
        fail_on_call(monkeypatch, plain_storage, "set_spent", 1)

        with pytest.raises(StorageUnavailableError):
            await plain_engine.reset_ledger(OWNER)

        assert len(await plain_storage.list_expenses(OWNER)) == 2
        await assert_spent_matches_expenses(plain_storage, OWNER)


class TestFailureRecovery:
    """Store failures mid-operation."""

    async def test_timeout_rolls_back_transaction(self, engine, storage):
        """Test that a timed out aggregate update leaves no orphan expense."""
        venue = await category_named(engine, "Venue")
        storage.slow_down("increment_spent", 1.0)

        with pytest.raises(StorageUnavailableError) as exc_info:
            await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY, timeout=0.05)

        storage.clear_faults()
        assert exc_info.value.retryable is True
        assert exc_info.value.flagged_categories == []
        assert await storage.list_expenses(OWNER) == []
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("0.00")

    async def test_failed_increment_rolls_back_insert(self, plain_engine, plain_storage, audit_storage):
        """Test that without transactions the orphan expense is deleted again."""
        venue = await category_named(plain_engine, "Venue")
        plain_storage.fail_next("increment_spent")

        with pytest.raises(StorageUnavailableError):
            await plain_engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)

        assert await plain_storage.list_expenses(OWNER) == []
        await assert_spent_matches_expenses(plain_storage, OWNER)
        assert AuditEventType.EXPENSE_ROLLED_BACK in event_types(audit_storage)

    async def test_failed_rollback_is_rederived(self, plain_engine, plain_storage, audit_storage):
        """Test that when the rollback also fails, the aggregate is re-derived to include the expense."""
        venue = await category_named(plain_engine, "Venue")
        plain_storage.fail_next("increment_spent")
        plain_storage.fail_next("delete_expense")

        with pytest.raises(StorageUnavailableError) as exc_info:
            await plain_engine.add_expense(
                OWNER, venue.id, "Deposit", "500", TODAY, idempotency_key="k1",
            )

        assert exc_info.value.flagged_categories == []
        assert len(await plain_storage.list_expenses(OWNER)) == 1
        await assert_spent_matches_expenses(plain_storage, OWNER)
        assert AuditEventType.INTEGRITY_VIOLATION_CORRECTED in event_types(audit_storage)

        # The client retries with the same key and gets the recorded expense back
        retried = await plain_engine.add_expense(
            OWNER, venue.id, "Deposit", "500", TODAY, idempotency_key="k1",
        )
        assert len(await plain_storage.list_expenses(OWNER)) == 1
        assert retried.idempotency_key == "k1"
        assert (await category_named(plain_engine, "Venue")).spent_amount == Decimal("500.00")

    async def test_failed_move_is_compensated(self, plain_engine, plain_storage, monkeypatch):
        """Test that a move failing after the first aggregate update is undone."""
        venue = await category_named(plain_engine, "Venue")
        catering = await category_named(plain_engine, "Catering")
        expense = await plain_engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        # Call 1 decrements Venue, call 2 would credit Catering
        fail_on_call(monkeypatch, plain_storage, "increment_spent", 2)

        with pytest.raises(StorageUnavailableError):
            await plain_engine.edit_expense(OWNER, expense.id, new_category_id=catering.id)

        stored = await plain_storage.get_expense(expense.id)
        assert stored.category_id == venue.id
        assert (await category_named(plain_engine, "Venue")).spent_amount == Decimal("500.00")
        assert (await category_named(plain_engine, "Catering")).spent_amount == Decimal("0.00")
        await assert_spent_matches_expenses(plain_storage, OWNER)

    async def test_unrepairable_category_is_flagged(self, ledger, audit_storage):
        """Test that a category whose re-derivation keeps failing is flagged until a sweep fixes it."""
        engine, storage = ledger
        venue = await category_named(engine, "Venue")
        storage.fail_next("increment_spent")
        # sum_expenses reads list_expenses; fail every re-derivation attempt
        storage.fail_next("list_expenses", times=3)

        with pytest.raises(StorageUnavailableError) as exc_info:
            await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)

        assert exc_info.value.flagged_categories == [venue.id]
        assert engine.pending_reconciliation(OWNER) == [venue.id]
        snapshot = await engine.get_snapshot(OWNER)
        assert snapshot.pending_reconciliation == [venue.id]
        assert AuditEventType.CATEGORY_FLAGGED in event_types(audit_storage)

        results = await engine.sweep()

        assert [r.category_id for r in results] == [venue.id]
        assert engine.pending_reconciliation(OWNER) == []
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_store_down_before_write(self, engine, storage):
        """Test that an unreachable store surfaces as StorageUnavailableError."""
        await engine.get_snapshot(OWNER)
        venue = await category_named(engine, "Venue")
        storage.fail_next("get_category")

        with pytest.raises(StorageUnavailableError):
            await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)

        assert await storage.list_expenses(OWNER) == []

    async def test_cancelled_caller_still_commits(self, engine, storage, notifier):
        """Test that cancelling the caller does not abort a write in progress."""
        venue = await category_named(engine, "Venue")
        calls = []
        notifier.subscribe(OWNER, lambda: calls.append(1))
        storage.slow_down("increment_spent", 0.1)

        task = asyncio.ensure_future(
            engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        )
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await engine.wait_idle()
        await notifier.flush()
        assert len(await storage.list_expenses(OWNER)) == 1
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("500.00")
        assert calls


class TestReconciliation:
    """Drift detection and correction."""

    async def test_reconcile_corrects_drift(self, engine, storage, audit_storage):
        """Test that a drifted aggregate is rewritten and recorded, not raised."""
        venue = await category_named(engine, "Venue")
        await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        storage.corrupt_spent(venue.id, Decimal("999"))

        result = await engine.reconcile_category(venue.id)

        assert result.corrected is True
        assert result.previous_spent == Decimal("999.00")
        assert result.recomputed_spent == Decimal("500.00")
        assert result.drift == Decimal("499.00")
        assert result.expense_count == 1
        assert (await category_named(engine, "Venue")).spent_amount == Decimal("500.00")
        assert AuditEventType.INTEGRITY_VIOLATION_CORRECTED in event_types(audit_storage)

    async def test_reconcile_consistent_category(self, engine):
        """Test that a consistent category is reported unchanged."""
        venue = await category_named(engine, "Venue")

        result = await engine.reconcile_category(venue.id)

        assert result.corrected is False
        assert result.expense_count == 0

    async def test_reconcile_unknown_category(self, engine):
        """Test that reconciling an unknown category fails."""
        with pytest.raises(NotFoundError):
            await engine.reconcile_category("no-such-category")

    async def test_owner_sweep_finds_unflagged_drift(self, engine, storage):
        """Test that an owner sweep checks every category."""
        snapshot = await engine.get_snapshot(OWNER)
        catering = snapshot.category_by_name("Catering")
        storage.corrupt_spent(catering.id, Decimal("42"))

        results = await engine.sweep(OWNER)

        assert len(results) == len(snapshot.categories)
        assert [r.category_id for r in results if r.corrected] == [catering.id]
        await assert_spent_matches_expenses(storage, OWNER)

    async def test_periodic_sweep_clears_flags(self, engine, storage):
        """Test that the background sweep repairs flagged categories."""
        venue = await category_named(engine, "Venue")
        storage.fail_next("increment_spent")
        storage.fail_next("list_expenses", times=3)
        with pytest.raises(StorageUnavailableError):
            await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        assert engine.pending_reconciliation(OWNER) == [venue.id]

        engine.start_periodic_sweep(interval=0.01)
        try:
            for _ in range(100):
                if not engine.pending_reconciliation(OWNER):
                    break
                await asyncio.sleep(0.01)
        finally:
            await engine.stop_periodic_sweep()

        assert engine.pending_reconciliation(OWNER) == []

    async def test_periodic_sweep_failure_is_audited(self, engine, audit_storage, monkeypatch):
        """Test that an unexpected sweep error is recorded and the loop keeps running."""
        calls = []

        async def broken_sweep(*args, **kwargs):
            calls.append(1)
            raise RuntimeError("sweep exploded")

        monkeypatch.setattr(engine, "sweep", broken_sweep)
        engine.start_periodic_sweep(interval=0.01)
        try:
            for _ in range(100):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await engine.stop_periodic_sweep()

        assert len(calls) >= 2
        errors = [e for e in audit_storage.events if e.event_type == AuditEventType.SYSTEM_ERROR]
        assert errors[0].error_message == "sweep exploded"
        assert errors[0].details == {"operation": "periodic_sweep"}


class TestNotifications:
    """Subscribers hear about committed changes only."""

    async def test_mutation_notifies(self, engine, notifier):
        """Test that a committed mutation reaches subscribers."""
        venue = await category_named(engine, "Venue")
        calls = []
        notifier.subscribe(OWNER, lambda: calls.append(OWNER))

        await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        await notifier.flush()

        assert calls == [OWNER]

    async def test_rejected_mutation_is_silent(self, engine, notifier):
        """Test that a failed mutation notifies nobody."""
        venue = await category_named(engine, "Venue")
        calls = []
        notifier.subscribe(OWNER, lambda: calls.append(OWNER))

        with pytest.raises(ValidationError):
            await engine.add_expense(OWNER, venue.id, "Deposit", "-1", TODAY)
        await notifier.flush()

        assert calls == []

    async def test_other_owner_not_notified(self, engine, notifier):
        """Test that notifications are scoped to the owner."""
        venue = await category_named(engine, "Venue")
        calls = []
        notifier.subscribe(OTHER_OWNER, lambda: calls.append(OTHER_OWNER))

        await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        await notifier.flush()

        assert calls == []

    async def test_subscriber_sees_committed_state(self, engine, notifier):
        """Test that a handler refetching the snapshot sees the new expense."""
        venue = await category_named(engine, "Venue")
        seen = []

        async def refetch():
            snapshot = await engine.get_snapshot(OWNER)
            seen.append(snapshot.category_by_id(venue.id).spent_amount)

        notifier.subscribe(OWNER, refetch)
        await engine.add_expense(OWNER, venue.id, "Deposit", "500", TODAY)
        await notifier.flush()

        assert seen == [Decimal("500.00")]
