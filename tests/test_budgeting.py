"""
Tests for the budget planner: remaining balance, suggestions, optimistic
allocation writes and the two-phase income save.
"""

from unittest.mock import AsyncMock

import pytest

from budgeting import Budget, BudgetPlanner, PayPeriod
from exceptions import NotFound, StorageUnavailable, ValidationError


@pytest.mark.asyncio
class TestRemaining:
    async def test_defaults_without_stored_budget(self, planner):
        assert planner.income == 0
        assert planner.pay_period is PayPeriod.MONTHLY
        assert planner.remaining() == 0

    async def test_remaining_tracks_allocations(self, planner):
        await planner.save_budget(3000, "monthly")
        assert planner.remaining() == 3000

        await planner.set_allocation("1", "1200")
        await planner.set_allocation("2", 400)
        assert planner.remaining() == 1400
        assert planner.remaining() == planner.income - sum(c.allocated for c in planner.ledger.categories)

    async def test_unspent_uses_spent_totals(self, planner, ledger):
        await planner.save_budget(1000, "monthly")
        await ledger.apply_transaction_delta("Groceries", 120.5)
        assert planner.unspent() == 879.5


@pytest.mark.asyncio
class TestSuggestions:
    async def test_savings_suggestion(self, planner):
        await planner.save_budget(3000, "monthly")
        await planner.set_allocation("3", 0)

        assert planner.suggestions() == ["Consider allocating at least 10% to savings ($300)"]

    async def test_no_suggestions_when_savings_met(self, planner):
        await planner.save_budget(3000, "monthly")
        await planner.set_allocation("3", 300)
        assert planner.suggestions() == []

    async def test_over_budget_warning(self, planner):
        await planner.save_budget(1000, "monthly")
        await planner.set_allocation("1", 900)
        await planner.set_allocation("2", 200)
        await planner.set_allocation("3", 100)

        assert planner.remaining() == -200
        assert planner.suggestions() == ["You're over budget! Reduce allocations by $200"]

    async def test_small_overspend_within_tolerance(self, planner):
        await planner.save_budget(1000, "monthly")
        await planner.set_allocation("1", 950)
        await planner.set_allocation("3", 100)
        assert planner.remaining() == -50
        assert planner.suggestions() == []

    async def test_both_suggestions_in_order(self, planner):
        await planner.save_budget(500, "monthly")
        await planner.set_allocation("1", 700)

        assert planner.suggestions() == [
            "Consider allocating at least 10% to savings ($50)",
            "You're over budget! Reduce allocations by $200",
        ]

    async def test_missing_savings_category_counts_as_zero(self, planner, ledger):
        await planner.save_budget(1234, "monthly")
        await ledger.remove("3")
        assert planner.suggestions() == ["Consider allocating at least 10% to savings ($123)"]

    async def test_allocation_warnings(self, planner):
        await planner.save_budget(1000, "monthly")
        await planner.set_allocation("1", 450)
        await planner.set_allocation("2", 400)
        assert [c.name for c in planner.allocation_warnings()] == ["Rent"]


@pytest.mark.asyncio
class TestAllocationWrites:
    @pytest.mark.parametrize(
        "raw, expected",
        [("0200", 200), ("", 0), ("abc", 0), ("-50", 0), ("75", 75), (float("nan"), 0), (float("inf"), 0)],
    )
    async def test_allocation_parsing(self, planner, raw, expected):
        result = await planner.set_allocation("2", raw)
        assert result.ok
        assert planner.ledger.get("2").allocated == expected

    async def test_memory_updates_before_write(self, storage, planner):
        task = planner.set_allocation("1", "1500")
        assert planner.ledger.get("1").allocated == 1500

        result = await task
        assert result.ok and result.error is None
        assert (await storage.categories.get_one("1"))["allocated"] == 1500

    async def test_no_clamping_against_remaining(self, planner):
        await planner.save_budget(100, "monthly")
        await planner.set_allocation("1", 5000)
        assert planner.ledger.get("1").allocated == 5000

    async def test_failed_write_is_reported_not_raised(self, planner, caplog):
        planner.ledger.persist = AsyncMock(side_effect=StorageUnavailable("Storage is unavailable"))

        result = await planner.set_allocation("1", "900")

        assert result.ok is False
        assert isinstance(result.error, StorageUnavailable)
        assert planner.ledger.get("1").allocated == 900
        assert "Failed to save allocation" in caplog.text

    async def test_unknown_category(self, planner):
        with pytest.raises(NotFound):
            planner.set_allocation("missing", "10")

    async def test_flush_waits_for_pending_writes(self, storage, planner):
        planner.set_allocation("1", "10")
        planner.set_allocation("2", "20")
        results = await planner.flush()

        assert len(results) == 2 and all(r.ok for r in results)
        assert (await storage.categories.get_one("2"))["allocated"] == 20


@pytest.mark.asyncio
class TestBudgetSave:
    async def test_save_and_reload(self, storage, ledger, planner):
        saved = await planner.save_budget("2500", "biweekly")
        assert saved == Budget(income=2500.0, pay_period=PayPeriod.BIWEEKLY)

        reloaded = BudgetPlanner(storage, ledger)
        await reloaded.load()
        assert reloaded.budget == saved

    async def test_stage_then_commit(self, planner):
        planner.stage_income("03000")
        planner.stage_pay_period("Biweekly")
        assert planner.income == 0

        budget = await planner.commit()
        assert budget.income == 3000
        assert planner.pay_period is PayPeriod.BIWEEKLY

    async def test_failed_save_keeps_displayed_income(self, planner, monkeypatch):
        await planner.save_budget(1000, "monthly")
        failing = planner.storage.budget
        failing.put = AsyncMock(side_effect=StorageUnavailable("Storage is unavailable"))
        monkeypatch.setattr(planner.storage, "collection", lambda name: failing)

        planner.stage_income("2000")
        with pytest.raises(StorageUnavailable):
            await planner.commit()
        assert planner.income == 1000

    @pytest.mark.parametrize("income", [-1, "abc", None])
    async def test_invalid_income(self, planner, income):
        with pytest.raises(ValidationError):
            await planner.save_budget(income, "monthly")

    async def test_invalid_pay_period(self, planner):
        with pytest.raises(ValidationError):
            planner.stage_pay_period("weekly")
        with pytest.raises(ValidationError):
            await planner.save_budget(100, "fortnightly")
