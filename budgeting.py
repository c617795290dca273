"""
Budget planning for the budget ledger.

This module holds the budget singleton (income and pay period), derives the
remaining and unspent figures from the category ledger, produces the
allocation suggestions and handles allocation edits. Allocation edits are
optimistic: memory changes immediately and the write is queued behind it.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Set

from category_ledger import Category, CategoryLedger
from database_ops import BUDGET_KEY, StorageEngine
from exceptions import FinanceAppError, ValidationError
from utils import parse_allocation, parse_amount, round_currency, round_whole

# Configure logging
logger = logging.getLogger(__name__)

SAVINGS_CATEGORY = "Savings"


class PayPeriod(enum.Enum):
    """How often income arrives."""
    MONTHLY = "monthly"
    BIWEEKLY = "biweekly"

    @classmethod
    def parse(cls, value: Any) -> "PayPeriod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise ValidationError(
                "Pay period must be 'monthly' or 'biweekly'",
                details={"pay_period": value},
                original_error=e
            ) from e


@dataclass
class Budget:
    """
    The single budget record.

    Attributes:
        income: Income per pay period
        pay_period: Monthly or biweekly
    """
    income: float = 0.0
    pay_period: PayPeriod = PayPeriod.MONTHLY

    def to_record(self) -> Dict[str, Any]:
        return {"id": BUDGET_KEY, "income": self.income, "payPeriod": self.pay_period.value}

    @classmethod
    def from_record(cls, record: Mapping) -> "Budget":
        try:
            period = PayPeriod.parse(record.get("payPeriod") or PayPeriod.MONTHLY.value)
        except ValidationError:
            logger.warning(f"Stored pay period {record.get('payPeriod')!r} is invalid; using monthly")
            period = PayPeriod.MONTHLY
        return cls(income=record.get("income") or 0.0, pay_period=period)


@dataclass
class WriteResult:
    """Outcome of a queued allocation write."""
    ok: bool
    category_id: str
    error: Optional[FinanceAppError] = None


class BudgetPlanner:
    """
    Budget figures and suggestions derived from income and categories.

    Income edits are staged and only take effect when committed; a commit
    that fails to persist leaves the displayed income unchanged.
    """

    def __init__(
        self,
        storage: StorageEngine,
        ledger: CategoryLedger,
        savings_ratio: float = 0.10,
        over_budget_tolerance: float = 50.0,
        allocation_warning_ratio: float = 0.40
    ):
        """
        Initialize the budget planner.

        Args:
            storage: StorageEngine instance
            ledger: Category ledger supplying allocations and spent totals
            savings_ratio: Share of income suggested for the Savings category
            over_budget_tolerance: Overspend allowed before warning
            allocation_warning_ratio: Share of income above which one
                category's allocation is flagged
        """
        self.storage = storage
        self.ledger = ledger
        self.savings_ratio = savings_ratio
        self.over_budget_tolerance = over_budget_tolerance
        self.allocation_warning_ratio = allocation_warning_ratio
        self._budget = Budget()
        self.staged_income: float = self._budget.income
        self.staged_pay_period: PayPeriod = self._budget.pay_period
        self._pending: Set[asyncio.Task] = set()
        logger.info("Budget planner initialized")

    @property
    def budget(self) -> Budget:
        return replace(self._budget)

    @property
    def income(self) -> float:
        return self._budget.income

    @property
    def pay_period(self) -> PayPeriod:
        return self._budget.pay_period

    async def load(self) -> Budget:
        """Load the budget record, keeping defaults when none is stored."""
        record = await self.storage.budget.get_one(BUDGET_KEY)
        if record is not None:
            self._budget = Budget.from_record(record)
        self.staged_income = self._budget.income
        self.staged_pay_period = self._budget.pay_period
        logger.info(f"Loaded budget: income {self._budget.income:.2f} ({self._budget.pay_period.value})")
        return self.budget

    def total_allocated(self) -> float:
        return round_currency(sum(category.allocated for category in self.ledger.categories))

    def total_spent(self) -> float:
        return round_currency(sum(category.spent for category in self.ledger.categories))

    def remaining(self) -> float:
        """Income left after allocations (negative when over-allocated)."""
        return round_currency(self._budget.income - self.total_allocated())

    def unspent(self) -> float:
        """Income left after actual spending."""
        return round_currency(self._budget.income - self.total_spent())

    def suggestions(self) -> List[str]:
        """
        Advice strings for the current budget.

        Savings below the configured share of income produces a savings
        suggestion. Allocations exceeding income by more than the tolerance
        produce an over-budget warning.
        """
        income = self._budget.income
        advice: List[str] = []

        savings = self.ledger.find_by_name(SAVINGS_CATEGORY)
        savings_allocated = savings.allocated if savings is not None else 0.0
        target = income * self.savings_ratio
        if savings_allocated < target:
            advice.append(
                f"Consider allocating at least {self.savings_ratio:.0%} to savings (${round_whole(target)})"
            )

        remaining = self.remaining()
        if remaining < -self.over_budget_tolerance:
            advice.append(f"You're over budget! Reduce allocations by ${round_whole(abs(remaining))}")

        return advice

    def allocation_warnings(self) -> List[Category]:
        """Categories whose allocation exceeds the warning share of income."""
        limit = self._budget.income * self.allocation_warning_ratio
        return [category for category in self.ledger.categories if category.allocated > limit]

    def set_allocation(self, category_id: Any, raw_value: Any) -> "asyncio.Task[WriteResult]":
        """
        Change a category's allocation immediately and queue the write.

        The value is parsed as a whole number (leading zeros stripped, invalid
        or negative input becomes 0).

        Returns:
            Task resolving to a WriteResult; write failures are logged, not raised

        Raises:
            NotFound: If the category does not exist
        """
        amount = parse_allocation(raw_value)
        category = self.ledger.set_allocation(category_id, amount)
        logger.info(f"Allocation for '{category.name}' set to {amount}")

        task = asyncio.get_running_loop().create_task(self._persist_allocation(category.id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _persist_allocation(self, category_id: str) -> WriteResult:
        try:
            await self.ledger.persist(category_id)
        except FinanceAppError as e:
            logger.error(f"Failed to save allocation for category {category_id}: {e}")
            return WriteResult(ok=False, category_id=category_id, error=e)
        return WriteResult(ok=True, category_id=category_id)

    async def flush(self) -> List[WriteResult]:
        """Wait for every queued allocation write to finish."""
        if not self._pending:
            return []
        return list(await asyncio.gather(*list(self._pending)))

    def stage_income(self, raw_value: Any) -> float:
        """Stage an income edit; parsed like an allocation field."""
        self.staged_income = float(parse_allocation(raw_value))
        return self.staged_income

    def stage_pay_period(self, value: Any) -> PayPeriod:
        self.staged_pay_period = PayPeriod.parse(value)
        return self.staged_pay_period

    async def commit(self) -> Budget:
        """Persist the staged income and pay period."""
        return await self.save_budget(self.staged_income, self.staged_pay_period)

    async def save_budget(self, income: Any, pay_period: Any) -> Budget:
        """
        Persist a new budget, then make it current.

        Raises:
            ValidationError: If income is negative or not numeric, or the pay
                period is unknown
            StorageUnavailable: If the write fails (the current budget is kept)
        """
        amount = parse_amount(income)
        if amount is None or amount < 0:
            raise ValidationError("Income must be a non-negative number", details={"income": income})
        budget = Budget(income=amount, pay_period=PayPeriod.parse(pay_period))

        await self.storage.budget.put(budget.to_record())

        self._budget = budget
        self.staged_income = budget.income
        self.staged_pay_period = budget.pay_period
        logger.info(f"Budget saved: income {budget.income:.2f} ({budget.pay_period.value})")
        return self.budget
