"""
Intent coordinator for the budget ledger.

BudgetApp wires the storage engine, category ledger, transaction store and
budget planner together. User intents are processed one at a time; after each
one the derived view-models are rebuilt so callers always read a consistent
snapshot from ``BudgetApp.views``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import view_models
from budgeting import BudgetPlanner, WriteResult
from category_ledger import Category, CategoryLedger
from database_ops import DEFAULT_TIMEOUT_SECONDS, StorageEngine
from exceptions import FinanceAppError, ValidationError
from transaction_store import ALL_CATEGORIES, DateRange, Transaction, TransactionStore
from utils import resolve_connection_string

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class AppViews:
    """Snapshot of everything derived from the current state."""
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    category_breakdown: List[Dict[str, Any]] = field(default_factory=list)
    spending_trend: List[Dict[str, Any]] = field(default_factory=list)
    allocation_chart: List[Dict[str, Any]] = field(default_factory=list)
    categories: List[Category] = field(default_factory=list)
    income: float = 0.0
    pay_period: str = "monthly"
    remaining: float = 0.0
    unspent: float = 0.0
    suggestions: List[str] = field(default_factory=list)
    allocation_warnings: List[str] = field(default_factory=list)
    category_filter: str = ALL_CATEGORIES
    date_range: str = DateRange.MONTH.value


class BudgetApp:
    """
    Processes user intents against the budget ledger components.
    """

    def __init__(self, storage: StorageEngine, planner_options: Optional[Dict[str, Any]] = None):
        """
        Initialize the app around an already constructed storage engine.

        Args:
            storage: StorageEngine instance
            planner_options: Keyword arguments for BudgetPlanner
        """
        self.storage = storage
        self.ledger = CategoryLedger(storage)
        self.store = TransactionStore(storage, self.ledger)
        self.planner = BudgetPlanner(storage, self.ledger, **(planner_options or {}))
        self.category_filter = ALL_CATEGORIES
        self.date_range = DateRange.MONTH
        self.views = AppViews()
        self._intent_lock = asyncio.Lock()

    @classmethod
    async def open(cls, config: Mapping[str, Any]) -> "BudgetApp":
        """
        Open storage described by ``config`` and load all state.

        Raises:
            StorageUnavailable: If storage cannot be opened or initialized
        """
        storage_cfg = config.get("storage", {})
        budget_cfg = config.get("budget", {})
        categories_cfg = config.get("categories", {})

        storage = StorageEngine(
            resolve_connection_string(dict(config)),
            timeout=float(storage_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
        )
        app = cls(storage, planner_options={
            key: float(budget_cfg[key])
            for key in ("savings_ratio", "over_budget_tolerance", "allocation_warning_ratio")
            if key in budget_cfg
        })

        defaults = categories_cfg.get("defaults", []) if categories_cfg.get("seed_defaults", True) else []
        try:
            await app.start(
                default_categories=defaults,
                reconcile=bool(config.get("reconcile_on_startup", True)),
            )
        except Exception:
            await storage.close()
            raise
        return app

    async def start(self, default_categories: Iterable[Mapping] = (), reconcile: bool = True) -> AppViews:
        """Initialize storage, load state, seed defaults and check spent totals."""
        await self.storage.initialize()
        await self.ledger.load()
        await self.store.load()
        await self.planner.load()

        default_categories = list(default_categories or [])
        if default_categories and not self.ledger.categories:
            await self.ledger.seed_defaults(default_categories)

        if reconcile:
            drift = self.ledger.find_drift(self.store.transactions)
            if drift:
                for name, (stored, expected) in drift.items():
                    logger.warning(f"Category '{name}' spent drifted: stored {stored:.2f}, expected {expected:.2f}")
                await self.ledger.reconcile(self.store.transactions)

        logger.info("Budget ledger ready")
        return self.refresh()

    async def close(self) -> None:
        """Wait for queued allocation writes, then close storage."""
        await self.planner.flush()
        await self.storage.close()

    def refresh(self) -> AppViews:
        """Rebuild the derived view-models from current state."""
        categories = self.ledger.categories
        transactions = self.store.transactions
        filtered = list(self.store.list_filtered(self.category_filter, self.date_range))

        self.views = AppViews(
            transactions=view_models.transaction_rows(filtered, self.ledger.names),
            category_breakdown=view_models.category_breakdown(categories, transactions),
            spending_trend=view_models.spending_trend(transactions),
            allocation_chart=view_models.allocation_chart(categories),
            categories=categories,
            income=self.planner.income,
            pay_period=self.planner.pay_period.value,
            remaining=self.planner.remaining(),
            unspent=self.planner.unspent(),
            suggestions=self.planner.suggestions(),
            allocation_warnings=[category.name for category in self.planner.allocation_warnings()],
            category_filter=self.category_filter,
            date_range=self.date_range.value,
        )
        return self.views

    async def _dispatch(self, intent: str, handler: Callable[[], Awaitable[Any]]) -> Any:
        async with self._intent_lock:
            logger.debug(f"Processing intent '{intent}'")
            try:
                return await handler()
            finally:
                if self.ledger.needs_reconcile:
                    await self._repair_spent_totals()
                self.refresh()

    async def _repair_spent_totals(self) -> None:
        try:
            await self.ledger.reconcile(self.store.transactions)
        except FinanceAppError as e:
            logger.error(f"Could not repair category spent totals; will retry after the next intent: {e}")

    async def add_transaction(self, draft: Mapping[str, Any]) -> Transaction:
        """Record a transaction; a missing category defaults to the first one."""
        async def handler():
            categories = self.ledger.categories
            if not categories:
                raise ValidationError("Please create categories first")
            entry = dict(draft)
            if not entry.get("category"):
                entry["category"] = categories[0].name
            return await self.store.add(entry)
        return await self._dispatch("add_transaction", handler)

    async def edit_transaction(self, transaction: Mapping[str, Any]) -> Transaction:
        return await self._dispatch("edit_transaction", lambda: self.store.update(transaction))

    async def delete_transaction(self, transaction_id: Any) -> Transaction:
        return await self._dispatch("delete_transaction", lambda: self.store.remove(transaction_id))

    async def set_category_filter(self, category_name: Optional[str]) -> AppViews:
        async def handler():
            self.category_filter = category_name or ALL_CATEGORIES
            return None
        await self._dispatch("set_category_filter", handler)
        return self.views

    async def set_date_range(self, date_range: Any) -> AppViews:
        async def handler():
            self.date_range = DateRange.parse(date_range)
            return None
        await self._dispatch("set_date_range", handler)
        return self.views

    async def add_category(self, name: str) -> Category:
        return await self._dispatch("add_category", lambda: self.ledger.add_custom(name))

    async def remove_category(self, category_id: Any) -> Category:
        return await self._dispatch("remove_category", lambda: self.ledger.remove(category_id))

    async def reorder_category(self, category_id: Any, new_index: int) -> List[Category]:
        return await self._dispatch(
            "reorder_category", lambda: self.ledger.reorder(category_id, new_index)
        )

    async def set_allocation(self, category_id: Any, raw_value: Any) -> "asyncio.Task[WriteResult]":
        """Apply an allocation immediately; the returned task reports the write."""
        async def handler():
            return self.planner.set_allocation(category_id, raw_value)
        return await self._dispatch("set_allocation", handler)

    async def stage_income(self, value: Any) -> float:
        async def handler():
            return self.planner.stage_income(value)
        return await self._dispatch("stage_income", handler)

    async def stage_pay_period(self, period: Any):
        async def handler():
            return self.planner.stage_pay_period(period)
        return await self._dispatch("stage_pay_period", handler)

    async def commit_budget(self):
        return await self._dispatch("commit_budget", self.planner.commit)

    async def reconcile(self) -> Dict[str, float]:
        """Recompute spent totals from the full transaction list."""
        return await self._dispatch(
            "reconcile", lambda: self.ledger.reconcile(self.store.transactions)
        )
