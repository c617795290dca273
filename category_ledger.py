"""
Category ledger for budget categories and their running spent totals.

The ledger owns the category collection. It is the single mutation point for
category state: transaction-driven spent updates, reordering, creation and
removal all go through one lock, so they never interleave against the same
in-memory list. Spent totals are maintained incrementally and can always be
rebuilt from the transaction collection with ``reconcile``.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from database_ops import StorageEngine
from exceptions import DuplicateName, FinanceAppError, NotFound, ValidationError
from utils import now_millis, round_currency

# Configure logging
logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


class CategoryType(enum.Enum):
    """Informational category kinds."""
    ESSENTIAL = "essential"
    SAVINGS = "savings"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> "CategoryType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.debug(f"Unknown category type {value!r}; treating as custom")
            return cls.CUSTOM


@dataclass
class Category:
    """
    A budget category.

    Attributes:
        id: Category identifier
        name: Display name, used to match transactions
        allocated: Planned amount for the period
        spent: Sum of matching transaction amounts
        type: Informational category kind
        order: Display position
    """
    id: str
    name: str
    allocated: float = 0.0
    spent: float = 0.0
    type: CategoryType = CategoryType.CUSTOM
    order: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "allocated": self.allocated,
            "spent": self.spent,
            "type": self.type.value,
            "order": self.order,
        }

    @classmethod
    def from_record(cls, record: Mapping) -> "Category":
        return cls(
            id=str(record["id"]),
            name=str(record.get("name") or ""),
            allocated=record.get("allocated") or 0.0,
            spent=round_currency(record.get("spent") or 0.0),
            type=CategoryType.parse(record.get("type")),
            order=record.get("order") or 0,
        )


def compute_spent(transactions: Iterable[Any]) -> Dict[str, float]:
    """
    Total transaction amounts per category name.

    Totals are accumulated with the same cent rounding used by the incremental
    path so both produce identical values.
    """
    totals: Dict[str, float] = {}
    for transaction in transactions:
        name = getattr(transaction, "category", None)
        if not name:
            continue
        totals[name] = round_currency(totals.get(name, 0.0) + (transaction.amount or 0.0))
    return totals


class CategoryLedger:
    """
    Maintains categories and their spent totals.

    Every write is persisted before the in-memory list changes, except for
    ``set_allocation`` which is the optimistic half of the allocation edit
    path (``persist`` is the other half).
    """

    def __init__(self, storage: StorageEngine):
        """
        Initialize the category ledger.

        Args:
            storage: StorageEngine instance
        """
        self.storage = storage
        self._categories: List[Category] = []
        self._lock = asyncio.Lock()
        self._last_id = 0
        self.needs_reconcile = False
        logger.info("Category ledger initialized")

    @property
    def categories(self) -> List[Category]:
        """Snapshot of the categories in display order."""
        return [replace(category) for category in self._categories]

    @property
    def names(self) -> List[str]:
        return [category.name for category in self._categories]

    def _index_by_id(self, category_id: Any) -> Optional[int]:
        key = str(category_id)
        for index, category in enumerate(self._categories):
            if category.id == key:
                return index
        return None

    def _index_by_name(self, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        for index, category in enumerate(self._categories):
            if category.name == name:
                return index
        return None

    def _require_index(self, category_id: Any) -> int:
        index = self._index_by_id(category_id)
        if index is None:
            raise NotFound("Category not found", details={"category_id": category_id})
        return index

    def get(self, category_id: Any) -> Category:
        """Return the category with ``category_id`` (raises NotFound)."""
        return replace(self._categories[self._require_index(category_id)])

    def find_by_name(self, name: Optional[str]) -> Optional[Category]:
        index = self._index_by_name(name)
        return replace(self._categories[index]) if index is not None else None

    def display_name(self, category_name: Optional[str]) -> str:
        """Name to show for a transaction's category; orphans show as Uncategorized."""
        if self._index_by_name(category_name) is None:
            return UNCATEGORIZED
        return category_name

    def _new_id(self) -> str:
        existing = {category.id for category in self._categories}
        candidate = max(now_millis(), self._last_id + 1)
        while str(candidate) in existing:
            candidate += 1
        self._last_id = candidate
        return str(candidate)

    def _next_position(self) -> int:
        if not self._categories:
            return 0
        return max(category.order for category in self._categories) + 1

    async def load(self) -> List[Category]:
        """Load categories from storage in display order."""
        records = await self.storage.categories.get_all()
        loaded = [Category.from_record(record) for record in records]
        # Storage returns display order; positions are made explicit in memory
        for position, category in enumerate(loaded):
            category.order = position

        seen = set()
        for category in loaded:
            if category.name in seen:
                logger.warning(f"Duplicate category name '{category.name}' found in storage")
            seen.add(category.name)

        self._categories = loaded
        logger.info(f"Loaded {len(loaded)} categories")
        return self.categories

    async def seed_defaults(self, defaults: Iterable[Mapping]) -> List[Category]:
        """
        Persist the default category set when no categories exist yet.

        Args:
            defaults: Mappings with ``name`` and optional ``id`` / ``type``

        Returns:
            The categories that were created (empty if categories already existed)
        """
        async with self._lock:
            if self._categories:
                return []

            created: List[Category] = []
            names = set()
            for raw in defaults:
                name = str(raw.get("name") or "").strip()
                if not name or name in names:
                    logger.warning(f"Skipping invalid default category {raw!r}")
                    continue
                category = Category(
                    id=str(raw.get("id") or self._new_id()),
                    name=name,
                    type=CategoryType.parse(raw.get("type")),
                    order=len(created),
                )
                await self.storage.categories.put(category.to_record())
                created.append(category)
                names.add(name)

            self._categories = created
            logger.info(f"Seeded {len(created)} default categories")
            return [replace(category) for category in created]

    async def apply_transaction_delta(self, category_name: Optional[str], amount_delta: float) -> Optional[Category]:
        """
        Adjust a category's spent total by a signed amount.

        Unknown category names drop the delta; the transaction simply counts
        as uncategorized.

        Args:
            category_name: Name referenced by the transaction
            amount_delta: Positive on add, negative on delete

        Returns:
            The updated category, or None if no category matched

        Raises:
            StorageUnavailable / DatabaseError: If the write fails; the ledger
                is then flagged with ``needs_reconcile``
        """
        async with self._lock:
            index = self._index_by_name(category_name)
            if index is None:
                if category_name:
                    logger.warning(
                        f"No category named '{category_name}'; dropping spent change of {amount_delta:.2f}"
                    )
                return None
            if not amount_delta:
                return replace(self._categories[index])

            current = self._categories[index]
            new_spent = round_currency(current.spent + amount_delta)
            try:
                await self.storage.categories.put(replace(current, spent=new_spent).to_record())
            except FinanceAppError as e:
                self.needs_reconcile = True
                logger.error(f"Failed to persist spent total for '{category_name}': {e}")
                raise

            # Re-read: an optimistic allocation edit may have landed during the write
            self._categories[index] = replace(self._categories[index], spent=new_spent)
            logger.debug(f"Category '{category_name}' spent {current.spent:.2f} -> {new_spent:.2f}")
            return replace(self._categories[index])

    def find_drift(self, transactions: Iterable[Any]) -> Dict[str, Tuple[float, float]]:
        """
        Compare stored spent totals with totals recomputed from transactions.

        Returns:
            Mapping of category name to (stored, expected) for mismatches only
        """
        totals = compute_spent(transactions)
        drift: Dict[str, Tuple[float, float]] = {}
        for category in self._categories:
            expected = totals.get(category.name, 0.0)
            if category.spent != expected:
                drift[category.name] = (category.spent, expected)
        return drift

    async def reconcile(self, transactions: Iterable[Any]) -> Dict[str, float]:
        """
        Recompute every category's spent total from the full transaction list.

        Categories whose total changed are persisted together in one write.

        Returns:
            Mapping of category name to spent total
        """
        totals = compute_spent(transactions)
        async with self._lock:
            changed = {
                index: totals.get(category.name, 0.0)
                for index, category in enumerate(self._categories)
                if category.spent != totals.get(category.name, 0.0)
            }
            await self.storage.categories.put_many(
                replace(self._categories[index], spent=expected).to_record()
                for index, expected in changed.items()
            )
            repaired = []
            for index, expected in changed.items():
                self._categories[index] = replace(self._categories[index], spent=expected)
                repaired.append(self._categories[index].name)

            self.needs_reconcile = False
            if repaired:
                logger.warning(f"Reconciled spent totals for: {', '.join(repaired)}")
            else:
                logger.info("Category spent totals are consistent with transactions")
            return {category.name: category.spent for category in self._categories}

    async def reorder(self, category_id: Any, new_index: int) -> List[Category]:
        """
        Move a category to ``new_index`` and renumber every category.

        Only ``order`` values change. Categories whose position changed are
        persisted in a single write before the in-memory order is replaced,
        so a failed write leaves both storage and memory untouched.

        Raises:
            NotFound: If the category does not exist
            ValidationError: If ``new_index`` is outside the list
        """
        async with self._lock:
            old_index = self._require_index(category_id)
            if not isinstance(new_index, int) or not 0 <= new_index < len(self._categories):
                raise ValidationError(
                    "Reorder index out of range",
                    details={"new_index": new_index, "size": len(self._categories)}
                )

            sequence = list(self._categories)
            sequence.insert(new_index, sequence.pop(old_index))

            reordered = [replace(category, order=position) for position, category in enumerate(sequence)]
            await self.storage.categories.put_many(
                category.to_record()
                for category, previous in zip(reordered, sequence)
                if category.order != previous.order
            )

            self._categories = reordered
            logger.info(f"Moved category {category_id} from position {old_index} to {new_index}")
            return self.categories

    async def add_custom(self, name: str) -> Category:
        """
        Create a custom category with nothing allocated or spent.

        Raises:
            ValidationError: If the name is empty or whitespace
            DuplicateName: If a category with the same name exists (case-sensitive)
        """
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Category name cannot be empty", details={"field": "name"})

        async with self._lock:
            if self._index_by_name(cleaned) is not None:
                raise DuplicateName("Category already exists", details={"name": cleaned})

            category = Category(
                id=self._new_id(),
                name=cleaned,
                type=CategoryType.CUSTOM,
                order=self._next_position(),
            )
            await self.storage.categories.put(category.to_record())
            self._categories.append(category)
            logger.info(f"Created custom category '{cleaned}' ({category.id})")
            return replace(category)

    async def remove(self, category_id: Any) -> Category:
        """
        Remove a category.

        Transactions that reference it are left untouched and show as
        Uncategorized.
        """
        async with self._lock:
            index = self._require_index(category_id)
            category = self._categories[index]
            await self.storage.categories.delete(category.id)
            self._categories.pop(index)
            logger.info(f"Removed category '{category.name}' ({category.id})")
            return replace(category)

    def set_allocation(self, category_id: Any, amount: float) -> Category:
        """Update a category's allocation in memory only (see ``persist``)."""
        index = self._require_index(category_id)
        self._categories[index] = replace(self._categories[index], allocated=amount)
        return replace(self._categories[index])

    async def persist(self, category_id: Any) -> Optional[Category]:
        """
        Write the current in-memory state of a category to storage.

        Returns:
            The category written, or None if it was removed in the meantime
        """
        async with self._lock:
            index = self._index_by_id(category_id)
            if index is None:
                logger.debug(f"Category {category_id} no longer exists; nothing to persist")
                return None
            category = replace(self._categories[index])
            await self.storage.categories.put(category.to_record())
            return category
