"""
Transaction store for the budget ledger.

Holds the in-memory transaction list mirrored in the ``transactions``
collection. Every add, edit and delete is written to storage first, then
applied in memory, then forwarded to the category ledger as a spent delta.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional

from category_ledger import CategoryLedger
from database_ops import StorageEngine
from exceptions import NotFound, ValidationError
from utils import coerce_amount, now_millis, parse_amount, parse_timestamp, round_currency

# Configure logging
logger = logging.getLogger(__name__)

ALL_CATEGORIES = "All"


class DateRange(enum.Enum):
    """Date windows offered by the transaction filter."""
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    CUSTOM = "custom"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "DateRange":
        """Parse a range name case-insensitively; unknown names mean no filter."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown date range {value!r}; showing all dates")
            return cls.NONE

    def window_start(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Lower bound of the window, measured from local midnight of ``now``.

        Custom and none have no bound. Transactions dated in the future are
        never excluded.
        """
        local_now = (now or datetime.now().astimezone()).astimezone()
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is DateRange.WEEK:
            return midnight - timedelta(days=7)
        if self is DateRange.MONTH:
            return midnight.replace(day=1)
        if self is DateRange.YEAR:
            return midnight.replace(month=1, day=1)
        return None


@dataclass
class Transaction:
    """
    A single spending record.

    Attributes:
        id: Identifier, creation time in milliseconds (unique per store)
        description: Free text description
        amount: Amount rounded to cents
        category: Name of the category it counts against (may be None)
        date: When it happened, timezone aware
    """
    id: int
    description: str
    amount: float
    category: Optional[str]
    date: datetime

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": self.amount,
            "category": self.category,
            "date": self.date,
        }

    @classmethod
    def from_record(cls, record: Mapping) -> "Transaction":
        return cls(
            id=int(record["id"]),
            description=str(record.get("description") or ""),
            amount=coerce_amount(record.get("amount")),
            category=record.get("category") or None,
            date=parse_timestamp(record.get("date")),
        )


class FilteredTransactions:
    """
    Lazy view over the store's transactions.

    Each iteration walks the store's current list again, so the view can be
    iterated repeatedly. The date window is fixed when the view is created.
    """

    def __init__(self, store: "TransactionStore", category_name: str, start: Optional[datetime]):
        self._store = store
        self.category_name = category_name
        self.start = start

    def _matches(self, transaction: Transaction) -> bool:
        if self.category_name != ALL_CATEGORIES and transaction.category != self.category_name:
            return False
        if self.start is not None and transaction.date < self.start:
            return False
        return True

    def __iter__(self) -> Iterator[Transaction]:
        for transaction in list(self._store._transactions):
            if self._matches(transaction):
                yield replace(transaction)

    def __repr__(self) -> str:
        return f"<FilteredTransactions(category='{self.category_name}', start={self.start})>"


class TransactionStore:
    """
    Manages the transaction list and keeps category spent totals in step.
    """

    def __init__(self, storage: StorageEngine, ledger: CategoryLedger):
        """
        Initialize the transaction store.

        Args:
            storage: StorageEngine instance
            ledger: Category ledger that receives spent deltas
        """
        self.storage = storage
        self.ledger = ledger
        self._transactions: List[Transaction] = []
        self._lock = asyncio.Lock()
        self._last_id = 0
        logger.info("Transaction store initialized")

    @property
    def transactions(self) -> List[Transaction]:
        """Snapshot of all transactions in insertion order."""
        return [replace(transaction) for transaction in self._transactions]

    def __len__(self) -> int:
        return len(self._transactions)

    def _index_of(self, transaction_id: int) -> Optional[int]:
        for index, transaction in enumerate(self._transactions):
            if transaction.id == transaction_id:
                return index
        return None

    def get(self, transaction_id: Any) -> Transaction:
        """Return the transaction with ``transaction_id`` (raises NotFound)."""
        key = self._coerce_id(transaction_id)
        index = self._index_of(key)
        if index is None:
            raise NotFound("Transaction not found", details={"id": transaction_id})
        return replace(self._transactions[index])

    @staticmethod
    def _coerce_id(transaction_id: Any) -> int:
        if transaction_id is None or isinstance(transaction_id, bool):
            raise ValidationError("Transaction id is required", details={"field": "id"})
        try:
            return int(transaction_id)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                "Transaction id must be an integer",
                details={"id": transaction_id},
                original_error=e
            ) from e

    def _new_id(self) -> int:
        candidate = max(now_millis(), self._last_id + 1)
        self._last_id = candidate
        return candidate

    @staticmethod
    def _description(entry: Mapping) -> str:
        description = str(entry.get("description") or "").strip()
        if not description:
            raise ValidationError("Transaction description is required", details={"field": "description"})
        return description

    @staticmethod
    def _category(entry: Mapping) -> Optional[str]:
        category = entry.get("category")
        if category is None:
            return None
        return str(category).strip() or None

    async def load(self) -> List[Transaction]:
        """Load all transactions from storage."""
        records = await self.storage.transactions.get_all()
        self._transactions = [Transaction.from_record(record) for record in records]
        if self._transactions:
            self._last_id = max(transaction.id for transaction in self._transactions)
        logger.info(f"Loaded {len(self._transactions)} transactions")
        return self.transactions

    async def add(self, entry: Mapping) -> Transaction:
        """
        Record a new transaction.

        Args:
            entry: Mapping with description, amount, category and optional date.
                Unparsable amounts become 0; missing or invalid dates become now.

        Returns:
            The stored transaction

        Raises:
            ValidationError: If the description is empty
            StorageUnavailable: If the write fails (nothing changes in memory)
        """
        transaction = Transaction(
            id=0,
            description=self._description(entry),
            amount=coerce_amount(entry.get("amount")),
            category=self._category(entry),
            date=parse_timestamp(entry.get("date")),
        )

        async with self._lock:
            transaction.id = self._new_id()
            await self.storage.transactions.put(transaction.to_record())
            self._transactions.append(transaction)
            logger.info(
                f"Added transaction {transaction.id}: '{transaction.description}' "
                f"{transaction.amount:.2f} ({transaction.category})"
            )
            await self.ledger.apply_transaction_delta(transaction.category, transaction.amount)

        return replace(transaction)

    async def update(self, entry: Mapping) -> Transaction:
        """
        Replace an existing transaction wholesale.

        Spent totals receive the net difference: the old amount comes off the
        old category and the new amount goes onto the new one. Re-applying the
        same edit changes nothing.

        Raises:
            NotFound: If no transaction has the given id
            ValidationError: If the amount is not numeric or the description is empty
        """
        transaction_id = self._coerce_id(entry.get("id"))
        amount = parse_amount(entry.get("amount"))
        if amount is None:
            raise ValidationError(
                "Transaction amount must be a number",
                details={"id": transaction_id, "amount": entry.get("amount")}
            )
        description = self._description(entry)
        category = self._category(entry)

        async with self._lock:
            index = self._index_of(transaction_id)
            if index is None:
                raise NotFound(
                    "Transaction not found; it may have been deleted",
                    details={"id": transaction_id}
                )
            original = self._transactions[index]
            updated = Transaction(
                id=transaction_id,
                description=description,
                amount=amount,
                category=category,
                date=parse_timestamp(entry.get("date"), default=original.date),
            )

            await self.storage.transactions.put(updated.to_record())
            self._transactions[index] = updated
            logger.info(f"Updated transaction {transaction_id}")

            if original.category == updated.category:
                await self.ledger.apply_transaction_delta(
                    updated.category, round_currency(updated.amount - original.amount)
                )
            else:
                await self.ledger.apply_transaction_delta(original.category, -original.amount)
                await self.ledger.apply_transaction_delta(updated.category, updated.amount)

        return replace(updated)

    async def remove(self, transaction_id: Any) -> Transaction:
        """
        Delete a transaction and take its amount off its category.

        Raises:
            NotFound: If no transaction has the given id
        """
        key = self._coerce_id(transaction_id)
        async with self._lock:
            index = self._index_of(key)
            if index is None:
                raise NotFound("Transaction not found", details={"id": transaction_id})

            await self.storage.transactions.delete(key)
            removed = self._transactions.pop(index)
            logger.info(f"Deleted transaction {key}")
            await self.ledger.apply_transaction_delta(removed.category, -removed.amount)

        return replace(removed)

    def list_filtered(
        self,
        category_name: Optional[str] = ALL_CATEGORIES,
        date_range: Any = DateRange.NONE,
        now: Optional[datetime] = None
    ) -> FilteredTransactions:
        """
        Filter transactions by category name and date window.

        Args:
            category_name: Category to match exactly, or "All"
            date_range: week, month, year, custom or none
            now: Reference time for the window (defaults to the current time)

        Returns:
            A lazy, re-iterable view of the matching transactions
        """
        window = DateRange.parse(date_range)
        return FilteredTransactions(
            self,
            category_name or ALL_CATEGORIES,
            window.window_start(now),
        )
