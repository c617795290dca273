"""
Storage engine for the budget ledger.

This module persists the three record collections (transactions, categories
and the budget singleton) using SQLAlchemy ORM. SQLite is the default backend.
Every database call runs on one dedicated worker thread and is awaited from
asyncio, so callers get coroutines while writes are applied strictly in the
order they were submitted.
"""

import asyncio
import logging
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    create_engine,
    inspect,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from exceptions import DatabaseError, StorageUnavailable, ValidationError

# Configure logging
logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3
DEFAULT_TIMEOUT_SECONDS = 5.0

TRANSACTIONS = "transactions"
CATEGORIES = "categories"
BUDGET = "budget"
BUDGET_KEY = "current"


def _as_utc(value: Any) -> Optional[datetime]:
    """SQLite drops tzinfo, so values are stored as UTC wall time and re-tagged on read."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"expected a datetime or ISO 8601 string, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Base class for declarative models
Base = declarative_base()


class SchemaVersion(Base):
    """Single-row table recording the schema version the database was built with."""

    __tablename__ = "schema_version"

    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False)


class TransactionRecord(Base):
    """
    SQLAlchemy model for a stored transaction.

    Attributes:
        id: Time-based identifier assigned by the transaction store
        description: Free text description
        amount: Currency amount
        category: Category name (not an enforced foreign key)
        date: When the transaction happened (UTC)
    """

    __tablename__ = TRANSACTIONS

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    description = Column(String(500), nullable=False, default="")
    amount = Column(Float, nullable=False, default=0.0)
    category = Column(String(100), nullable=True, index=True)
    date = Column(DateTime(timezone=True), nullable=True, index=True)

    @classmethod
    def sort_keys(cls) -> Tuple[Any, ...]:
        return (cls.id.asc(),)

    @staticmethod
    def coerce_key(key: Any) -> int:
        return int(key)

    @classmethod
    def from_record(cls, record: Mapping) -> "TransactionRecord":
        return cls(
            id=int(record["id"]),
            description=str(record.get("description") or ""),
            amount=float(record.get("amount") or 0.0),
            category=record.get("category"),
            date=_as_utc(record.get("date")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": self.amount,
            "category": self.category,
            "date": _as_utc(self.date),
        }

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord(id={self.id}, date={self.date}, "
            f"description='{(self.description or '')[:30]}', amount={self.amount})>"
        )


class CategoryRecord(Base):
    """
    SQLAlchemy model for a stored budget category.

    Attributes:
        id: Category identifier
        name: Display name, joined against transaction.category
        allocated: Planned amount for the period
        spent: Running total of matching transactions
        type: essential, savings or custom
        order: Display position
    """

    __tablename__ = CATEGORIES

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False, index=True)
    allocated = Column(Float, nullable=False, default=0.0)
    spent = Column(Float, nullable=False, default=0.0)
    type = Column(String(20), nullable=False, default="custom")
    order = Column("order", Integer, nullable=True)

    @classmethod
    def sort_keys(cls) -> Tuple[Any, ...]:
        # Records written before reordering existed have no position and sort last
        return (cls.order.is_(None), cls.order.asc(), cls.id.asc())

    @staticmethod
    def coerce_key(key: Any) -> str:
        return str(key)

    @classmethod
    def from_record(cls, record: Mapping) -> "CategoryRecord":
        order = record.get("order")
        return cls(
            id=str(record["id"]),
            name=str(record.get("name") or ""),
            allocated=float(record.get("allocated") or 0.0),
            spent=float(record.get("spent") or 0.0),
            type=str(record.get("type") or "custom"),
            order=None if order is None else int(order),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "allocated": self.allocated,
            "spent": self.spent,
            "type": self.type,
            "order": self.order,
        }

    def __repr__(self) -> str:
        return (
            f"<CategoryRecord(id={self.id}, name='{self.name}', allocated={self.allocated}, "
            f"spent={self.spent}, order={self.order})>"
        )


class BudgetRecord(Base):
    """SQLAlchemy model for the budget singleton (id is always 'current')."""

    __tablename__ = BUDGET

    id = Column(String(32), primary_key=True)
    income = Column(Float, nullable=False, default=0.0)
    pay_period = Column("payPeriod", String(20), nullable=False, default="monthly")

    @classmethod
    def sort_keys(cls) -> Tuple[Any, ...]:
        return (cls.id.asc(),)

    @staticmethod
    def coerce_key(key: Any) -> str:
        return str(key)

    @classmethod
    def from_record(cls, record: Mapping) -> "BudgetRecord":
        return cls(
            id=str(record["id"]),
            income=float(record.get("income") or 0.0),
            pay_period=str(record.get("payPeriod") or "monthly"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "income": self.income, "payPeriod": self.pay_period}

    def __repr__(self) -> str:
        return f"<BudgetRecord(id={self.id}, income={self.income}, payPeriod={self.pay_period})>"


COLLECTION_MODELS = {
    TRANSACTIONS: TransactionRecord,
    CATEGORIES: CategoryRecord,
    BUDGET: BudgetRecord,
}


def _engine_options(connection_string: str) -> Dict[str, Any]:
    """Engine keyword arguments for the given backend."""
    url = make_url(connection_string)
    if not url.drivername.startswith("sqlite"):
        return {}
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    return options


class Collection:
    """
    Key based access to one record collection.

    Records are plain dictionaries using the persisted layout; ``put`` inserts
    or replaces by ``record["id"]``.
    """

    def __init__(self, engine: "StorageEngine", name: str, model: Any):
        self._engine = engine
        self.name = name
        self.model = model

    def _key(self, key: Any) -> Any:
        try:
            return self.model.coerce_key(key)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "Invalid record key",
                details={"collection": self.name, "key": key},
                original_error=exc
            ) from exc

    async def get_all(self) -> List[Dict[str, Any]]:
        """Return every record in the collection's natural order."""
        model = self.model

        def query(session: Session) -> List[Dict[str, Any]]:
            rows = session.query(model).order_by(*model.sort_keys()).all()
            return [row.to_record() for row in rows]

        records = await self._engine.run_in_session(f"{self.name}.get_all", query)
        logger.debug(f"Retrieved {len(records)} records from '{self.name}'")
        return records

    async def get_one(self, key: Any) -> Optional[Dict[str, Any]]:
        """Return the record stored under ``key``, or None."""
        model = self.model
        lookup = self._key(key)

        def query(session: Session) -> Optional[Dict[str, Any]]:
            row = session.get(model, lookup)
            return row.to_record() if row is not None else None

        return await self._engine.run_in_session(f"{self.name}.get_one", query)

    def _instance(self, record: Mapping) -> Any:
        if not isinstance(record, Mapping) or record.get("id") in (None, ""):
            raise ValidationError("Record requires an id", details={"collection": self.name})
        try:
            return self.model.from_record(record)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "Record has invalid field values",
                details={"collection": self.name, "id": record.get("id"), "error": str(exc)},
                original_error=exc
            ) from exc

    async def put(self, record: Mapping) -> None:
        """Insert or replace a record keyed by its id."""
        instance = self._instance(record)

        def write(session: Session) -> None:
            session.merge(instance)

        await self._engine.run_in_session(f"{self.name}.put", write, write=True)
        logger.debug(f"Stored record id={instance.id} in '{self.name}'")

    async def put_many(self, records: Iterable[Mapping]) -> int:
        """
        Insert or replace several records in one transaction.

        Either every record is stored or, on failure, none is.

        Returns:
            Number of records written
        """
        instances = [self._instance(record) for record in records]
        if not instances:
            return 0

        def write(session: Session) -> None:
            for instance in instances:
                session.merge(instance)

        await self._engine.run_in_session(f"{self.name}.put_many", write, write=True)
        logger.debug(f"Stored {len(instances)} records in '{self.name}'")
        return len(instances)

    async def delete(self, key: Any) -> bool:
        """
        Delete the record stored under ``key``.

        Returns:
            True if a record was removed, False if none existed
        """
        model = self.model
        lookup = self._key(key)

        def write(session: Session) -> bool:
            removed = session.query(model).filter(model.id == lookup).delete()
            return removed > 0

        removed = await self._engine.run_in_session(f"{self.name}.delete", write, write=True)
        logger.debug(f"Deleted id={lookup} from '{self.name}' (existed={removed})")
        return removed


class StorageEngine:
    """
    Owns the database engine and exposes the record collections.

    The engine is opened once at process start, initialized (idempotently) on
    first use and closed at shutdown. All database work is queued on a single
    worker thread; each call is bounded by ``timeout`` seconds.
    """

    def __init__(self, connection_string: str, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """
        Initialize the storage engine.

        Args:
            connection_string: SQLAlchemy connection string (e.g., 'sqlite:///data/budget.db')
            timeout: Seconds to wait for any single storage operation

        Raises:
            StorageUnavailable: If the engine cannot be created
        """
        self.timeout = timeout
        self._closed = False
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="budget-storage")
        try:
            self.engine = create_engine(connection_string, echo=False, **_engine_options(connection_string))
            self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        except SQLAlchemyError as e:
            self._executor.shutdown(wait=False)
            logger.error(f"Failed to create storage engine: {e}")
            raise StorageUnavailable(
                "Failed to open storage",
                details={"operation": "open", "error": str(e)},
                original_error=e
            ) from e
        logger.info(f"Storage engine created for {self.engine.url.render_as_string(hide_password=True)}")

    @property
    def transactions(self) -> Collection:
        return self.collection(TRANSACTIONS)

    @property
    def categories(self) -> Collection:
        return self.collection(CATEGORIES)

    @property
    def budget(self) -> Collection:
        return self.collection(BUDGET)

    def collection(self, name: str) -> Collection:
        """Return the collection called ``name``."""
        model = COLLECTION_MODELS.get(name)
        if model is None:
            raise ValidationError(
                "Unknown collection",
                details={"collection": name, "known": ", ".join(sorted(COLLECTION_MODELS))}
            )
        return Collection(self, name, model)

    def get_session(self) -> Session:
        """
        Get a new database session.

        Note:
            Caller is responsible for closing the session.
        """
        return self.SessionLocal()

    async def initialize(self) -> int:
        """
        Create missing collections and record the schema version.

        Safe to call repeatedly; only the first successful call touches the
        database.

        Returns:
            The schema version now in effect

        Raises:
            StorageUnavailable: If the database cannot be reached or was
                written by a newer schema version
        """
        if self._initialized:
            return SCHEMA_VERSION
        async with self._init_lock:
            if not self._initialized:
                await self._run("initialize", self._initialize_schema)
                self._initialized = True
        return SCHEMA_VERSION

    def _read_schema_version(self, existing_tables: set) -> int:
        if SchemaVersion.__tablename__ not in existing_tables:
            return 0
        session = self.get_session()
        try:
            row = session.get(SchemaVersion, 1)
            return row.version if row is not None else 0
        finally:
            session.close()

    def _ensure_category_order_column(self) -> None:
        """Databases created before reordering existed lack the order column."""
        columns = {column["name"] for column in inspect(self.engine).get_columns(CATEGORIES)}
        if "order" in columns:
            return
        with self.engine.begin() as connection:
            connection.execute(text('ALTER TABLE categories ADD COLUMN "order" INTEGER'))
        logger.info("Added 'order' column to categories table")

    def _initialize_schema(self) -> None:
        existing_tables = set(inspect(self.engine).get_table_names())
        stored_version = self._read_schema_version(existing_tables)

        if stored_version > SCHEMA_VERSION:
            logger.error(
                "Database schema version %d is newer than supported version %d",
                stored_version, SCHEMA_VERSION
            )
            raise StorageUnavailable(
                "Storage is blocked by a newer schema version",
                details={"stored_version": stored_version, "supported_version": SCHEMA_VERSION}
            )

        missing = [name for name in COLLECTION_MODELS if name not in existing_tables]
        # create_all only issues CREATE TABLE for tables that do not exist yet
        Base.metadata.create_all(self.engine)
        if CATEGORIES in existing_tables:
            self._ensure_category_order_column()

        if stored_version < SCHEMA_VERSION:
            session = self.get_session()
            try:
                session.merge(SchemaVersion(id=1, version=SCHEMA_VERSION))
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
            finally:
                session.close()
            logger.info(
                "Storage schema upgraded from version %d to %d (created collections: %s)",
                stored_version, SCHEMA_VERSION, ", ".join(missing) or "none"
            )
        else:
            logger.info("Storage schema version %d verified", SCHEMA_VERSION)

    def _session_call(
        self,
        func: Callable[[Session], Any],
        write: bool,
        abandoned: Optional[threading.Event] = None
    ) -> Any:
        session = self.get_session()
        try:
            result = func(session)
            if write:
                # The caller already gave up and reported failure
                if abandoned is not None and abandoned.is_set():
                    session.rollback()
                    logger.warning("Rolled back a write that finished after its caller timed out")
                    return None
                session.commit()
            return result
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    async def run_in_session(
        self,
        operation: str,
        func: Callable[[Session], Any],
        *,
        write: bool = False
    ) -> Any:
        """
        Run ``func(session)`` on the storage thread, committing when ``write``.

        Initializes the schema first if needed. A write that times out is
        rolled back when the storage thread gets to it.
        """
        await self.initialize()
        abandoned = threading.Event()
        return await self._run(operation, partial(self._session_call, func, write, abandoned), abandoned)

    async def _run(
        self,
        operation: str,
        call: Callable[[], Any],
        abandoned: Optional[threading.Event] = None
    ) -> Any:
        if self._closed:
            raise StorageUnavailable("Storage engine is closed", details={"operation": operation})

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, call),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            if abandoned is not None:
                abandoned.set()
            logger.error(f"Storage operation '{operation}' timed out after {self.timeout}s")
            raise StorageUnavailable(
                "Storage did not respond in time",
                details={"operation": operation, "timeout": self.timeout},
                original_error=exc
            ) from exc
        except OperationalError as exc:
            logger.error(f"Storage unavailable during '{operation}': {exc}")
            raise StorageUnavailable(
                "Storage is unavailable",
                details={"operation": operation, "error": str(exc.orig)},
                original_error=exc
            ) from exc
        except SQLAlchemyError as exc:
            logger.error(f"Storage operation '{operation}' failed: {exc}")
            raise DatabaseError(
                "Storage operation failed",
                details={"operation": operation, "error": str(exc)},
                original_error=exc
            ) from exc

    async def close(self) -> None:
        """Dispose the database engine and stop the storage thread."""
        if self._closed:
            return
        self._closed = True
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(self._executor, self.engine.dispose),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Storage thread still busy at shutdown; connections not disposed")
        finally:
            self._executor.shutdown(wait=False)
        logger.info("Storage engine closed")
