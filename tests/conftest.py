import pytest
import pytest_asyncio

from budgeting import BudgetPlanner
from category_ledger import CategoryLedger
from database_ops import StorageEngine
from financial_app import BudgetApp
from transaction_store import TransactionStore
from utils import CONNECTION_STRING_ENV

DEFAULT_CATEGORIES = [
    {"id": "1", "name": "Rent", "type": "essential"},
    {"id": "2", "name": "Groceries", "type": "essential"},
    {"id": "3", "name": "Savings", "type": "savings"},
]


@pytest.fixture(autouse=True)
def _isolated_connection_env(monkeypatch):
    """Keep a developer's BUDGET_DB_CONNECTION_STRING out of test runs."""
    monkeypatch.delenv(CONNECTION_STRING_ENV, raising=False)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "budget.db"


@pytest.fixture
def connection_string(db_path):
    return f"sqlite:///{db_path.as_posix()}"


@pytest_asyncio.fixture
async def storage(connection_string):
    engine = StorageEngine(connection_string, timeout=5.0)
    await engine.initialize()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def ledger(storage):
    category_ledger = CategoryLedger(storage)
    await category_ledger.load()
    await category_ledger.seed_defaults(DEFAULT_CATEGORIES)
    return category_ledger


@pytest_asyncio.fixture
async def store(storage, ledger):
    transaction_store = TransactionStore(storage, ledger)
    await transaction_store.load()
    return transaction_store


@pytest_asyncio.fixture
async def planner(storage, ledger):
    budget_planner = BudgetPlanner(storage, ledger)
    await budget_planner.load()
    return budget_planner


@pytest.fixture
def app_config(tmp_path, connection_string):
    return {
        "database": {"data_dir": str(tmp_path), "connection_string": connection_string},
        "storage": {"timeout_seconds": 5.0},
        "categories": {"seed_defaults": True, "defaults": DEFAULT_CATEGORIES},
        "budget": {
            "savings_ratio": 0.10,
            "over_budget_tolerance": 50.0,
            "allocation_warning_ratio": 0.40,
        },
        "reconcile_on_startup": True,
    }


@pytest_asyncio.fixture
async def app(app_config):
    budget_app = await BudgetApp.open(app_config)
    yield budget_app
    await budget_app.close()
