"""
Shared fixtures: every engine test runs against the in-memory and the
SQLite backend.
"""

import pytest
import pytest_asyncio

from bookledger.async_storage import AsyncStorageAdapter
from bookledger.book import Book
from bookledger.config import LedgerConfig
from bookledger.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture
def ledger_config():
    """Configuration independent of the environment"""
    return LedgerConfig(
        _env_file=None,
        storage_type="memory",
        decimal_places=8,
        account_delimiter=":",
        default_per_page=25
    )


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def storage(request, tmp_path):
    """Async storage over each sync backend"""
    if request.param == "memory":
        backend = AsyncStorageAdapter(InMemoryStorage())
    else:
        backend = AsyncStorageAdapter(SQLiteStorage(tmp_path / "ledger.db"))
    yield backend
    await backend.close()


@pytest_asyncio.fixture
async def book(storage, ledger_config):
    """Empty book named MyBook"""
    return Book("MyBook", storage=storage, config=ledger_config)
