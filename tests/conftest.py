"""
Shared fixtures for kvledger tests.

All fixtures use the in-memory store; SQLite-specific tests build their own
store in a temporary directory.
"""

import pytest
import pytest_asyncio

from kvledger.apply import EntityRepository
from kvledger.store import InMemoryKvStore
from kvledger.tx import TransactionManager


@pytest_asyncio.fixture
async def store():
    """Connected in-memory store."""
    s = InMemoryKvStore()
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def repo(store):
    """Entity repository with default indexes, link rules and logs."""
    return EntityRepository(store)


@pytest.fixture
def tx(store):
    """Transaction manager over the shared store."""
    return TransactionManager(store)
